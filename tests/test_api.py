import types

import aiosqlite
import pytest
from fastapi.testclient import TestClient

from cocoinbox_mail.api import API_TOKEN_HEADER_NAME, create_app
from cocoinbox_mail.errors import ConfigurationError, TransportExhausted, TransportFailure
from cocoinbox_mail.models import DomainConfig

API_TOKEN = "secret-token"

SEND_PAYLOAD = {
    "user": {"id": "u1", "roles": []},
    "message": {"to": "dest@example.com", "subject": "Hi", "text": "Hello"},
}

DOMAIN_PAYLOAD = {
    "id": "relay-a",
    "host": "smtp.relay-a.example",
    "port": 465,
    "secure": True,
    "username": "mailer",
    "password": "secret",
    "from": "no-reply@relay-a.example",
    "limit": 100,
}


class DummyAllocator:
    def __init__(self):
        self.domains = []

    async def add_domain(self, payload):
        if any(d.id == payload.id for d in self.domains):
            raise aiosqlite.IntegrityError("UNIQUE constraint failed: smtp_domains.id")
        data = payload.model_dump()
        data["order"] = data["order"] if data["order"] is not None else len(self.domains)
        domain = DomainConfig(**data)
        self.domains.append(domain)
        return domain

    async def list_domains_by_priority(self):
        return sorted(self.domains, key=lambda d: d.order)

    async def get_domain(self, domain_id):
        for domain in self.domains:
            if domain.id == domain_id:
                return domain
        raise ValueError(f"Domain '{domain_id}' not found")


class DummyService:
    def __init__(self):
        self.sent = []
        self.error = None
        self.inbox = []
        self.allocator = DummyAllocator()
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"metrics-data")
        self.persistence = types.SimpleNamespace(list_usage=self._list_usage)

    async def _list_usage(self):
        return [{"domain_id": "relay-a", "window_start": 100.0, "count": 3}]

    async def send_email(self, user, message):
        if self.error is not None:
            raise self.error
        self.sent.append((user, message))
        return {"strategy": "domain", "domain_id": "relay-a", "result": {"response": "250 OK"}}

    async def receive_emails(self, user):
        if self.error is not None:
            raise self.error
        return list(self.inbox)


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, svc


def test_health_requires_no_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    assert client.get("/health").json() == {"status": "ok"}


def test_rejects_missing_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.get("/status")
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"


def test_rejects_wrong_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.post("/mail/send", json=SEND_PAYLOAD, headers={API_TOKEN_HEADER_NAME: "nope"})
    assert response.status_code == 401


def test_no_token_configured_allows_requests():
    client = TestClient(create_app(DummyService()))
    assert client.get("/status").json() == {"ok": True}


def test_returns_500_when_service_missing():
    app = create_app(DummyService(), api_token=API_TOKEN)
    app.state.service = None
    client = TestClient(app)
    response = client.post("/mail/send", json=SEND_PAYLOAD, headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_send_mail_dispatches_to_service(client_and_service):
    client, svc = client_and_service
    response = client.post("/mail/send", json=SEND_PAYLOAD)
    assert response.status_code == 200
    assert response.json() == {
        "ok": True,
        "strategy": "domain",
        "domain_id": "relay-a",
        "result": {"response": "250 OK"},
    }
    user, message = svc.sent[0]
    assert user.id == "u1"
    assert message.to == "dest@example.com"


def test_send_mail_rejects_unknown_message_fields(client_and_service):
    client, _ = client_and_service
    payload = {"user": {"id": "u1"}, "message": {"to": "x@y.example", "subject": "s", "bcc": "z"}}
    assert client.post("/mail/send", json=payload).status_code == 422


@pytest.mark.parametrize(
    "error, status_code, code",
    [
        (ConfigurationError(), 500, "missing_premium_configuration"),
        (TransportExhausted(), 503, "transport_exhausted"),
        (TransportFailure("smtpdev", "boom"), 502, "transport_failure"),
    ],
)
def test_send_mail_maps_errors(client_and_service, error, status_code, code):
    client, svc = client_and_service
    svc.error = error
    response = client.post("/mail/send", json=SEND_PAYLOAD)
    assert response.status_code == status_code
    assert response.json()["detail"]["code"] == code


def test_inbox(client_and_service):
    client, svc = client_and_service
    svc.inbox = [{"id": "m1"}]
    response = client.post("/mail/inbox", json={"user": {"id": "u1", "roles": []}})
    assert response.json() == {"ok": True, "messages": [{"id": "m1"}]}

    svc.error = TransportFailure("smtpdev", "down")
    response = client.post("/mail/inbox", json={"user": {"id": "u1"}})
    assert response.status_code == 502


def test_add_and_list_domains(client_and_service):
    client, _ = client_and_service

    response = client.post("/domain", json=DOMAIN_PAYLOAD)
    assert response.status_code == 200
    domain = response.json()["domain"]
    assert domain["id"] == "relay-a"
    assert domain["from"] == "no-reply@relay-a.example"
    assert domain["order"] == 0
    assert "password" not in domain

    response = client.post("/domain", json=DOMAIN_PAYLOAD)
    assert response.status_code == 409

    listed = client.get("/domains").json()["domains"]
    assert [d["id"] for d in listed] == ["relay-a"]
    assert "password" not in listed[0]


def test_add_domain_validates_limit(client_and_service):
    client, _ = client_and_service
    response = client.post("/domain", json={**DOMAIN_PAYLOAD, "limit": 0})
    assert response.status_code == 422


def test_domains_usage(client_and_service):
    client, _ = client_and_service
    body = client.get("/domains/usage").json()
    assert body == {"ok": True, "usage": [{"domain_id": "relay-a", "window_start": 100.0, "count": 3}]}


def test_metrics_endpoint(client_and_service):
    client, _ = client_and_service
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.content == b"metrics-data"


def test_get_domain(client_and_service):
    client, _ = client_and_service
    client.post("/domain", json=DOMAIN_PAYLOAD)

    response = client.get("/domains/relay-a")
    assert response.status_code == 200
    domain = response.json()["domain"]
    assert domain["host"] == "smtp.relay-a.example"
    assert "password" not in domain

    response = client.get("/domains/missing")
    assert response.status_code == 404
    assert response.json()["detail"] == "Domain 'missing' not found"


def test_exhausted_detail_lists_failures(client_and_service):
    client, svc = client_and_service
    svc.error = TransportExhausted(failures=[TransportFailure("domain", "relay refused")])
    response = client.post("/mail/send", json=SEND_PAYLOAD)
    assert response.status_code == 503
    assert response.json()["detail"]["failures"] == ["domain transport failed: relay refused"]
