import aiohttp
import pytest
from aioresponses import aioresponses
from yarl import URL

from cocoinbox_mail.models import OutgoingMessage
from cocoinbox_mail.transports import (
    MANDRILL_SEND_URL,
    PremiumTransport,
    SmtpDevTransport,
    SmtpTransport,
    build_email,
)

MAILBOX_URL = "https://api.smtp.dev/accounts/acc-1/mailboxes/mb-1/messages"


class DummySMTP:
    def __init__(self, errors=None, fail=False):
        self.errors = errors or {}
        self.fail = fail
        self.sent = []

    async def send_message(self, msg, sender=None):
        if self.fail:
            raise OSError("connection reset")
        self.sent.append((msg, sender))
        return self.errors, "250 OK"


class DummyPool:
    def __init__(self, smtp):
        self.smtp = smtp
        self.requests = []
        self.discarded = []
        self.released = []

    async def get_connection(self, host, port, user, password, *, secure):
        self.requests.append((host, port, user, password, secure))
        return self.smtp

    async def release(self, smtp):
        self.released.append(smtp)

    async def discard(self, smtp):
        self.discarded.append(smtp)


def test_build_email_with_text_and_html():
    msg = build_email(
        "no-reply@cocoinbox.app",
        OutgoingMessage(to="dest@example.com", subject="Hi", text="plain", html="<b>rich</b>"),
    )
    assert msg["From"] == "no-reply@cocoinbox.app"
    assert msg["To"] == "dest@example.com"
    assert msg["Subject"] == "Hi"
    assert msg["Message-ID"].endswith("@cocoinbox.app>")
    assert msg.is_multipart()
    assert [part.get_content_type() for part in msg.iter_parts()] == ["text/plain", "text/html"]


def test_build_email_html_only():
    msg = build_email("a@b.example", OutgoingMessage(to="c@d.example", subject="S", html="<p>x</p>"))
    assert msg.get_content_type() == "text/html"


@pytest.mark.asyncio
async def test_smtp_transport_sends_through_pool():
    smtp = DummySMTP()
    pool = DummyPool(smtp)
    transport = SmtpTransport(pool)

    result = await transport.send(
        host="smtp.a.example",
        port=465,
        secure=True,
        username="mailer",
        password="secret",
        sender="no-reply@a.example",
        message=OutgoingMessage(to="dest@example.com", subject="Hi", text="Hello"),
    )

    assert pool.requests == [("smtp.a.example", 465, "mailer", "secret", True)]
    assert smtp.sent[0][1] == "no-reply@a.example"
    assert result["accepted"] == ["dest@example.com"]
    assert result["rejected"] == []
    assert result["response"] == "250 OK"
    assert result["message_id"]
    assert pool.released == [smtp]
    assert pool.discarded == []


@pytest.mark.asyncio
async def test_smtp_transport_reports_rejected_recipient():
    smtp = DummySMTP(errors={"dest@example.com": (550, "no such user")})
    transport = SmtpTransport(DummyPool(smtp))
    result = await transport.send(
        host="h", port=25, secure=False, username=None, password=None,
        sender="s@example.com",
        message=OutgoingMessage(to="dest@example.com", subject="Hi", text="Hello"),
    )
    assert result["accepted"] == []
    assert result["rejected"] == ["dest@example.com"]


@pytest.mark.asyncio
async def test_smtp_transport_discards_connection_on_failure():
    smtp = DummySMTP(fail=True)
    pool = DummyPool(smtp)
    transport = SmtpTransport(pool)
    with pytest.raises(OSError):
        await transport.send(
            host="h", port=25, secure=False, username=None, password=None,
            sender="s@example.com",
            message=OutgoingMessage(to="dest@example.com", subject="Hi", text="Hello"),
        )
    assert pool.discarded == [smtp]
    assert pool.released == []


@pytest.mark.asyncio
async def test_premium_transport_posts_key_and_message():
    transport = PremiumTransport("md-key", "us21")
    with aioresponses() as m:
        m.post(MANDRILL_SEND_URL, status=200, payload=[{"status": "sent", "_id": "abc"}])
        result = await transport.send(
            sender="no-reply@cocoinbox.app",
            message=OutgoingMessage(to="dest@example.com", subject="Hi", html="<p>Hello</p>"),
        )

        request = m.requests[("POST", URL(MANDRILL_SEND_URL))][0]
        body = request.kwargs["json"]
        assert body["key"] == "md-key"
        assert body["message"]["from_email"] == "no-reply@cocoinbox.app"
        assert body["message"]["to"] == [{"email": "dest@example.com", "type": "to"}]
        assert body["message"]["html"] == "<p>Hello</p>"
        assert body["message"]["text"] is None

    assert result == [{"status": "sent", "_id": "abc"}]


@pytest.mark.asyncio
async def test_premium_transport_raises_on_http_error():
    transport = PremiumTransport("md-key", "us21")
    with aioresponses() as m:
        m.post(MANDRILL_SEND_URL, status=500)
        with pytest.raises(aiohttp.ClientResponseError):
            await transport.send(
                sender="no-reply@cocoinbox.app",
                message=OutgoingMessage(to="dest@example.com", subject="Hi", text="Hello"),
            )


@pytest.mark.asyncio
async def test_smtpdev_send_uses_api_key_header():
    transport = SmtpDevTransport("dev-key", "acc-1", "mb-1")
    assert transport.messages_url == MAILBOX_URL
    with aioresponses() as m:
        m.post(MAILBOX_URL, status=201, payload={"id": "msg-1"})
        result = await transport.send(
            sender="no-reply@cocoinbox.app",
            message=OutgoingMessage(to="dest@example.com", subject="Hi", text="Hello"),
        )
        request = m.requests[("POST", URL(MAILBOX_URL))][0]
        assert request.kwargs["headers"]["X-API-KEY"] == "dev-key"
        assert request.kwargs["json"]["from"] == "no-reply@cocoinbox.app"
        assert request.kwargs["json"]["html"] == ""
    assert result == {"id": "msg-1"}


@pytest.mark.asyncio
async def test_smtpdev_list_messages_returns_members():
    transport = SmtpDevTransport("dev-key", "acc-1", "mb-1")
    with aioresponses() as m:
        m.get(MAILBOX_URL, status=200, payload={"member": [{"id": "m1"}, {"id": "m2"}], "totalItems": 2})
        messages = await transport.list_messages()
    assert messages == [{"id": "m1"}, {"id": "m2"}]


@pytest.mark.asyncio
async def test_smtpdev_list_messages_tolerates_unexpected_shape():
    transport = SmtpDevTransport("dev-key", "acc-1", "mb-1")
    with aioresponses() as m:
        m.get(MAILBOX_URL, status=200, payload=["not", "a", "collection"])
        assert await transport.list_messages() == []
