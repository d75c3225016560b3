"""Tests for CLI commands and helper functions."""

import json

import pytest
from click.testing import CliRunner

from cocoinbox_mail.cli import main, print_error, print_success, run_async
from cocoinbox_mail.delivery import MailService
from cocoinbox_mail.errors import TransportExhausted


@pytest.fixture
def cli(tmp_path, monkeypatch):
    """Invoke the CLI against a throwaway database and no config file."""
    monkeypatch.setenv("COCO_DB_PATH", str(tmp_path / "cli.db"))
    for var in ("COCO_HOST", "COCO_PORT", "SMTP_HOST", "MAILCHIMP_API_KEY", "SMTPDEV_API_KEY"):
        monkeypatch.delenv(var, raising=False)
    runner = CliRunner()
    missing_config = str(tmp_path / "missing.ini")

    def invoke(*args):
        return runner.invoke(main, ["--config", missing_config, *args])

    return invoke


def add_args(domain_id, limit="10", *extra):
    return [
        "domains", "add",
        "--id", domain_id,
        "--host", f"smtp.{domain_id}.example",
        "--port", "465",
        "--secure",
        "--username", "mailer",
        "--password", "secret",
        "--from", f"no-reply@{domain_id}.example",
        "--limit", limit,
        *extra,
    ]


class TestHelperFunctions:
    """Tests for CLI helper functions."""

    def test_run_async(self):
        async def async_func():
            return 42

        assert run_async(async_func()) == 42

    def test_print_helpers(self, capsys):
        print_success("done")
        print_error("failed")
        captured = capsys.readouterr()
        assert "done" in captured.out
        assert "Error:" in captured.err
        assert "failed" in captured.err


class TestDomainCommands:
    def test_add_then_list_json(self, cli):
        result = cli(*add_args("relay-a"))
        assert result.exit_code == 0, result.output
        assert "Domain 'relay-a' added" in result.output

        result = cli(*add_args("relay-b", "5", "--order", "7"))
        assert result.exit_code == 0, result.output

        result = cli("domains", "list", "--json")
        assert result.exit_code == 0, result.output
        domains = json.loads(result.output)
        assert [d["id"] for d in domains] == ["relay-a", "relay-b"]
        assert domains[0]["from"] == "no-reply@relay-a.example"
        assert domains[0]["secure"] is True
        assert domains[1]["order"] == 7
        assert all("password" not in d for d in domains)

    def test_add_duplicate_id_fails(self, cli):
        assert cli(*add_args("relay-a")).exit_code == 0
        result = cli(*add_args("relay-a"))
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_list_empty(self, cli):
        result = cli("domains", "list")
        assert result.exit_code == 0
        assert "No domains configured" in result.output

    def test_add_rejects_invalid_limit(self, cli):
        result = cli(*add_args("relay-a", "0"))
        assert result.exit_code == 1
        assert "Invalid domain" in result.output

    def test_usage_shows_unused_domain(self, cli):
        cli(*add_args("r1"))
        result = cli("domains", "usage")
        assert result.exit_code == 0, result.output
        assert "never used" in result.output


class TestSendCommand:
    def test_send_reports_strategy(self, cli, monkeypatch):
        calls = []

        async def fake_send(self, user, message):
            calls.append((user, message))
            return {"strategy": "domain", "domain_id": "r1", "result": {}}

        monkeypatch.setattr(MailService, "send_email", fake_send)
        result = cli("send", "--user", "u1", "--role", "pro", "--to", "d@example.com",
                     "--subject", "Hi", "--text", "Hello")

        assert result.exit_code == 0, result.output
        assert "Sent via domain (domain r1)" in result.output
        user, message = calls[0]
        assert user.roles == ["pro"]
        assert message.text == "Hello"

    def test_send_without_transports_fails(self, cli):
        result = cli("send", "--user", "u1", "--to", "d@example.com", "--subject", "Hi", "--text", "x")
        assert result.exit_code == 1
        assert TransportExhausted.code in result.output


def test_init_db_creates_database(cli, tmp_path):
    result = cli("init-db")
    assert result.exit_code == 0, result.output
    assert (tmp_path / "cli.db").exists()


def test_serve_runs_uvicorn(cli, monkeypatch):
    calls = {}

    def fake_run(app, host, port):
        calls.update(app=app, host=host, port=port)

    monkeypatch.setattr("uvicorn.run", fake_run)
    result = cli("serve", "--port", "4123")
    assert result.exit_code == 0, result.output
    assert calls["port"] == 4123
    assert calls["host"] == "0.0.0.0"
