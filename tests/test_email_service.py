import smtplib

import pytest

from authkeep.service.email import EmailService


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.started_tls = False
        self.logged_in = None
        self.sent = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, message):
        self.sent.append(message)


class RefusingSMTP(FakeSMTP):
    def send_message(self, message):
        raise smtplib.SMTPRecipientsRefused({message["To"]: (550, b"no such user")})


@pytest.fixture(autouse=True)
def _reset_instances():
    FakeSMTP.instances.clear()


def _configured(**overrides):
    options = dict(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="pw",
        from_email="no-reply@example.com",
        frontend_url="https://app.example.com/",
    )
    options.update(overrides)
    return EmailService(**options)


def test_unconfigured_service_only_logs():
    service = EmailService()

    assert service.is_configured is False
    assert service.send_password_reset("a@example.com", "tok") is True


def test_reset_email_links_to_frontend(monkeypatch):
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    service = _configured()

    assert service.send_password_reset("a@example.com", "abc-123") is True

    server = FakeSMTP.instances[0]
    assert server.started_tls is True
    assert server.logged_in == ("mailer", "pw")
    message = server.sent[0]
    assert message["To"] == "a@example.com"
    body = message.get_body(preferencelist=("plain",)).get_content()
    assert "https://app.example.com/reset-password?token=abc-123" in body
    assert "1 hour" in body


def test_verification_email_links_to_frontend(monkeypatch):
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    service = _configured()

    service.send_email_verification("a@example.com", "v-token")

    body = FakeSMTP.instances[0].sent[0].get_body(preferencelist=("plain",)).get_content()
    assert "https://app.example.com/verify-email?token=v-token" in body
    assert "24 hours" in body


def test_smtp_failure_returns_false(monkeypatch):
    monkeypatch.setattr(smtplib, "SMTP", RefusingSMTP)

    assert _configured().send_password_reset("a@example.com", "tok") is False
