import smtplib
from email.message import EmailMessage

import pytest
from werkzeug.security import generate_password_hash

from app.review import create_app
from app.review.db import session_scope
from app.review.errors import NotificationError
from app.review.mail import LogTransport, SmtpTransport, mail_transport_from_config
from app.review.models import Base, Permission, Role, User


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    for k in ("MAIL_BACKEND", "SMTP_HOST", "SMTP_PORT", "SMTP_USERNAME", "SMTP_PASSWORD"):
        monkeypatch.delenv(k, raising=False)

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        p = Permission(key="admin.all", name="Admin: all permissions")
        r = Role(key="admin", name="Administrator")
        r.permissions.append(p)
        u = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(r)
        s.add_all([p, r, u])

    return app.test_client()


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200


def test_login_and_logout(client):
    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "pw"})
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/changes/1")
    assert r.status_code == 404  # logged in, change does not exist

    client.get("/auth/logout")
    r = client.get("/changes/1")
    assert r.status_code == 401


def test_default_mail_backend_logs(client):
    assert isinstance(client.application.extensions["mail_transport"], LogTransport)


def test_mail_transport_from_config_smtp():
    t = mail_transport_from_config({"MAIL_BACKEND": "smtp", "SMTP_HOST": "mail.example.com", "SMTP_PORT": 2525})
    assert isinstance(t, SmtpTransport)
    assert (t.host, t.port, t.use_tls) == ("mail.example.com", 2525, True)


def test_production_requires_postgres(monkeypatch):
    monkeypatch.setenv("ENV", "production")
    monkeypatch.setenv("SECRET_KEY", "strong-secret")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///prod.db")
    with pytest.raises(RuntimeError):
        create_app()


def test_login_answers_json_even_with_next(client):
    r = client.post("/auth/login", data={"email": "admin@example.com", "password": "pw", "next": "/changes/1"})
    assert r.status_code == 200
    assert r.json["ok"] is True


class _RefusingSMTP:
    def __init__(self, host, port, timeout=None):
        raise ConnectionRefusedError("connection refused")


class _BadLoginSMTP:
    def __init__(self, host, port, timeout=None):
        self.sent = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, username, password):
        raise smtplib.SMTPAuthenticationError(535, b"authentication failed")

    def send_message(self, msg):
        self.sent.append(msg)


def _mail():
    msg = EmailMessage()
    msg["From"] = "review@example.com"
    msg["To"] = "owner@example.com"
    msg["Subject"] = "Change 1: test (abandoned)"
    msg.set_content("body")
    return msg


@pytest.mark.parametrize(
    "smtp_cls, cause",
    [(_RefusingSMTP, ConnectionRefusedError), (_BadLoginSMTP, smtplib.SMTPAuthenticationError)],
)
def test_smtp_failures_become_notification_errors(monkeypatch, smtp_cls, cause):
    monkeypatch.setattr(smtplib, "SMTP", smtp_cls)
    t = SmtpTransport(host="mail.example.com", port=2525, username="bot", password="secret")

    with pytest.raises(NotificationError) as excinfo:
        t.send(_mail())

    assert isinstance(excinfo.value.__cause__, cause)
    assert "mail.example.com:2525" in str(excinfo.value)
