from __future__ import annotations

import smtplib
from uuid import uuid4

from ingest_orchestrator.database.models import StudyShare
from ingest_orchestrator.notifications import email_service as es


class _FakeSMTP:
    def __init__(self):
        self.started_tls = False
        self.logged_in = False
        self.sent = []

    def starttls(self):
        self.started_tls = True

    def login(self, user, password):
        self.logged_in = True
        self.user = user
        self.password = password

    def send_message(self, msg):
        self.sent.append(msg)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


def _configure(monkeypatch, smtp=None):
    monkeypatch.setattr(es, "SMTP_USER", "u")
    monkeypatch.setattr(es, "SMTP_PASSWORD", "p")
    monkeypatch.setattr(es, "FROM_EMAIL", "from@example.com")
    if smtp is not None:
        monkeypatch.setattr(es.smtplib, "SMTP", lambda *a, **k: smtp)


def test_is_email_configured(monkeypatch):
    monkeypatch.setattr(es, "SMTP_USER", "u")
    monkeypatch.setattr(es, "SMTP_PASSWORD", "p")
    assert es.is_email_configured() is True
    monkeypatch.setattr(es, "SMTP_PASSWORD", "")
    assert es.is_email_configured() is False


def test_send_email_not_configured(monkeypatch, caplog):
    monkeypatch.setattr(es, "SMTP_USER", None)
    monkeypatch.setattr(es, "SMTP_PASSWORD", None)
    assert es.send_email("a@b.com", "subj", "body") is False
    assert any("not configured" in rec.message for rec in caplog.records)


def test_send_email_without_recipient(monkeypatch):
    _configure(monkeypatch, _FakeSMTP())
    assert es.send_email("", "subj", "body") is False


def test_send_email_success(monkeypatch):
    smtp = _FakeSMTP()
    _configure(monkeypatch, smtp)

    ok = es.send_email(to="to@example.com", subject="hello", body="plain", html_body="<b>hi</b>")

    assert ok is True
    assert smtp.started_tls and smtp.logged_in
    assert smtp.sent[0]["To"] == "to@example.com"
    assert smtp.sent[0]["From"] == "from@example.com"


def test_send_email_smtp_error(monkeypatch):
    class _FailingSMTP(_FakeSMTP):
        def send_message(self, msg):
            raise smtplib.SMTPException("rejected")

    _configure(monkeypatch, _FailingSMTP())

    assert es.send_email("to@example.com", "hello", "plain") is False


def test_format_share_update():
    body = es.format_share_update("Test Study", "SCP101", ["Study file added: umap.tsv"], "owner@example.org")

    assert body == (
        "The study SCP101 (Test Study) was updated by owner@example.org:\n"
        "  - Study file added: umap.tsv"
    )


def test_send_share_update_emails_each_collaborator(monkeypatch, db, study, user):
    db.add_all([StudyShare(study=study, email="a@example.org"), StudyShare(study=study, email="b@example.org")])
    db.flush()
    sent = []
    monkeypatch.setattr(es, "send_email", lambda to, subject, body: sent.append((to, subject, body)) or True)

    count = es.send_share_update(study.id, ["Study file added: umap.tsv"], user.id, db)

    assert count == 2
    assert [to for to, _, _ in sent] == ["a@example.org", "b@example.org"]
    assert sent[0][1] == "SCP101: study updated"
    assert "by owner@example.org" in sent[0][2]


def test_send_share_update_unknown_study(db):
    assert es.send_share_update(uuid4(), ["change"], None, db) == 0
