"""
OGS Manager — Unit Tests: mail templates and transports
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import smtplib
from pathlib import Path
from types import SimpleNamespace

import pytest

from mailer import transport
from mailer.transport import (
    Email, MailerError, Message, MockMailer, SMTPMailer, TemplateNotFound,
    TemplateRegistry, default_sender, new_mailer,
)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"


@pytest.fixture
def registry(tmp_path):
    (tmp_path / "welcome.html").write_text("<p>Hallo {{ name }}</p>", encoding="utf-8")
    (tmp_path / "parents").mkdir()
    (tmp_path / "parents" / "note.html").write_text("<p>{{ text }}</p>", encoding="utf-8")
    (tmp_path / "ignored.txt").write_text("not a template", encoding="utf-8")
    return TemplateRegistry(tmp_path)


def message(template="welcome.html", **content):
    return Message(
        sender=Email("noreply@ogs.local", "OGS Manager"),
        to=Email("eltern@example.org", "Familie Schmidt"),
        subject="Hallo",
        template=template,
        content=content or {"name": "Anna"},
    )


class TestEmail:
    def test_display_name(self):
        assert str(Email("a@example.org", "Anna")) == "Anna <a@example.org>"

    def test_bare_address(self):
        assert str(Email("a@example.org")) == "a@example.org"

    def test_clone_is_deep(self):
        original = message(name="Anna")
        copy = original.clone()
        copy.content["name"] = "Ben"
        assert original.content["name"] == "Anna"


class TestTemplateRegistry:
    def test_loads_html_recursively(self, registry):
        assert registry.names == ["parents/note.html", "welcome.html"]

    def test_render_escapes(self, registry):
        assert registry.render("welcome.html", {"name": "<b>Anna</b>"}) == "<p>Hallo &lt;b&gt;Anna&lt;/b&gt;</p>"

    def test_unknown_template(self, registry):
        with pytest.raises(TemplateNotFound):
            registry.render("missing.html", {})

    def test_missing_directory(self, tmp_path):
        assert TemplateRegistry(tmp_path / "nope").names == []

    def test_bundled_checkout_template(self):
        registry = TemplateRegistry(TEMPLATES_DIR)
        html = registry.render("scheduled_checkout.html", {
            "first_name": "Anna", "student_name": "Anna Schmidt",
            "room_name": "Raum 7", "checkout_time": "02.03.2026 14:00", "reason": "Arzttermin",
        })
        assert "Anna Schmidt" in html
        assert "Raum 7" in html
        assert "Arzttermin" in html


class TestMockMailer:
    def test_records_rendered_messages(self, registry):
        mailer = MockMailer(registry)
        mailer.send(message())
        assert len(mailer.sent) == 1

    def test_missing_template_still_succeeds(self, registry):
        mailer = MockMailer(registry)
        mailer.send(message(template="missing.html"))
        assert len(mailer.sent) == 1

    def test_smtp_build_fails_on_missing_template(self, registry):
        with pytest.raises(TemplateNotFound) as exc:
            SMTPMailer("smtp.example.org", 587, registry).build(message(template="missing.html"))
        assert exc.value.retryable is True


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host, self.port = host, port
        self.tls = False
        self.logged_in = None
        self.messages = []
        self.offers_starttls = True
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def ehlo(self):
        pass

    def has_extn(self, name):
        return self.offers_starttls

    def starttls(self, context=None):
        self.tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, mail):
        self.messages.append(mail)

    def quit(self):
        pass


class TestSMTPMailer:
    @pytest.fixture(autouse=True)
    def fake_smtp(self, monkeypatch):
        FakeSMTP.instances = []
        monkeypatch.setattr(transport.smtplib, "SMTP", FakeSMTP)

    def test_build_sets_headers_and_html(self, registry):
        mail = SMTPMailer("smtp.example.org", 587, registry).build(message())
        assert mail["From"] == "OGS Manager <noreply@ogs.local>"
        assert mail["To"] == "Familie Schmidt <eltern@example.org>"
        assert mail["Subject"] == "Hallo"
        html = mail.get_body(preferencelist=("html",)).get_content()
        assert "Hallo Anna" in html

    def test_send_uses_starttls_and_login(self, registry):
        SMTPMailer("smtp.example.org", 587, registry, username="ogs", password="pw").send(message())
        conn = FakeSMTP.instances[0]
        assert conn.tls is True
        assert conn.logged_in == ("ogs", "pw")
        assert len(conn.messages) == 1

    def test_missing_starttls_on_submission_port(self, registry, monkeypatch):
        monkeypatch.setattr(FakeSMTP, "has_extn", lambda self, name: False)
        with pytest.raises(MailerError):
            SMTPMailer("smtp.example.org", 587, registry).send(message())

    def test_smtp_errors_are_wrapped(self, registry, monkeypatch):
        def refuse(self, mail):
            raise smtplib.SMTPRecipientsRefused({})
        monkeypatch.setattr(FakeSMTP, "send_message", refuse)
        with pytest.raises(MailerError) as exc:
            SMTPMailer("smtp.example.org", 25, registry).send(message())
        assert exc.value.retryable is True


class TestFactory:
    def test_without_host_uses_mock(self, registry):
        cfg = SimpleNamespace(email_smtp_host="")
        assert isinstance(new_mailer(cfg, registry), MockMailer)

    def test_with_host_uses_smtp(self, registry):
        cfg = SimpleNamespace(email_smtp_host="smtp.example.org", email_smtp_port=465,
                              email_smtp_user="u", email_smtp_password="p")
        mailer = new_mailer(cfg, registry)
        assert isinstance(mailer, SMTPMailer)
        assert mailer.port == 465

    def test_default_sender(self):
        cfg = SimpleNamespace(email_from_address="noreply@ogs.local", email_from_name="OGS Manager")
        assert str(default_sender(cfg)) == "OGS Manager <noreply@ogs.local>"
