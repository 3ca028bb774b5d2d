"""
OGS Manager — Mail Transport
Jinja2 templates parsed once at startup, rendered into SMTP or mock deliveries.
"""

from __future__ import annotations

import copy
import logging
import smtplib
import ssl
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from jinja2 import Environment, FileSystemLoader, Template, TemplateError, select_autoescape

logger = logging.getLogger("ogs.mailer")

SMTP_TIMEOUT_SECONDS = 30


class MailerError(Exception):
    retryable = True


class TemplateNotFound(MailerError):
    pass


@dataclass(frozen=True)
class Email:
    address: str
    name: str = ""

    def __str__(self) -> str:
        return formataddr((self.name, self.address)) if self.name else self.address


@dataclass
class Message:
    sender: Email
    to: Email
    subject: str
    template: str
    content: Dict[str, Any] = field(default_factory=dict)

    def clone(self) -> "Message":
        return copy.deepcopy(self)


class Mailer(Protocol):
    def send(self, message: Message) -> None: ...


# ─── Templates ───────────────────────────────────────────────────────────────

class TemplateRegistry:
    """Every *.html under the directory, compiled once and looked up by relative path."""

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)
        self.env = Environment(
            loader=FileSystemLoader(str(self.directory)),
            autoescape=select_autoescape(["html"]),
        )
        self._templates: Dict[str, Template] = {}
        if not self.directory.is_dir():
            logger.warning("Email template directory %s does not exist", self.directory)
            return
        for path in sorted(self.directory.rglob("*.html")):
            name = path.relative_to(self.directory).as_posix()
            self._templates[name] = self.env.get_template(name)
        logger.info("Loaded %d email template(s) from %s", len(self._templates), self.directory)

    @property
    def names(self) -> List[str]:
        return sorted(self._templates)

    def render(self, name: str, content: Dict[str, Any]) -> str:
        template = self._templates.get(name)
        if template is None:
            raise TemplateNotFound(f"email template '{name}' not found")
        try:
            return template.render(**content)
        except TemplateError as exc:
            raise MailerError(f"rendering '{name}' failed: {exc}") from exc


def _subject_line(message: Message) -> str:
    return message.subject or message.template


# ─── SMTP ────────────────────────────────────────────────────────────────────

class SMTPMailer:
    """Implicit TLS on 465, STARTTLS elsewhere when the server offers it."""

    def __init__(self, host: str, port: int, templates: TemplateRegistry,
                 username: str = "", password: str = "",
                 timeout: float = SMTP_TIMEOUT_SECONDS):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.templates = templates
        self.timeout = timeout

    def build(self, message: Message) -> EmailMessage:
        html = self.templates.render(message.template, message.content)
        mail = EmailMessage()
        mail["From"] = str(message.sender)
        mail["To"] = str(message.to)
        mail["Subject"] = _subject_line(message)
        mail.set_content("This message requires an HTML capable mail client.")
        mail.add_alternative(html, subtype="html")
        return mail

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.port == 465:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout, context=context)
        conn = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        conn.ehlo()
        if conn.has_extn("starttls"):
            conn.starttls(context=context)
            conn.ehlo()
        elif self.port == 587:
            conn.quit()
            raise MailerError(f"{self.host}:{self.port} does not offer STARTTLS")
        return conn

    def send(self, message: Message) -> None:
        mail = self.build(message)
        try:
            with self._connect() as conn:
                if self.username:
                    conn.login(self.username, self.password)
                conn.send_message(mail)
        except (smtplib.SMTPException, OSError) as exc:
            raise MailerError(f"SMTP delivery to {message.to.address} failed: {exc}") from exc
        logger.info("Sent '%s' to %s", message.template, message.to.address)


# ─── Mock ────────────────────────────────────────────────────────────────────

class MockMailer:
    """Logs instead of sending and never fails. Used when no SMTP host is configured."""

    def __init__(self, templates: Optional[TemplateRegistry] = None):
        self.templates = templates
        self.sent: List[Message] = []

    def send(self, message: Message) -> None:
        if self.templates is not None:
            try:
                self.templates.render(message.template, message.content)
            except MailerError as exc:
                logger.warning("[mock] %s", exc)
        self.sent.append(message)
        logger.info("[mock] mail '%s' to %s — subject: %s",
                    message.template, message.to.address, _subject_line(message))


def new_mailer(settings, templates: TemplateRegistry) -> Mailer:
    if not settings.email_smtp_host:
        logger.warning("EMAIL_SMTP_HOST not set — emails will only be logged")
        return MockMailer(templates)
    return SMTPMailer(
        host=settings.email_smtp_host,
        port=settings.email_smtp_port,
        username=settings.email_smtp_user,
        password=settings.email_smtp_password,
        templates=templates,
    )


def default_sender(settings) -> Email:
    return Email(address=settings.email_from_address, name=settings.email_from_name)
