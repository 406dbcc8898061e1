"""
notify/mailer.py -- Outbound notifications (verification, reset, password changed).

The core depends only on the Notifier protocol:

    notifier.send(address, template_id, payload)

send() renders the Jinja2 template notify/templates/<template_id>.txt, whose first
line is "Subject: ...", and hands the message to a backend:

  LogNotifier  -- logs the rendered message and keeps a bounded outbox. Default
                  for development (MAIL_BACKEND=log) and used by the tests.
  SmtpNotifier -- delivers over SMTP on a small thread pool with a bounded
                  socket timeout, so request handlers never wait on the relay.

Rendering failures raise DeliveryError synchronously. SMTP failures happen on
the worker thread and are logged; callers treat notification as best-effort.

Layer rule: no imports from api/ or auth/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import smtplib
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from email.message import EmailMessage
from pathlib import Path
from typing import Optional, Protocol

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from core.config import Settings, get_settings
from core.errors import DeliveryError

logger = logging.getLogger("passgate.notify")

_TEMPLATE_DIR = Path(__file__).parent / "templates"

TEMPLATES = ("verify_email", "password_reset", "password_changed")


@dataclass
class Message:
    to: str
    subject: str
    body: str
    template_id: str
    payload: dict


class Notifier(Protocol):
    def send(self, address: str, template_id: str, payload: dict) -> None: ...


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

# Plain-text mail: autoescape off. StrictUndefined turns a missing payload key
# into a render error instead of an empty string in the message.
_env = Environment(
    loader=FileSystemLoader(str(_TEMPLATE_DIR)),
    autoescape=False,
    undefined=StrictUndefined,
    keep_trailing_newline=True,
)


def render(address: str, template_id: str, payload: dict, settings: Optional[Settings] = None) -> Message:
    """Render a template into a Message. Raises DeliveryError on any template failure."""
    if template_id not in TEMPLATES:
        raise DeliveryError(f"unknown template: {template_id}")
    cfg = settings or get_settings()
    context = {"app_name": cfg.app_name, "first_name": None, **payload}
    try:
        text = _env.get_template(f"{template_id}.txt").render(**context)
    except TemplateError as exc:
        raise DeliveryError(f"failed to render {template_id}: {exc}") from exc
    first, _, body = text.partition("\n")
    subject = first.removeprefix("Subject:").strip()
    return Message(to=address, subject=subject, body=body.lstrip("\n"), template_id=template_id, payload=payload)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class LogNotifier:
    """Development backend: writes each message to the log instead of sending it."""

    def __init__(self, settings: Optional[Settings] = None, outbox_size: int = 100) -> None:
        self.settings = settings or get_settings()
        self.outbox: deque[Message] = deque(maxlen=outbox_size)

    def send(self, address: str, template_id: str, payload: dict) -> None:
        message = render(address, template_id, payload, self.settings)
        self.outbox.append(message)
        logger.info("Mail (log backend) to=%s subject=%r\n%s", message.to, message.subject, message.body)

    def last(self, address: Optional[str] = None, template_id: Optional[str] = None) -> Optional[Message]:
        """Most recent outbox message, optionally filtered by recipient and template."""
        for message in reversed(self.outbox):
            if address is not None and message.to != address:
                continue
            if template_id is not None and message.template_id != template_id:
                continue
            return message
        return None

    def close(self) -> None:
        pass


class SmtpNotifier:
    """SMTP backend. Delivery runs on a worker pool; send() returns once queued."""

    def __init__(self, settings: Optional[Settings] = None, max_workers: int = 2) -> None:
        self.settings = settings or get_settings()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="passgate-mail")

    def send(self, address: str, template_id: str, payload: dict) -> None:
        message = render(address, template_id, payload, self.settings)
        future = self._pool.submit(self.deliver, message)
        future.add_done_callback(_log_failure)

    def deliver(self, message: Message) -> None:
        """Send one message synchronously. Raises DeliveryError on SMTP failure."""
        cfg = self.settings
        email = EmailMessage()
        email["From"] = cfg.mail_from
        email["To"] = message.to
        email["Subject"] = message.subject
        email.set_content(message.body)
        try:
            with smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=cfg.smtp_timeout_seconds) as server:
                if cfg.smtp_use_tls:
                    server.starttls()
                if cfg.smtp_username and cfg.smtp_password:
                    server.login(cfg.smtp_username, cfg.smtp_password)
                server.send_message(email)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"SMTP delivery of {message.template_id} failed: {exc}") from exc
        logger.info("Mail sent to=%s template=%s", message.to, message.template_id)

    def close(self) -> None:
        self._pool.shutdown(wait=True)


def _log_failure(future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.warning("Mail delivery failed: %s", exc)


def build_notifier(settings: Optional[Settings] = None):
    """Return the backend selected by Settings.mail_backend."""
    cfg = settings or get_settings()
    if cfg.mail_backend == "smtp":
        logger.info("Mail backend: smtp (%s:%d)", cfg.smtp_host, cfg.smtp_port)
        return SmtpNotifier(cfg)
    logger.info("Mail backend: log")
    return LogNotifier(cfg)
