"""
tests/test_notifier.py -- Template rendering and the log / SMTP backends.

SMTP delivery is exercised against a patched smtplib.SMTP; no socket is opened.
"""

from __future__ import annotations

import smtplib
from unittest.mock import MagicMock

import pytest

from core.errors import DeliveryError
from notify.mailer import LogNotifier, SmtpNotifier, build_notifier, render


class TestRender:
    def test_subject_and_body(self, settings) -> None:
        message = render("ada@acme.io", "verify_email", {"link": "https://app.acme.io/v?token=t", "first_name": "Ada"}, settings)
        assert message.subject == "Verify your Passgate email address"
        assert message.body.startswith("Hello Ada,")
        assert "https://app.acme.io/v?token=t" in message.body
        assert not message.body.startswith("Subject:")

    def test_first_name_optional(self, settings) -> None:
        message = render("ada@acme.io", "password_changed", {}, settings)
        assert message.body.startswith("Hello,")

    def test_unknown_template(self, settings) -> None:
        with pytest.raises(DeliveryError):
            render("ada@acme.io", "welcome_gift", {}, settings)

    def test_missing_variable(self, settings) -> None:
        """StrictUndefined: a template variable absent from the payload fails loudly."""
        with pytest.raises(DeliveryError):
            render("ada@acme.io", "password_reset", {"link": "https://app.acme.io/r"}, settings)


class TestLogNotifier:
    def test_outbox_and_filtering(self, settings) -> None:
        notifier = LogNotifier(settings, outbox_size=2)
        notifier.send("a@acme.io", "password_changed", {})
        notifier.send("b@acme.io", "password_changed", {})
        notifier.send("c@acme.io", "verify_email", {"link": "l"})
        assert len(notifier.outbox) == 2
        assert notifier.last("a@acme.io") is None
        assert notifier.last(template_id="password_changed").to == "b@acme.io"
        assert notifier.last().to == "c@acme.io"


class TestSmtpNotifier:
    def test_deliver(self, settings, monkeypatch: pytest.MonkeyPatch) -> None:
        smtp = MagicMock()
        monkeypatch.setattr(smtplib, "SMTP", smtp)
        cfg = settings.model_copy(update={"smtp_username": "mailer", "smtp_password": "secret"})
        notifier = SmtpNotifier(cfg)
        try:
            notifier.deliver(render("ada@acme.io", "password_changed", {}, cfg))
        finally:
            notifier.close()
        smtp.assert_called_once_with(cfg.smtp_host, cfg.smtp_port, timeout=cfg.smtp_timeout_seconds)
        server = smtp.return_value.__enter__.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "secret")
        sent = server.send_message.call_args.args[0]
        assert sent["To"] == "ada@acme.io"
        assert sent["Subject"] == "Your Passgate password was changed"

    def test_deliver_failure(self, settings, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(smtplib, "SMTP", MagicMock(side_effect=OSError("connection refused")))
        notifier = SmtpNotifier(settings)
        try:
            with pytest.raises(DeliveryError):
                notifier.deliver(render("ada@acme.io", "password_changed", {}, settings))
        finally:
            notifier.close()

    def test_send_queues_delivery(self, settings, monkeypatch: pytest.MonkeyPatch) -> None:
        smtp = MagicMock()
        monkeypatch.setattr(smtplib, "SMTP", smtp)
        notifier = SmtpNotifier(settings)
        notifier.send("ada@acme.io", "password_changed", {})
        notifier.close()  # waits for the worker
        smtp.return_value.__enter__.return_value.send_message.assert_called_once()

    def test_send_renders_synchronously(self, settings) -> None:
        notifier = SmtpNotifier(settings)
        try:
            with pytest.raises(DeliveryError):
                notifier.send("ada@acme.io", "nope", {})
        finally:
            notifier.close()


def test_build_notifier(settings) -> None:
    assert isinstance(build_notifier(settings), LogNotifier)
    smtp = build_notifier(settings.model_copy(update={"mail_backend": "smtp"}))
    try:
        assert isinstance(smtp, SmtpNotifier)
    finally:
        smtp.close()
