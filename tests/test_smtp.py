"""Tests for SMTP message assembly and delivery."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import aiosmtplib
import pytest

from core.models import SendEmailRequest
from services.mail import EmailSendError, SmtpSender
from services.mail.smtp import build_message, sanitize_html


def _request(**overrides) -> SendEmailRequest:
    data = {
        "to": ["carol@example.com"],
        "cc": ["dave@example.com"],
        "bcc": ["eve@example.com"],
        "subject": "Quarterly numbers",
        "text": "See attached.",
    }
    data.update(overrides)
    return SendEmailRequest(**data)


def test_bcc_stays_out_of_the_headers() -> None:
    message = build_message("ada@example.com", _request())

    assert message["From"] == "ada@example.com"
    assert message["To"] == "carol@example.com"
    assert message["Cc"] == "dave@example.com"
    assert message["Bcc"] is None
    assert "eve@example.com" not in message.as_string()


def test_html_alternative_is_sanitised() -> None:
    message = build_message(
        "ada@example.com",
        _request(html='<p onclick="steal()">Hi</p><script>alert(1)</script><a href="javascript:x()">go</a>'),
    )

    html = message.get_body(preferencelist=("html",)).get_content()
    assert "<p>Hi</p>" in html
    assert "script" not in html
    assert "javascript:" not in html
    assert message.get_body(preferencelist=("plain",)).get_content().strip() == "See attached."


def test_sanitize_html_keeps_plain_markup() -> None:
    assert sanitize_html(None) is None
    assert sanitize_html("<b>bold</b>") == "<b>bold</b>"
    assert sanitize_html("<iframe src='x'></iframe>ok") == "ok"


async def test_send_delivers_to_every_recipient(make_user) -> None:
    user = make_user(smtp_enabled=True)

    with patch("services.mail.smtp.aiosmtplib.send", new_callable=AsyncMock) as send:
        await SmtpSender(timeout=5).send(user, _request())

    send.assert_awaited_once()
    message = send.await_args.args[0]
    kwargs = send.await_args.kwargs
    assert kwargs["recipients"] == ["carol@example.com", "dave@example.com", "eve@example.com"]
    assert kwargs["hostname"] == "mail.example.com"
    assert kwargs["port"] == 465
    assert kwargs["username"] == "ada@example.com"
    assert kwargs["password"] == "s3cret"
    assert kwargs["use_tls"] is True
    assert kwargs["timeout"] == 5
    assert message["Bcc"] is None


@pytest.mark.parametrize(
    "error",
    [aiosmtplib.SMTPRecipientsRefused([]), ConnectionRefusedError("connection refused")],
)
async def test_delivery_failure_is_a_send_error(make_user, error) -> None:
    user = make_user(smtp_enabled=True)

    with patch("services.mail.smtp.aiosmtplib.send", new_callable=AsyncMock, side_effect=error):
        with pytest.raises(EmailSendError, match="Failed to send email"):
            await SmtpSender().send(user, _request())
