from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid

import aiosmtplib

from mailcourier.core.config import Settings, get_settings
from mailcourier.core.errors import EmailTransportError
from mailcourier.domain.models import SendReceipt
from mailcourier.services.rendering import strip_html
from mailcourier.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_PERMANENT_PATTERNS = (
    "authentication failed",
    "certificate verify failed",
    "certificate has expired",
    "wrong_version_number",
)


def classify_smtp_error(exc: BaseException) -> tuple[bool, int | None]:
    """Classify an SMTP failure as retryable or permanent.

    Returns ``(retryable, smtp_code)``. Network errors, timeouts and 4xx replies
    are retryable; 5xx replies and TLS or credential problems are permanent.
    Anything else defaults to retryable.
    """
    code: int | None = None
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused) and exc.recipients:
        code = getattr(exc.recipients[0], "code", None)
    elif isinstance(exc, aiosmtplib.SMTPResponseException):
        code = exc.code
    if isinstance(exc, (aiosmtplib.SMTPConnectError, aiosmtplib.SMTPTimeoutError, aiosmtplib.SMTPServerDisconnected)):
        return True, code
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError)):
        return True, code
    if isinstance(code, int):
        if 400 <= code < 500:
            return True, code
        if 500 <= code < 600:
            return False, code
    message = str(exc).lower()
    if any(pattern in message for pattern in _PERMANENT_PATTERNS):
        return False, code
    return True, code


@dataclass(frozen=True)
class SmtpServer:
    # Connection parameters for one relay; provider presets resolve to one of these.
    host: str
    port: int
    username: str | None = None
    password: str | None = None
    use_tls: bool = False
    start_tls: bool = False


def server_from_settings(settings: Settings) -> SmtpServer:
    return SmtpServer(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username or None,
        password=settings.smtp_password or None,
        use_tls=settings.smtp_use_tls,
        start_tls=settings.smtp_start_tls,
    )


class SmtpEmailTransport:
    def __init__(self, settings: Settings | None = None, *, server: SmtpServer | None = None) -> None:
        self._settings = settings or get_settings()
        self._server = server or server_from_settings(self._settings)

    @property
    def server(self) -> SmtpServer:
        return self._server

    def _client(self) -> aiosmtplib.SMTP:
        server = self._server
        return aiosmtplib.SMTP(
            hostname=server.host,
            port=server.port,
            username=server.username,
            password=server.password,
            use_tls=server.use_tls,
            start_tls=server.start_tls,
            timeout=self._settings.send_timeout_ms / 1000.0,
        )

    def build_message(
        self,
        *,
        to: str,
        subject: str,
        html: str,
        text: str | None,
        correlation_id: str | None,
    ) -> EmailMessage:
        sender = self._settings.email_from
        message = EmailMessage()
        message["From"] = sender
        message["To"] = to
        message["Subject"] = subject
        message["Message-ID"] = make_msgid(domain=sender.rsplit("@", 1)[-1] if "@" in sender else None)
        if correlation_id:
            message["X-Correlation-ID"] = correlation_id
        message.set_content(text or strip_html(html))
        message.add_alternative(html, subtype="html")
        return message

    async def send(
        self,
        *,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
        correlation_id: str | None = None,
    ) -> SendReceipt:
        message = self.build_message(to=to, subject=subject, html=html, text=text, correlation_id=correlation_id)
        start = time.monotonic()
        try:
            async with self._client() as client:
                await client.send_message(message)
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            retryable, code = classify_smtp_error(exc)
            record_external_call(
                integration="smtp",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.error(
                "smtp_send_failed correlation_id=%s code=%s retryable=%s error=%s",
                correlation_id,
                code,
                retryable,
                exc,
            )
            raise EmailTransportError(f"{exc} (Retryable: {retryable})", retryable=retryable, code=code) from exc
        record_external_call(
            integration="smtp",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        message_id = str(message["Message-ID"])
        logger.info("smtp_send_ok correlation_id=%s message_id=%s", correlation_id, message_id)
        return SendReceipt(message_id=message_id)

    async def verify(self) -> bool:
        try:
            async with self._client() as client:
                await client.noop()
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            logger.error("smtp_verify_failed host=%s error=%s", self._server.host, exc)
            return False
        return True
