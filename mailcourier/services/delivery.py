from __future__ import annotations

import asyncio
import logging
import time
from typing import Protocol

from mailcourier.core.config import get_settings
from mailcourier.core.errors import (
    NonRetryableDeliveryError,
    PreferenceDisabledError,
    SubjectNotFoundError,
    TemplateNotFoundError,
)
from mailcourier.domain.models import (
    DeliveryResult,
    EmailTemplate,
    NotificationRequest,
    NotificationStatus,
    RenderedEmail,
    SendReceipt,
    SubjectData,
)
from mailcourier.providers.email.base import EmailTransport
from mailcourier.services.idempotency import IdempotencyGuard
from mailcourier.services.rendering import render_template
from mailcourier.services.resilience import CircuitBreakerRegistry
from mailcourier.services.retry import RetryPolicy
from mailcourier.services.status import StatusReporter
from mailcourier.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

DUPLICATE_MESSAGE_ID = "duplicate"


class SubjectLookup(Protocol):
    async def fetch(self, key: str) -> SubjectData | None:
        ...


class TemplateLookup(Protocol):
    async def fetch(self, key: str) -> EmailTemplate | None:
        ...


def _describe(exc: BaseException) -> str:
    # asyncio timeouts stringify to "", which is useless in a status event.
    message = str(exc).strip()
    return message or exc.__class__.__name__


class DeliveryOrchestrator:
    """Drives one notification request from NEW to DELIVERED or FAILED.

    ``process`` never raises in normal operation. Failures come back as
    ``DeliveryResult(success=False)``: ``retryable=False`` for terminal outcomes
    (unknown subject, disabled channel, unknown template) which never touch the
    retry record, ``retryable=True`` for everything else, after one attempt has
    been recorded with the retry policy.
    """

    def __init__(
        self,
        *,
        guard: IdempotencyGuard,
        retry_policy: RetryPolicy,
        breakers: CircuitBreakerRegistry,
        reporter: StatusReporter,
        subjects: SubjectLookup,
        templates: TemplateLookup,
        transport: EmailTransport,
        send_operation_name: str | None = None,
        lookup_timeout_s: float | None = None,
        send_timeout_s: float | None = None,
    ) -> None:
        settings = get_settings()
        self._guard = guard
        self._retry_policy = retry_policy
        self._breakers = breakers
        self._reporter = reporter
        self._subjects = subjects
        self._templates = templates
        self._transport = transport
        self._send_operation_name = send_operation_name or settings.cb_email_send_name
        self._lookup_timeout_s = lookup_timeout_s if lookup_timeout_s is not None else settings.lookup_timeout_ms / 1000.0
        self._send_timeout_s = send_timeout_s if send_timeout_s is not None else settings.send_timeout_ms / 1000.0

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    async def should_retry(self, request_id: str) -> bool:
        return await self._retry_policy.should_retry(request_id)

    async def process(self, request: NotificationRequest) -> DeliveryResult:
        request_id = request.request_id
        start = time.monotonic()
        logger.info("delivery_started request_id=%s template=%s", request_id, request.template_code)
        try:
            if await self._guard.is_processed(request_id):
                increment_counter("delivery_duplicates_total")
                logger.info("delivery_duplicate request_id=%s", request_id)
                return DeliveryResult(success=True, message_id=DUPLICATE_MESSAGE_ID)

            await self._reporter.update(request_id, NotificationStatus.PENDING)

            subject = await self._load_subject(request)
            rendered = await self._render(request, subject)

            try:
                receipt = await self._send(request, subject, rendered)
            except Exception as exc:  # noqa: BLE001 - breaker rejections and transport errors share one path
                logger.warning("delivery_send_failed request_id=%s error=%s", request_id, _describe(exc))
                return await self._fail_retryable(request, _describe(exc))

            await self._reporter.update(request_id, NotificationStatus.DELIVERED)
            await self._record_success(request_id, receipt)
            increment_counter("delivery_success_total")
            logger.info(
                "delivery_succeeded request_id=%s message_id=%s duration_ms=%.1f",
                request_id,
                receipt.message_id,
                (time.monotonic() - start) * 1000.0,
            )
            return DeliveryResult(success=True, message_id=receipt.message_id)
        except NonRetryableDeliveryError as exc:
            return await self._fail_terminal(request, exc)
        except Exception as exc:  # noqa: BLE001 - every other failure is presumed transient
            logger.exception("delivery_failed request_id=%s", request_id)
            return await self._fail_retryable(request, _describe(exc))

    async def _load_subject(self, request: NotificationRequest) -> SubjectData:
        subject = await asyncio.wait_for(self._subjects.fetch(request.user_id), timeout=self._lookup_timeout_s)
        if subject is None:
            raise SubjectNotFoundError(f"Subject not found: {request.user_id}")
        if not subject.preferences.email:
            raise PreferenceDisabledError("User has email notifications disabled")
        return subject

    async def _render(self, request: NotificationRequest, subject: SubjectData) -> RenderedEmail:
        template = await asyncio.wait_for(
            self._templates.fetch(request.template_code),
            timeout=self._lookup_timeout_s,
        )
        if template is None:
            raise TemplateNotFoundError(f"Template not found: {request.template_code}")
        variables = {**request.variables, "user_name": subject.name}
        return render_template(template, variables)

    async def _send(self, request: NotificationRequest, subject: SubjectData, rendered: RenderedEmail) -> SendReceipt:
        async def _operation() -> SendReceipt:
            # The deadline sits inside the breaker so a timed-out send counts as a breaker failure.
            return await asyncio.wait_for(
                self._transport.send(
                    to=subject.email,
                    subject=rendered.subject,
                    html=rendered.html_body,
                    text=rendered.text_body,
                    correlation_id=request.request_id,
                ),
                timeout=self._send_timeout_s,
            )

        return await self._breakers.execute(_operation, self._send_operation_name)

    async def _record_success(self, request_id: str, receipt: SendReceipt) -> None:
        # The mail already left; bookkeeping failures must not turn it into a retry and a second send.
        try:
            await self._guard.mark_processed(request_id, "success", receipt.message_id)
        except Exception:  # noqa: BLE001 - logged; redelivery would resend but the result stays success
            logger.exception("processed_mark_failed request_id=%s", request_id)
        try:
            await self._retry_policy.clear(request_id)
        except Exception:  # noqa: BLE001 - the record self-expires
            logger.warning("retry_clear_failed request_id=%s", request_id, exc_info=True)

    async def _fail_terminal(self, request: NotificationRequest, exc: NonRetryableDeliveryError) -> DeliveryResult:
        error = _describe(exc)
        increment_counter("delivery_failure_total.terminal")
        logger.warning("delivery_rejected request_id=%s reason=%s", request.request_id, error)
        await self._reporter.update(
            request.request_id,
            NotificationStatus.FAILED,
            error=error,
            metadata={"retryable": False},
        )
        return DeliveryResult(success=False, error=error, retryable=False)

    async def _fail_retryable(self, request: NotificationRequest, error: str) -> DeliveryResult:
        increment_counter("delivery_failure_total.retryable")
        attempt: int | None = None
        try:
            record = await self._retry_policy.record_attempt(request.request_id, error)
            attempt = record.attempt_count
        except Exception:  # noqa: BLE001 - the failure result stands even if bookkeeping fails
            logger.exception("retry_record_failed request_id=%s", request.request_id)
        await self._reporter.update(
            request.request_id,
            NotificationStatus.FAILED,
            error=error,
            metadata={"retryable": True, "attempt": attempt},
        )
        return DeliveryResult(success=False, error=error, retryable=True)
