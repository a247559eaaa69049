from __future__ import annotations

import pytest

from mailcourier.core.errors import LookupUnavailableError
from mailcourier.domain.models import CircuitState, NotificationRequest, NotificationStatus, StatusUpdate
from mailcourier.services.container import assemble_pipeline
from mailcourier.services.delivery import DUPLICATE_MESSAGE_ID, DeliveryOrchestrator
from mailcourier.services.idempotency import processed_key
from mailcourier.services.retry import retry_key
from mailcourier.services.telemetry import counters_snapshot
from mailcourier.tests.utils.fakes import ScriptedTransport, StaticLookup, make_subject, transport_failure


def _request(request_id: str = "r1", user_id: str = "u1", template_code: str = "welcome") -> NotificationRequest:
    return NotificationRequest(
        request_id=request_id,
        user_id=user_id,
        template_code=template_code,
        variables={"link": "https://example.com/account"},
    )


@pytest.mark.asyncio
async def test_successful_delivery_end_to_end(harness) -> None:
    result = await harness.pipeline.orchestrator.process(_request())

    assert result.success is True
    assert result.message_id == "m1"
    assert harness.sink.statuses("r1") == [NotificationStatus.PENDING, NotificationStatus.DELIVERED]
    assert processed_key("r1") in harness.redis.keys()
    assert retry_key("r1") not in harness.redis.keys()

    call = harness.transport.calls[0]
    assert call["to"] == "ada@example.com"
    assert call["subject"] == "Welcome Ada Lovelace!"
    assert call["correlation_id"] == "r1"
    assert 'href="https://example.com/account"' in call["html"]
    assert counters_snapshot()["delivery_success_total"] == 1


@pytest.mark.asyncio
async def test_duplicate_request_short_circuits(harness) -> None:
    await harness.pipeline.guard.mark_processed("r1", "success", "m0")

    result = await harness.pipeline.orchestrator.process(_request())

    assert result.success is True
    assert result.message_id == DUPLICATE_MESSAGE_ID
    assert harness.subjects.calls == []
    assert harness.templates.calls == []
    assert harness.transport.calls == []
    assert harness.sink.events == []


@pytest.mark.asyncio
async def test_second_processing_of_delivered_request_is_duplicate(harness) -> None:
    await harness.pipeline.orchestrator.process(_request())
    result = await harness.pipeline.orchestrator.process(_request())
    assert result.message_id == DUPLICATE_MESSAGE_ID
    assert len(harness.transport.calls) == 1


@pytest.mark.asyncio
async def test_unknown_subject_is_terminal_without_retry_record(harness) -> None:
    result = await harness.pipeline.orchestrator.process(_request(user_id="ghost"))

    assert result.success is False
    assert result.retryable is False
    assert result.error == "Subject not found: ghost"
    assert await harness.pipeline.retry_policy.get_attempt_count("r1") == 0
    assert harness.sink.statuses("r1") == [NotificationStatus.PENDING, NotificationStatus.FAILED]
    assert harness.transport.calls == []
    assert processed_key("r1") not in harness.redis.keys()


@pytest.mark.asyncio
async def test_disabled_email_preference_is_terminal(harness) -> None:
    harness.subjects.items["u2"] = make_subject("u2", email_enabled=False)

    result = await harness.pipeline.orchestrator.process(_request(user_id="u2"))

    assert result.success is False
    assert result.retryable is False
    assert result.error == "User has email notifications disabled"
    assert harness.templates.calls == []
    assert harness.transport.calls == []


@pytest.mark.asyncio
async def test_unknown_template_is_terminal(harness) -> None:
    result = await harness.pipeline.orchestrator.process(_request(template_code="missing"))

    assert result.success is False
    assert result.retryable is False
    assert result.error == "Template not found: missing"
    assert await harness.pipeline.retry_policy.get_attempt_count("r1") == 0
    failed = harness.sink.events[-1][1]
    assert failed.metadata == {"retryable": False}


@pytest.mark.asyncio
async def test_lookup_outage_is_retryable_and_recorded(harness) -> None:
    harness.subjects.items["u1"] = LookupUnavailableError("user_service lookup for u1 returned HTTP 503")

    result = await harness.pipeline.orchestrator.process(_request())

    assert result.success is False
    assert result.retryable is True
    assert "HTTP 503" in result.error
    assert await harness.pipeline.retry_policy.get_attempt_count("r1") == 1
    failed = harness.sink.events[-1][1]
    assert failed.status == NotificationStatus.FAILED
    assert failed.metadata == {"retryable": True, "attempt": 1}


@pytest.mark.asyncio
async def test_slow_lookup_times_out_as_retryable(harness) -> None:
    pipeline = harness.pipeline
    slow_subjects = StaticLookup({"u1": make_subject("u1")}, delay_s=0.5)
    orchestrator = DeliveryOrchestrator(
        guard=pipeline.guard,
        retry_policy=pipeline.retry_policy,
        breakers=pipeline.breakers,
        reporter=pipeline.reporter,
        subjects=slow_subjects,
        templates=harness.templates,
        transport=harness.transport,
        lookup_timeout_s=0.01,
    )

    result = await orchestrator.process(_request())

    assert result.success is False
    assert result.retryable is True
    assert result.error == "TimeoutError"
    assert await pipeline.retry_policy.get_attempt_count("r1") == 1
    assert harness.transport.calls == []


@pytest.mark.asyncio
async def test_each_send_failure_adds_exactly_one_attempt(harness) -> None:
    harness.transport.default = transport_failure("connection refused")
    orchestrator = harness.pipeline.orchestrator

    for expected in (1, 2, 3):
        result = await orchestrator.process(_request())
        assert result.success is False
        assert result.retryable is True
        assert result.error == "connection refused"
        assert await harness.pipeline.retry_policy.get_attempt_count("r1") == expected

    assert await orchestrator.should_retry("r1") is False


@pytest.mark.asyncio
async def test_success_after_failure_clears_retry_record(harness) -> None:
    harness.transport.outcomes = [transport_failure(), "m2"]
    orchestrator = harness.pipeline.orchestrator

    first = await orchestrator.process(_request())
    assert first.success is False
    assert retry_key("r1") in harness.redis.keys()

    second = await orchestrator.process(_request())
    assert second.success is True
    assert second.message_id == "m2"
    assert retry_key("r1") not in harness.redis.keys()
    assert (await harness.pipeline.guard.get_record("r1")).result_detail == "m2"


@pytest.mark.asyncio
async def test_open_breaker_skips_transport(harness) -> None:
    harness.transport.default = transport_failure("smtp down")
    orchestrator = harness.pipeline.orchestrator

    for index in range(5):
        await orchestrator.process(_request(request_id=f"r{index}"))
    status = harness.pipeline.breakers.get_circuit_status("email_send")
    assert status.state == CircuitState.OPEN
    assert len(harness.transport.calls) == 5

    result = await orchestrator.process(_request(request_id="r-next"))

    assert len(harness.transport.calls) == 5
    assert result.success is False
    assert result.retryable is True
    assert result.error == "Circuit breaker is OPEN for email_send"
    assert await harness.pipeline.retry_policy.get_attempt_count("r-next") == 1


@pytest.mark.asyncio
async def test_breaker_recovers_after_open_timeout(harness) -> None:
    harness.transport.outcomes = [transport_failure()] * 5
    orchestrator = harness.pipeline.orchestrator
    for index in range(5):
        await orchestrator.process(_request(request_id=f"r{index}"))

    harness.clock.advance(60)
    for request_id in ("a", "b"):
        result = await orchestrator.process(_request(request_id=request_id))
        assert result.success is True

    status = harness.pipeline.breakers.get_circuit_status("email_send")
    assert status.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_failed_processed_mark_keeps_success(harness) -> None:
    harness.redis.fail_on.add("set")

    result = await harness.pipeline.orchestrator.process(_request())

    assert result.success is True
    assert result.message_id == "m1"
    assert processed_key("r1") not in harness.redis.keys()


@pytest.mark.asyncio
async def test_status_sink_failure_does_not_fail_delivery(store, harness) -> None:
    class BrokenSink:
        async def emit(self, topic: str, update: StatusUpdate) -> None:
            raise ConnectionError("pubsub down")

    pipeline = assemble_pipeline(
        store=store,
        sink=BrokenSink(),
        transport=ScriptedTransport(),
        subjects=harness.subjects,
        templates=harness.templates,
        breakers=harness.pipeline.breakers,
        retry_policy=harness.pipeline.retry_policy,
    )

    result = await pipeline.orchestrator.process(_request())

    assert result.success is True
    assert counters_snapshot()["status_publish_failures_total"] == 2
