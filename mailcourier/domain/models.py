from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    # Keep every persisted timestamp in UTC so records compare across workers.
    return datetime.now(timezone.utc)


Scalar = str | int | float | bool


class NotificationStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class NotificationRequest(BaseModel):
    # Match the producer's queue payload; request_id doubles as the idempotency key.
    model_config = ConfigDict(frozen=True)

    request_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    template_code: str = Field(min_length=1)
    variables: dict[str, Scalar] = Field(default_factory=dict)
    priority: int = 0
    notification_type: Literal["email"] = "email"
    metadata: dict[str, Scalar] | None = None


class SubjectPreferences(BaseModel):
    email: bool = True
    push: bool = False


class SubjectData(BaseModel):
    id: str
    name: str
    email: str
    preferences: SubjectPreferences = Field(default_factory=SubjectPreferences)


class EmailTemplate(BaseModel):
    id: str
    code: str
    subject: str
    html_body: str
    text_body: str | None = None
    variables: list[str] = Field(default_factory=list)
    language: str = "en"
    version: int = 1


class RenderedEmail(BaseModel):
    subject: str
    html_body: str
    text_body: str


class SendReceipt(BaseModel):
    message_id: str


class ProcessedRecord(BaseModel):
    request_id: str
    outcome: Literal["success", "failure"]
    result_detail: str | None = None
    recorded_at: datetime = Field(default_factory=utc_now)


class RetryRecord(BaseModel):
    request_id: str
    attempt_count: int = 0
    first_attempt_at: datetime
    last_attempt_at: datetime
    next_retry_at: datetime
    errors: list[str] = Field(default_factory=list)


class StatusUpdate(BaseModel):
    notification_id: str
    status: NotificationStatus
    timestamp: datetime = Field(default_factory=utc_now)
    error: str | None = None
    metadata: dict[str, Any] | None = None


class DeliveryResult(BaseModel):
    success: bool
    message_id: str | None = None
    error: str | None = None
    # False marks terminal failures the transport layer must dead-letter without retrying.
    retryable: bool = True
    timestamp: datetime = Field(default_factory=utc_now)


@dataclass
class CircuitRecord:
    # In-process breaker view; never persisted and never shared across workers.
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float | None = None
    next_attempt_time: float = 0.0
