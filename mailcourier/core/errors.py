from __future__ import annotations


class MailCourierError(Exception):
    """Base error for mailcourier."""


class ConfigurationError(MailCourierError):
    """Missing or invalid runtime configuration."""


class NonRetryableDeliveryError(MailCourierError):
    """Terminal delivery failure; redelivery cannot change the outcome."""


class SubjectNotFoundError(NonRetryableDeliveryError):
    """The subject user does not exist in the directory."""


class PreferenceDisabledError(NonRetryableDeliveryError):
    """The subject user has disabled the email channel."""


class TemplateNotFoundError(NonRetryableDeliveryError):
    """The template code is unknown to the catalog."""


class CircuitOpenError(MailCourierError):
    """Call rejected without invoking the protected operation."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Circuit breaker is OPEN for {name}")
        self.name = name


class LookupUnavailableError(MailCourierError):
    """Subject or template lookup service failed or timed out."""


class TemplateRenderError(MailCourierError):
    """Template rendering failed."""


class EmailTransportError(MailCourierError):
    """Outbound mail transport rejected or failed the send."""

    def __init__(self, message: str, *, retryable: bool = True, code: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.code = code
