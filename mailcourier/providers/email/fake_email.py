from __future__ import annotations

from dataclasses import dataclass, field

from mailcourier.domain.models import SendReceipt


@dataclass(frozen=True)
class SentEmail:
    to: str
    subject: str
    html: str
    text: str | None
    correlation_id: str | None


@dataclass
class FakeEmailTransport:
    # Deterministic message ids let local runs and tests assert on delivery without an SMTP server.
    domain: str = "fake.mailcourier.local"
    sent: list[SentEmail] = field(default_factory=list)

    async def send(
        self,
        *,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
        correlation_id: str | None = None,
    ) -> SendReceipt:
        self.sent.append(SentEmail(to=to, subject=subject, html=html, text=text, correlation_id=correlation_id))
        return SendReceipt(message_id=f"<{len(self.sent)}.{correlation_id or 'message'}@{self.domain}>")

    async def verify(self) -> bool:
        return True
