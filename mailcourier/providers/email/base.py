from __future__ import annotations

from typing import Protocol

from mailcourier.domain.models import SendReceipt


class EmailTransport(Protocol):
    async def send(
        self,
        *,
        to: str,
        subject: str,
        html: str,
        text: str | None = None,
        correlation_id: str | None = None,
    ) -> SendReceipt:
        ...

    async def verify(self) -> bool:
        ...
