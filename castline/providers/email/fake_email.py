from __future__ import annotations

import asyncio
from typing import Iterable

from castline.core.errors import DeliveryError
from castline.providers.email.base import OutboundEmail


class FakeEmailTransport:
    def __init__(
        self,
        *,
        failing_addresses: Iterable[str] = (),
        delay_s: float = 0.0,
    ) -> None:
        # Recorded messages let tests assert on rendered content without an SMTP server.
        self.sent: list[OutboundEmail] = []
        self.failing_addresses = {address.lower() for address in failing_addresses}
        self.delay_s = delay_s

    async def send(self, message: OutboundEmail) -> None:
        if self.delay_s > 0:
            await asyncio.sleep(self.delay_s)
        if message.to_address.lower() in self.failing_addresses:
            raise DeliveryError(f"mailbox unavailable: {message.to_address}")
        self.sent.append(message)
