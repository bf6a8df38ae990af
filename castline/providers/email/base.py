from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class OutboundEmail:
    to_address: str
    subject: str
    text_body: str
    html_body: str
    # Template key travels with the message so transports can tag or route it.
    template_key: str = "announcement"


class EmailTransport(Protocol):
    async def send(self, message: OutboundEmail) -> None:
        ...
