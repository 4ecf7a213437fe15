from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol


@dataclass(frozen=True)
class LogNotification:
    signature: str
    logs: tuple[str, ...] = field(default=())
    failed: bool = False


class ChainGateway(Protocol):
    """What the pipeline needs from a Solana node.

    Implementations raise ``TransportError`` for anything that went wrong on
    the wire and return ``None`` when the node simply has no such object.
    """

    async def snapshot(self, program_id: str, data_size: int) -> set[str]: ...

    async def get_transaction(self, signature: str) -> dict[str, Any] | None: ...

    async def get_account_data(self, address: str) -> bytes | None: ...

    async def get_token_balance(self, address: str) -> dict[str, Any] | None: ...

    async def get_signatures(self, address: str, limit: int) -> list[str]: ...

    def subscribe(self, address: str) -> AsyncIterator[LogNotification]: ...

    async def close(self) -> None: ...
