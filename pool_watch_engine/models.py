from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class CandidateEvent:
    """Unresolved reference that may or may not be a new pool."""

    kind: Literal["account", "signature"]
    address: str | None = None
    signature: str | None = None
    logs: tuple[str, ...] = field(default=(), compare=False)
    failed: bool = False

    @classmethod
    def for_account(cls, address: str) -> CandidateEvent:
        return cls(kind="account", address=address)

    @classmethod
    def for_signature(
        cls, signature: str, logs: tuple[str, ...] | list[str] = (), failed: bool = False
    ) -> CandidateEvent:
        return cls(kind="signature", signature=signature, logs=tuple(logs), failed=failed)

    def describe(self) -> str:
        if self.kind == "account":
            return f"account {self.address}"
        return f"signature {self.signature}"


class TokenInfo(BaseModel):
    address: str
    decimals: int = Field(ge=0, le=255)
    lp_amount: float = Field(ge=0)


class PoolEvent(BaseModel):
    signature: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    creator: str
    # [base, quote]
    tokens: list[TokenInfo] = Field(default_factory=list)

    @property
    def base(self) -> TokenInfo | None:
        return self.tokens[0] if len(self.tokens) == 2 else None

    @property
    def quote(self) -> TokenInfo | None:
        return self.tokens[1] if len(self.tokens) == 2 else None

    def is_complete(self) -> bool:
        return len(self.tokens) == 2
