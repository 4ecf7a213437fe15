"""Typed view over ``getTransaction`` JSON.

The node's JSON is loose: fields go missing, ``uiAmount`` is null for empty
accounts, and account keys come either as plain strings or as
``{"pubkey": ...}`` objects depending on the encoding. This module turns that
into small pydantic models. A field that is *absent* falls back to a sentinel
and logs a warning; a field that is *present but wrong* raises
``MalformedRecord``.
"""

from __future__ import annotations

from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pool_watch_engine.errors import MalformedRecord
from pool_watch_engine.models import TokenInfo


class UiTokenAmount(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: str | int | None = None
    decimals: int | None = Field(default=None, ge=0, le=255)
    ui_amount: float | None = Field(default=None, alias="uiAmount", ge=0)
    ui_amount_string: str | None = Field(default=None, alias="uiAmountString")

    def resolve_decimals(self, where: str) -> int:
        if self.decimals is None:
            logger.warning("{}: decimals missing, defaulting to 0", where)
            return 0
        return self.decimals

    def resolve_amount(self, where: str) -> float:
        if self.ui_amount is not None:
            return self.ui_amount
        try:
            if self.ui_amount_string:
                value = float(self.ui_amount_string)
            elif self.amount is not None and self.decimals is not None:
                value = int(self.amount) / 10**self.decimals
            else:
                logger.warning("{}: liquidity amount missing, defaulting to 0", where)
                return 0.0
        except ValueError as e:
            raise MalformedRecord(f"{where}: unreadable amount: {e}") from e
        if value < 0:
            raise MalformedRecord(f"{where}: negative amount {value}")
        return value


class TokenBalance(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    account_index: int | None = Field(default=None, alias="accountIndex")
    mint: str | None = None
    owner: str | None = None
    ui_token_amount: UiTokenAmount | None = Field(default=None, alias="uiTokenAmount")

    def to_token_info(self, signature: str) -> TokenInfo:
        where = f"{signature} mint={self.mint}"
        amount = self.ui_token_amount
        if amount is None:
            logger.warning("{}: uiTokenAmount missing, defaulting decimals and amount to 0", where)
            return TokenInfo(address=self.mint or "", decimals=0, lp_amount=0.0)
        return TokenInfo(
            address=self.mint or "",
            decimals=amount.resolve_decimals(where),
            lp_amount=amount.resolve_amount(where),
        )


class TransactionRecord(BaseModel):
    signature: str
    slot: int | None = None
    has_meta: bool = True
    failed: bool = False
    account_keys: list[str] = Field(default_factory=list)
    post_token_balances: list[TokenBalance] = Field(default_factory=list)

    @property
    def signer(self) -> str | None:
        return self.account_keys[0] if self.account_keys else None


def parse_token_amount(raw: dict[str, Any], where: str) -> UiTokenAmount:
    try:
        return UiTokenAmount.model_validate(raw)
    except ValidationError as e:
        raise MalformedRecord(f"{where}: bad token amount: {e}") from e


def _account_keys(message: dict[str, Any], signature: str) -> list[str]:
    keys = message.get("accountKeys")
    if keys is None:
        logger.warning("{}: message has no accountKeys", signature)
        return []
    if not isinstance(keys, list):
        raise MalformedRecord(f"accountKeys is {type(keys).__name__}", signature=signature)
    out: list[str] = []
    for k in keys:
        if isinstance(k, str):
            out.append(k)
        elif isinstance(k, dict) and isinstance(k.get("pubkey"), str):
            out.append(k["pubkey"])
        else:
            raise MalformedRecord(f"unreadable account key: {k!r}", signature=signature)
    return out


def parse_transaction(raw: dict[str, Any], signature: str) -> TransactionRecord:
    if not isinstance(raw, dict):
        raise MalformedRecord(f"transaction is {type(raw).__name__}", signature=signature)
    tx = raw.get("transaction") or {}
    if not isinstance(tx, dict):
        raise MalformedRecord("transaction body is not an object", signature=signature)
    # Flattened (RPC) shape keeps meta beside the transaction; some encoders nest it.
    meta = raw.get("meta", tx.get("meta"))
    message = tx.get("message") or {}
    if not isinstance(message, dict):
        raise MalformedRecord("message is not an object", signature=signature)

    if meta is None:
        return TransactionRecord(
            signature=signature, has_meta=False, account_keys=_account_keys(message, signature)
        )
    if not isinstance(meta, dict):
        raise MalformedRecord("meta is not an object", signature=signature)

    post = meta.get("postTokenBalances")
    if post is None:
        logger.warning("{}: postTokenBalances missing", signature)
        post = []
    try:
        return TransactionRecord(
            signature=signature,
            slot=raw.get("slot"),
            failed=meta.get("err") is not None,
            account_keys=_account_keys(message, signature),
            post_token_balances=[TokenBalance.model_validate(b) for b in post],
        )
    except (ValidationError, TypeError) as e:
        raise MalformedRecord(f"bad transaction metadata: {e}", signature=signature) from e
