from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from loguru import logger

from pool_watch_engine.chains.gateway import ChainGateway
from pool_watch_engine.chains.raydium import INITIALIZE_LOG_MARKER, decode_amm_state
from pool_watch_engine.config import AppSettings
from pool_watch_engine.errors import (
    IncompleteBalances,
    MissingSignature,
    NoSigner,
    TransactionNotFound,
)
from pool_watch_engine.extraction.balances import (
    TokenBalance,
    TransactionRecord,
    parse_token_amount,
    parse_transaction,
)
from pool_watch_engine.models import CandidateEvent, PoolEvent, TokenInfo


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EventExtractor:
    """Turns one candidate into zero or one ``PoolEvent``.

    ``extract`` returns ``None`` for candidates that are simply not pool
    creations (failed on chain, wrong instruction, account gone). Per-event
    decode problems raise ``ExtractionError`` subclasses and gateway problems
    raise ``TransportError``; retrying is the caller's business.
    """

    gateway: ChainGateway
    quote_mint: str
    lp_owner: str
    log_marker: str | None = INITIALIZE_LOG_MARKER
    creation_lookup_limit: int = 1000
    clock: Callable[[], datetime] = field(default=_utcnow)

    @classmethod
    def create(cls, settings: AppSettings, gateway: ChainGateway) -> EventExtractor:
        return cls(
            gateway=gateway,
            quote_mint=settings.quote_mint,
            lp_owner=settings.lp_owner,
            log_marker=settings.log_marker,
            creation_lookup_limit=settings.creation_lookup_limit,
        )

    async def extract(self, candidate: CandidateEvent) -> PoolEvent | None:
        if candidate.kind == "account":
            return await self._from_account(candidate.address or "")
        return await self._from_signature(candidate)

    def logs_look_like_creation(self, candidate: CandidateEvent) -> bool:
        if not self.log_marker or not candidate.logs:
            return True
        return any(self.log_marker in line for line in candidate.logs)

    async def _fetch_transaction(self, signature: str) -> TransactionRecord:
        raw = await self.gateway.get_transaction(signature)
        if raw is None:
            raise TransactionNotFound(signature)
        return parse_transaction(raw, signature)

    async def _from_signature(self, candidate: CandidateEvent) -> PoolEvent | None:
        signature = candidate.signature or ""
        if candidate.failed:
            logger.debug("Skipping {}: failed on chain", signature)
            return None
        if not self.logs_look_like_creation(candidate):
            logger.debug("Skipping {}: no '{}' in logs", signature, self.log_marker)
            return None

        tx = await self._fetch_transaction(signature)
        if not tx.has_meta or tx.failed:
            logger.debug(
                "Skipping {} (slot {}): transaction errored or has no metadata", signature, tx.slot
            )
            return None

        base, quote = self.select_sides(tx)
        creator = tx.signer
        if not creator:
            raise NoSigner("no signer found", signature=signature)

        return PoolEvent(
            signature=signature,
            timestamp=self.clock(),
            creator=creator,
            tokens=[base.to_token_info(signature), quote.to_token_info(signature)],
        )

    def select_sides(self, tx: TransactionRecord) -> tuple[TokenBalance, TokenBalance]:
        """Pick the (base, quote) balance records held by the LP owner."""
        owned = [b for b in tx.post_token_balances if b.owner == self.lp_owner]
        quote = next((b for b in owned if b.mint == self.quote_mint), None)
        base = next((b for b in owned if b.mint and b.mint != self.quote_mint), None)
        if quote is None or base is None:
            missing = " and ".join(
                side for side, rec in (("base", base), ("quote", quote)) if rec is None
            )
            raise IncompleteBalances(
                f"{missing} balance not found for LP owner {self.lp_owner} (slot {tx.slot})",
                signature=tx.signature,
            )
        return base, quote

    async def _vault_amount(self, vault: str, pool: str) -> float:
        where = f"pool {pool} vault {vault}"
        raw = await self.gateway.get_token_balance(vault)
        if raw is None:
            logger.warning("{}: balance unavailable, defaulting to 0", where)
            return 0.0
        return parse_token_amount(raw, where).resolve_amount(where)

    async def _creation_signature(self, address: str) -> str:
        sigs = await self.gateway.get_signatures(address, self.creation_lookup_limit)
        if not sigs:
            raise MissingSignature(f"no transactions found for pool {address}")
        # newest first; a freshly created pool has its creation tx last
        return sigs[-1]

    async def _from_account(self, address: str) -> PoolEvent | None:
        data = await self.gateway.get_account_data(address)
        if data is None:
            logger.debug("Skipping {}: account no longer exists", address)
            return None
        state = decode_amm_state(data)

        if state.quote_mint == self.quote_mint:
            base_side = (state.base_mint, state.base_decimals, state.base_vault)
            quote_side = (state.quote_mint, state.quote_decimals, state.quote_vault)
        elif state.base_mint == self.quote_mint:
            base_side = (state.quote_mint, state.quote_decimals, state.quote_vault)
            quote_side = (state.base_mint, state.base_decimals, state.base_vault)
        else:
            raise IncompleteBalances(
                f"pool {address} pairs {state.base_mint}/{state.quote_mint}, "
                f"neither is {self.quote_mint}"
            )

        tokens = []
        for mint, decimals, vault in (base_side, quote_side):
            amount = await self._vault_amount(vault, address)
            tokens.append(TokenInfo(address=mint, decimals=decimals, lp_amount=amount))

        signature = await self._creation_signature(address)
        tx = await self._fetch_transaction(signature)
        creator = tx.signer
        if not creator:
            raise NoSigner("no signer found", signature=signature)

        return PoolEvent(signature=signature, timestamp=self.clock(), creator=creator, tokens=tokens)
