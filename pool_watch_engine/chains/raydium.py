from __future__ import annotations

import struct
from dataclasses import dataclass

from solders.pubkey import Pubkey

from pool_watch_engine.errors import MalformedRecord

# Raydium AMM v4 (mainnet)
AMM_V4_PROGRAM_ID = "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8"
# Fee destination charged on every pool creation
CREATE_POOL_FEE_ADDRESS = "7YttLkHDoNj9wyDur5pM1ejNaAvT9X4eqaYcHQqtj2G5"
# Authority that owns the pool vaults
AMM_AUTHORITY = "5Q544fKrFoe6tsEbD7S8EmxGTJYAKtTVhAW5Q5pge4j1"
WSOL_MINT = "So11111111111111111111111111111111111111112"

# Instruction log emitted when a pool is initialised
INITIALIZE_LOG_MARKER = "initialize2"

# LIQUIDITY_STATE_LAYOUT_V4
AMM_V4_ACCOUNT_SIZE = 752
_U64 = struct.Struct("<Q")
_BASE_DECIMAL = 32
_QUOTE_DECIMAL = 40
_BASE_VAULT = 336
_QUOTE_VAULT = 368
_BASE_MINT = 400
_QUOTE_MINT = 432
_LP_MINT = 464


@dataclass(frozen=True)
class AmmPoolState:
    base_mint: str
    quote_mint: str
    base_vault: str
    quote_vault: str
    lp_mint: str
    base_decimals: int
    quote_decimals: int


def _pubkey_at(data: bytes, offset: int) -> str:
    return str(Pubkey.from_bytes(data[offset : offset + 32]))


def _decimals_at(data: bytes, offset: int, name: str) -> int:
    (value,) = _U64.unpack_from(data, offset)
    if value > 255:
        raise MalformedRecord(f"{name} out of range: {value}")
    return value


def decode_amm_state(data: bytes) -> AmmPoolState:
    if len(data) < AMM_V4_ACCOUNT_SIZE:
        raise MalformedRecord(
            f"pool account is {len(data)} bytes, expected {AMM_V4_ACCOUNT_SIZE}"
        )
    return AmmPoolState(
        base_mint=_pubkey_at(data, _BASE_MINT),
        quote_mint=_pubkey_at(data, _QUOTE_MINT),
        base_vault=_pubkey_at(data, _BASE_VAULT),
        quote_vault=_pubkey_at(data, _QUOTE_VAULT),
        lp_mint=_pubkey_at(data, _LP_MINT),
        base_decimals=_decimals_at(data, _BASE_DECIMAL, "base_decimal"),
        quote_decimals=_decimals_at(data, _QUOTE_DECIMAL, "quote_decimal"),
    )
