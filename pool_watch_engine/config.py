from pathlib import Path
from typing import Literal

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from solders.pubkey import Pubkey

from pool_watch_engine.chains.raydium import (
    AMM_AUTHORITY,
    AMM_V4_ACCOUNT_SIZE,
    AMM_V4_PROGRAM_ID,
    CREATE_POOL_FEE_ADDRESS,
    INITIALIZE_LOG_MARKER,
    WSOL_MINT,
)
from pool_watch_engine.errors import ConfigError


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=(".env",), env_prefix="PWE_", extra="ignore")

    # Node endpoints
    sol_rpc_url: str = "https://api.mainnet-beta.solana.com"
    sol_ws_url: str | None = None  # derived from sol_rpc_url when unset
    commitment: Literal["processed", "confirmed", "finalized"] = "confirmed"

    # Detection
    strategy: Literal["poll", "subscribe"] = "subscribe"
    amm_program_id: str = AMM_V4_PROGRAM_ID
    ray_fee_address: str = CREATE_POOL_FEE_ADDRESS
    pool_account_size: int = Field(default=AMM_V4_ACCOUNT_SIZE, gt=0)
    poll_interval_sec: float = Field(default=1.0, ge=0)
    max_consecutive_failures: int = Field(default=5, ge=1)
    lookback_limit: int = Field(default=0, ge=0, le=1000)  # signatures replayed on subscribe start

    # Extraction
    quote_mint: str = WSOL_MINT
    lp_owner: str = AMM_AUTHORITY
    log_marker: str | None = INITIALIZE_LOG_MARKER  # None disables log pre-filtering
    creation_lookup_limit: int = Field(default=1000, ge=1, le=1000)

    # Store
    events_path: Path = Path("data/new_solana_tokens.jsonl")
    failures_path: Path = Path("data/error_new_lps_logs.txt")
    rotation_threshold_bytes: int = Field(default=1_000_000, gt=0)

    # Retry / reconnect
    retry_attempts: int = Field(default=3, ge=1)
    backoff_base_sec: float = Field(default=0.5, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    backoff_max_sec: float = Field(default=30.0, ge=0)
    reconnect_attempts: int = Field(default=10, ge=1)
    max_in_flight: int = Field(default=1, ge=1)

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None

    # --- Validators to coerce empty strings in optional envs to None ---
    @field_validator("sol_ws_url", "log_marker", "log_file", mode="before")
    @classmethod
    def _empty_str_to_none(cls, v):
        if v == "":
            return None
        return v

    @field_validator("amm_program_id", "ray_fee_address", "quote_mint", "lp_owner")
    @classmethod
    def _valid_pubkey(cls, v: str) -> str:
        try:
            Pubkey.from_string(v)
        except Exception as e:
            raise ValueError(f"not a valid base58 address: {v!r}") from e
        return v

    @field_validator("sol_rpc_url")
    @classmethod
    def _http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"expected an http(s) URL, got {v!r}")
        return v

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def _derive_ws_url(self):
        if not self.sol_ws_url:
            self.sol_ws_url = self.sol_rpc_url.replace("https://", "wss://").replace(
                "http://", "ws://"
            )
        elif not self.sol_ws_url.startswith(("ws://", "wss://")):
            raise ValueError(f"expected a ws(s) URL for sol_ws_url, got {self.sol_ws_url!r}")
        return self


def load_settings(**overrides) -> AppSettings:
    """Build settings from env/.env, failing fast with a readable message."""
    try:
        return AppSettings(**overrides)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from e
