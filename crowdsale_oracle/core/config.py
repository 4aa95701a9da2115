"""Core configuration for the crowdsale oracle."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

GWEI = 10**9
DAY = 24 * 60 * 60


class Settings(BaseSettings):
    """Oracle settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CROWDSALE_ORACLE_",
        case_sensitive=False,
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_name: str = "Crowdsale Oracle"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # ── Chain / RPC ──────────────────────────────────────────────────────
    rpc_url: str = "http://localhost:8545"
    crowdsale_address: str = ""  # required by `run`: CROWDSALE_ORACLE_CROWDSALE_ADDRESS
    token_address: str = ""  # read from the crowdsale when empty
    crowdsale_artifact: str = ""  # truffle/forge JSON artifact; built-in ABI when empty
    token_artifact: str = ""
    vault_artifact: str = ""
    account_count: int = Field(default=10, ge=2)
    receipt_timeout: float = 120.0

    # ── Fee bookkeeping ──────────────────────────────────────────────────
    gas_price: int = 22 * GWEI
    track_fees: bool = True
    check_eth_balances: bool = False

    # ── Finalize ─────────────────────────────────────────────────────────
    finalize_gas_limit: int = 6_700_000
    coverage: bool = False  # gas is not measurable under coverage instrumentation

    # ── Campaign ─────────────────────────────────────────────────────────
    max_examples: int = Field(default=50, ge=1)
    max_sequence_length: int = Field(default=40, ge=1)
    seed: int | None = None
    failure_dir: str = ".crowdsale-oracle/failures"

    # ── Simulated sale profile ───────────────────────────────────────────
    sim_rate: int = 10
    sim_cap: int = 100
    sim_min_invest: int = 1
    sim_max_cumulative_invest: int = 50
    sim_max_gas_price: int = 50 * GWEI
    sim_min_buying_request_interval: int = 600
    sim_start_offset: int = DAY
    sim_duration: int = 30 * DAY
    sim_initial_eth: int = 10**21

    @model_validator(mode="after")
    def _check_window(self) -> "Settings":
        if self.sim_duration <= 0:
            raise ValueError("sim_duration must be positive")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return cached settings singleton."""
    return Settings()
