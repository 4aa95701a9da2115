"""Shared fixtures for the crowdsale oracle test suite."""

from __future__ import annotations

import pytest

from crowdsale_oracle.core.config import GWEI, Settings
from crowdsale_oracle.fuzzer.driver import OracleDriver
from crowdsale_oracle.fuzzer.state import DAY, ReferenceState
from crowdsale_oracle.ledger.accounts import AccountBook
from crowdsale_oracle.ledger.interface import SaleParameters
from crowdsale_oracle.ledger.simulated import TOKEN_ADDRESS, SimulatedCrowdsale, simulated_addresses

START = 1_700_000_000 + DAY
END = START + 30 * DAY


# ── Settings ─────────────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    """Default settings, isolated from the environment's .env file."""
    return Settings(_env_file=None, account_count=5, max_examples=10, max_sequence_length=8)


# ── Reference State ──────────────────────────────────────────────────────────


@pytest.fixture
def sale() -> SaleParameters:
    return SaleParameters(
        rate=10,
        cap=100,
        start_time=START,
        end_time=END,
        min_invest=1,
        max_cumulative_invest=50,
        max_gas_price=50 * GWEI,
        min_buying_request_interval=600,
    )


@pytest.fixture
def state(sale: SaleParameters) -> ReferenceState:
    """Fresh sale, clock at the sale start (inside the bonus window)."""
    return ReferenceState(owner=0, wallet=1, crowdsale=sale, now=START)


@pytest.fixture
def late_state(state: ReferenceState) -> ReferenceState:
    """Same sale, clock past the bonus window but inside the sale."""
    return state.at(START + 10 * DAY)


# ── Ledgers ──────────────────────────────────────────────────────────────────


@pytest.fixture
def book() -> AccountBook:
    return AccountBook(simulated_addresses(5), TOKEN_ADDRESS)


@pytest.fixture
def sim(settings: Settings) -> SimulatedCrowdsale:
    return SimulatedCrowdsale.from_settings(settings)


@pytest.fixture
def driver(sim: SimulatedCrowdsale, settings: Settings) -> OracleDriver:
    return OracleDriver(sim, sim, settings)


@pytest.fixture
def model_driver(settings: Settings) -> OracleDriver:
    return OracleDriver(None, None, settings)
