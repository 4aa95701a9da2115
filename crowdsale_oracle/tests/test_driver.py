"""Tests for the oracle driver against the in-memory ledger."""

from __future__ import annotations

import asyncio
import logging

import hypothesis
import pytest
from hypothesis import given
from hypothesis import strategies as st

from crowdsale_oracle.core.config import GWEI, Settings
from crowdsale_oracle.core.errors import (
    ConfigurationError,
    InvariantViolation,
    PostconditionMismatch,
    UnexpectedRejection,
    UnexpectedSuccess,
    UnresolvedBranch,
)
from crowdsale_oracle.core.types import FailureKind, KYCStatus, RejectionKind
from crowdsale_oracle.fuzzer.catalog import find_command
from crowdsale_oracle.fuzzer.commands import (
    BuyTokens,
    FinalizeCrowdsale,
    PauseCrowdsale,
    RejectPurchase,
    ValidatePurchase,
    WaitTime,
)
from crowdsale_oracle.fuzzer.driver import OracleDriver, RunStats
from crowdsale_oracle.fuzzer.state import DAY, ReferenceState
from crowdsale_oracle.ledger.accounts import TOKEN, ZERO
from crowdsale_oracle.ledger.interface import LedgerCallError, SaleParameters
from crowdsale_oracle.ledger.simulated import CALL_GAS, GENESIS_TIME, SimulatedCrowdsale

START = GENESIS_TIME + DAY


class PermissiveCrowdsale(SimulatedCrowdsale):
    """Lets anybody call owner-only functions."""

    def _only_owner(self, caller: str) -> None:
        return None


class NoBonusCrowdsale(SimulatedCrowdsale):
    """Never grants the early-bird bonus."""

    def _in_bonus_window(self) -> bool:
        return False


class BrokenBuyCrowdsale(SimulatedCrowdsale):
    """Reverts every purchase."""

    async def buy_tokens(self, *, sender, value, gas_price):
        raise LedgerCallError("VM Exception while processing transaction: revert", RejectionKind.REVERT)


class OverMintingCrowdsale(SimulatedCrowdsale):
    """Mints extra tokens on every credited purchase."""

    def _credit(self, investor, wei, tokens):
        super()._credit(investor, wei, tokens)
        self._total_supply += 1000


class KYCBlindCrowdsale(SimulatedCrowdsale):
    """Takes deposits from investors who failed KYC."""

    async def buy_tokens(self, *, sender, value, gas_price):
        kyc = dict(self._kyc)
        self._kyc.clear()
        try:
            return await super().buy_tokens(sender=sender, value=value, gas_price=gas_price)
        finally:
            self._kyc.update(kyc)


def _driver_for(cls, settings) -> OracleDriver:
    ledger = cls.from_settings(settings)
    return OracleDriver(ledger, ledger, settings)


BURST_SALE = SaleParameters(
    rate=10,
    cap=60,
    start_time=START,
    end_time=START + 30 * DAY,
    min_invest=1,
    max_cumulative_invest=50,
    max_gas_price=50 * GWEI,
    min_buying_request_interval=600,
)

burst_step = st.one_of(
    st.builds(BuyTokens, account=st.integers(1, 4), wei=st.integers(1, 50)),
    st.builds(ValidatePurchase, account=st.just(0), beneficiary=st.integers(1, 4)),
)


def _requested(state: ReferenceState, command) -> int:
    """Wei the command would add to wei_raised without a cap."""
    if isinstance(command, ValidatePurchase):
        return state.vault_balance(command.beneficiary)
    return command.wei if state.kyc(command.account) is KYCStatus.APPROVED else 0


class TestSetup:

    def test_ledger_and_chain_together(self, sim, settings):
        with pytest.raises(ConfigurationError):
            OracleDriver(sim, None, settings)

    @pytest.mark.asyncio
    async def test_initial_state(self, driver, settings):
        state = await driver.setup()
        assert state.owner == 0
        assert state.wallet == 1
        assert state.token == TOKEN
        assert state.token_owner is None
        assert state.token_paused
        assert not state.crowdsale_paused
        assert state.now == GENESIS_TIME
        assert state.crowdsale.start_time == START
        assert state.eth_balance(3) == settings.sim_initial_eth
        assert len(driver.accounts) == settings.account_count

    @pytest.mark.asyncio
    async def test_model_only_cannot_setup(self, model_driver):
        assert model_driver.model_only
        with pytest.raises(ConfigurationError):
            await model_driver.setup()

    @pytest.mark.asyncio
    async def test_warns_when_sale_holds_funds(self, sim, driver, caplog):
        await sim.increase_time_to(START)
        await sim.buy_tokens(sender=(await sim.accounts())[2], value=5, gas_price=GWEI)
        with caplog.at_level(logging.WARNING, logger="crowdsale_oracle.fuzzer.driver"):
            state = await driver.setup()
        assert state.vault_balance(2) == 5
        assert "already holds funds" in caplog.text


class TestStep:

    @pytest.mark.asyncio
    async def test_accepted_purchase(self, driver):
        state = await driver.setup()
        state = (await driver.step(state, WaitTime(until=START))).state
        assert state.now == START

        outcome = await driver.step(state, BuyTokens(account=2, wei=5))
        assert outcome.accepted
        assert outcome.reasons == []
        assert outcome.state.vault_balance(2) == 5
        fee = CALL_GAS * state.crowdsale.max_gas_price
        assert outcome.state.eth_balance(2) == state.eth_balance(2) - 5 - fee

    @pytest.mark.asyncio
    async def test_expected_rejection_charges_fee(self, driver, settings):
        state = await driver.setup()
        outcome = await driver.step(state, BuyTokens(account=2, wei=5))
        assert not outcome.accepted
        assert outcome.rejection is RejectionKind.REVERT
        assert any("window" in r for r in outcome.reasons)
        assert outcome.state.eth_balance(2) == state.eth_balance(2) - CALL_GAS * settings.gas_price

    @pytest.mark.asyncio
    async def test_zero_address_rejection(self, driver):
        state = await driver.setup()
        outcome = await driver.step(state, PauseCrowdsale(from_account=ZERO, pause=True))
        assert not outcome.accepted
        assert outcome.rejection is RejectionKind.SIGNER_LOCKED
        assert outcome.state.eth_balances == state.eth_balances

    @pytest.mark.asyncio
    async def test_unexpected_success(self, settings):
        driver = _driver_for(PermissiveCrowdsale, settings)
        state = await driver.setup()
        with pytest.raises(UnexpectedSuccess) as excinfo:
            await driver.step(state, PauseCrowdsale(from_account=3, pause=True))
        assert "owner" in excinfo.value.detail
        assert excinfo.value.state is not None

    @pytest.mark.asyncio
    async def test_unexpected_rejection(self, settings):
        driver = _driver_for(BrokenBuyCrowdsale, settings)
        state = await driver.setup()
        state = (await driver.step(state, WaitTime(until=START))).state
        with pytest.raises(UnexpectedRejection):
            await driver.step(state, BuyTokens(account=2, wei=5))

    @pytest.mark.asyncio
    async def test_postcondition_mismatch(self, settings):
        driver = _driver_for(NoBonusCrowdsale, settings)
        state = await driver.setup()
        for cmd in (WaitTime(until=START), BuyTokens(account=2, wei=5)):
            state = (await driver.step(state, cmd)).state
        with pytest.raises(PostconditionMismatch) as excinfo:
            await driver.step(state, ValidatePurchase(account=0, beneficiary=2))
        assert "token_balances[2]" in excinfo.value.detail

    @pytest.mark.asyncio
    async def test_token_supply_mismatch(self, settings):
        driver = _driver_for(OverMintingCrowdsale, settings)
        state = await driver.setup()
        for cmd in (WaitTime(until=START), BuyTokens(account=2, wei=5)):
            state = (await driver.step(state, cmd)).state
        with pytest.raises(PostconditionMismatch) as excinfo:
            await driver.step(state, ValidatePurchase(account=0, beneficiary=2))
        assert "token_supply" in excinfo.value.detail

    @pytest.mark.asyncio
    async def test_deposit_from_rejected_investor_is_unresolved(self, settings):
        driver = _driver_for(KYCBlindCrowdsale, settings)
        state = await driver.setup()
        for cmd in (WaitTime(until=START), BuyTokens(account=2, wei=5), RejectPurchase(account=0, beneficiary=2)):
            state = (await driver.step(state, cmd)).state
        assert state.kyc(2) is KYCStatus.REJECTED
        with pytest.raises(UnresolvedBranch) as excinfo:
            await driver.step(state, BuyTokens(account=2, wei=5))
        assert excinfo.value.kind is FailureKind.UNRESOLVED_BRANCH

    @pytest.mark.asyncio
    async def test_off_chain_balances_follow_the_ledger(self, sim, settings):
        settings = settings.model_copy(update={"check_eth_balances": True})
        driver = OracleDriver(sim, sim, settings)
        state = await driver.setup()
        sequence = [
            WaitTime(until=START),
            BuyTokens(account=2, wei=5),
            ValidatePurchase(account=0, beneficiary=2),
            PauseCrowdsale(from_account=0, pause=True),
            PauseCrowdsale(from_account=3, pause=True),
            PauseCrowdsale(from_account=0, pause=False),
        ]
        state, stats = await driver.run(state, sequence)
        assert stats.accepted == 5
        assert stats.rejected == 1
        assert state.eth_balance(3) == await sim.eth_balance((await sim.accounts())[3])


class TestModelOnly:

    @pytest.mark.asyncio
    async def test_steps_without_ledger(self, model_driver, state):
        outcome = await model_driver.step(state, BuyTokens(account=2, wei=5))
        assert outcome.accepted
        assert outcome.rejection is None
        outcome = await model_driver.step(outcome.state, PauseCrowdsale(from_account=3, pause=True))
        assert not outcome.accepted
        assert outcome.reasons == ["caller is not the owner"]

    @pytest.mark.asyncio
    async def test_invariant_violation(self, model_driver, state):
        state.passed_kyc[2] = KYCStatus.APPROVED
        state.vault[2] = 3
        with pytest.raises(InvariantViolation) as excinfo:
            await model_driver.step(state, WaitTime(seconds=1))
        assert "vault" in excinfo.value.detail

    def test_unresolved_branch(self, state):
        state.passed_kyc[2] = KYCStatus.REJECTED
        cmd = BuyTokens(account=2, wei=5)
        with pytest.raises(UnresolvedBranch) as excinfo:
            OracleDriver._transition(find_command(cmd), state, cmd)
        assert excinfo.value.kind is FailureKind.UNRESOLVED_BRANCH

    def test_finalization_cannot_be_undone(self, state):
        before = state.clone()
        before.crowdsale_finalized = True
        cmd = FinalizeCrowdsale(from_account=0)
        with pytest.raises(InvariantViolation) as excinfo:
            OracleDriver._check_invariants(before, state, cmd)
        assert "crowdsale_finalized" in excinfo.value.detail
        assert excinfo.value.command == cmd


class TestRun:

    @pytest.mark.asyncio
    async def test_failure_carries_prefix(self, settings):
        driver = _driver_for(NoBonusCrowdsale, settings)
        state = await driver.setup()
        sequence = [
            WaitTime(until=START),
            BuyTokens(account=2, wei=5),
            ValidatePurchase(account=0, beneficiary=2),
            PauseCrowdsale(from_account=0, pause=True),
        ]
        with pytest.raises(PostconditionMismatch) as excinfo:
            await driver.run(state, sequence)
        failure = excinfo.value
        assert failure.step == 2
        assert failure.sequence == sequence[:3]
        report = failure.to_report()
        assert report.step == 2
        assert report.command["kind"] == "validate_purchase"
        assert len(report.sequence) == 3

    @pytest.mark.asyncio
    async def test_stats(self, model_driver, state):
        _, stats = await model_driver.run(
            state,
            [BuyTokens(account=2, wei=5), BuyTokens(account=2, wei=0), PauseCrowdsale(from_account=0, pause=True)],
        )
        assert (stats.executed, stats.accepted, stats.rejected) == (3, 2, 1)
        assert stats.accepted_by_kind["buy_tokens"] == 1
        assert stats.rejected_by_kind["buy_tokens"] == 1

        total = RunStats()
        total.merge(stats)
        total.merge(stats)
        assert total.executed == 6
        assert total.accepted_by_kind["pause_crowdsale"] == 2


class TestCapUnderBursts:

    @hypothesis.settings(max_examples=100, deadline=None)
    @given(st.lists(burst_step, min_size=1, max_size=12))
    def test_wei_raised_stays_under_cap(self, commands):
        asyncio.run(self._burst(commands))

    @staticmethod
    async def _burst(commands) -> None:
        driver = OracleDriver(None, None, Settings(_env_file=None, account_count=5))
        state = ReferenceState(owner=0, wallet=1, crowdsale=BURST_SALE, now=START)
        state.passed_kyc[2] = KYCStatus.APPROVED
        state.passed_kyc[3] = KYCStatus.APPROVED
        for command in commands:
            headroom = BURST_SALE.cap - state.wei_raised
            requested = _requested(state, command)
            outcome = await driver.step(state, command)
            raised = outcome.state.wei_raised - state.wei_raised
            if outcome.accepted:
                assert raised == min(requested, headroom)
            else:
                assert raised == 0
            assert outcome.state.wei_raised <= BURST_SALE.cap
            state = outcome.state
