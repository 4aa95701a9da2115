"""Tests for command generation and the command catalog."""

from __future__ import annotations

from dataclasses import replace

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from crowdsale_oracle.core.config import GWEI
from crowdsale_oracle.core.types import CommandKind
from crowdsale_oracle.fuzzer.catalog import CATALOG, find_command, sequence_strategy, step_strategy
from crowdsale_oracle.fuzzer.commands import (
    BuyTokens,
    Command,
    FinalizeCrowdsale,
    PauseCrowdsale,
    ValidatePurchase,
    WaitTime,
    command_from_dict,
)
from crowdsale_oracle.fuzzer.generators import GeneratorContext, fund_crowdsale_to_cap
from crowdsale_oracle.fuzzer.state import DAY
from crowdsale_oracle.ledger.accounts import TOKEN, ZERO
from crowdsale_oracle.ledger.interface import SaleParameters

START = 1_700_000_000 + DAY

CTX = GeneratorContext(
    account_count=5,
    owner=0,
    wallet=1,
    sale=SaleParameters(
        rate=10,
        cap=100,
        start_time=START,
        end_time=START + 30 * DAY,
        min_invest=1,
        max_cumulative_invest=50,
        max_gas_price=50 * GWEI,
        min_buying_request_interval=600,
    ),
)

VALID_ACCOUNTS = {*range(CTX.account_count), ZERO}


class TestCatalog:

    def test_every_kind_is_registered(self):
        assert set(CATALOG) == set(CommandKind)
        for kind, entry in CATALOG.items():
            assert entry.kind is kind
            assert entry.command_type.kind is kind

    @pytest.mark.parametrize(
        "key",
        [CommandKind.BUY_TOKENS, "buy_tokens", BuyTokens(account=2, wei=1)],
    )
    def test_find_command(self, key):
        assert find_command(key).kind is CommandKind.BUY_TOKENS

    def test_find_unknown(self):
        with pytest.raises(KeyError):
            find_command("mint_everything")


class TestMacro:

    def test_fund_to_cap(self):
        commands = fund_crowdsale_to_cap(CTX, finalize=False)
        assert commands[0] == PauseCrowdsale(from_account=0, pause=False)
        assert commands[1] == WaitTime(until=START)
        buys = [cmd for cmd in commands if isinstance(cmd, BuyTokens)]
        validations = [cmd for cmd in commands if isinstance(cmd, ValidatePurchase)]
        assert len(buys) == len(validations) == 2
        assert sum(b.wei for b in buys) >= CTX.sale.cap
        assert all(b.account != CTX.wallet for b in buys)
        assert len({b.account for b in buys}) == 2
        assert all(v.account == CTX.owner for v in validations)

    def test_fund_to_cap_and_finalize(self):
        commands = fund_crowdsale_to_cap(CTX, finalize=True)
        assert commands[-2] == WaitTime(until=CTX.sale.end_time + 1)
        assert commands[-1] == FinalizeCrowdsale(from_account=0)

    def test_cap_not_divisible(self):
        odd = GeneratorContext(
            account_count=3,
            owner=0,
            wallet=1,
            sale=replace(CTX.sale, cap=101),
        )
        buys = [cmd for cmd in fund_crowdsale_to_cap(odd, finalize=False) if isinstance(cmd, BuyTokens)]
        assert len(buys) == 3
        # investors cycle through the non-wallet accounts
        assert [b.account for b in buys] == [0, 2, 0]


class TestStrategies:

    @settings(max_examples=100, deadline=None)
    @given(step_strategy(CTX))
    def test_steps_use_known_accounts(self, step: list[Command]):
        assert step
        for cmd in step:
            for party in cmd.parties():
                assert party in VALID_ACCOUNTS or party == TOKEN

    @settings(max_examples=50, deadline=None)
    @given(sequence_strategy(CTX, max_steps=5))
    def test_sequences_survive_serialization(self, commands: list[Command]):
        assert [command_from_dict(cmd.to_dict()) for cmd in commands] == commands

    @settings(max_examples=50, deadline=None)
    @given(sequence_strategy(CTX, max_steps=5, include_macro=False))
    def test_without_macro_length_is_bounded(self, commands: list[Command]):
        assert len(commands) <= 5

    @settings(max_examples=100, deadline=None)
    @given(st.data())
    def test_amounts_straddle_limits(self, data):
        buy = data.draw(CATALOG[CommandKind.BUY_TOKENS].strategy(CTX))
        assert 0 <= buy.wei <= 2 * CTX.sale.max_cumulative_invest
        assert buy.gas_price is None or 0 <= buy.gas_price <= 2 * CTX.sale.max_gas_price
