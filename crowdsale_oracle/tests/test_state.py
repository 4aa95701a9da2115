"""Tests for the Reference State and its invariants."""

from __future__ import annotations

from dataclasses import replace

import pytest

from crowdsale_oracle.core.types import KYCStatus
from crowdsale_oracle.fuzzer.state import (
    DAY,
    Purchase,
    adjust_eth,
    foundation_mint,
    invalid_parameters,
    with_bonus,
)
from crowdsale_oracle.ledger.accounts import TOKEN, ZERO


class TestArithmetic:

    def test_bonus_truncates(self):
        assert with_bonus(50) == 52
        assert with_bonus(100) == 105
        assert with_bonus(0) == 0

    def test_foundation_mint(self):
        assert foundation_mint(510) == 490
        assert foundation_mint(52) == 49
        assert foundation_mint(0) == 0


class TestInvalidParameters:

    def test_valid_sale(self, sale):
        assert invalid_parameters(sale) == []
        assert invalid_parameters(sale, include_interval=True) == []

    @pytest.mark.parametrize("name", ["rate", "cap", "max_gas_price", "min_invest", "max_cumulative_invest"])
    def test_zero_field(self, sale, name):
        problems = invalid_parameters(replace(sale, **{name: 0}))
        assert any(name in p for p in problems)

    def test_interval_only_when_requested(self, sale):
        broken = replace(sale, min_buying_request_interval=0)
        assert invalid_parameters(broken) == []
        assert invalid_parameters(broken, include_interval=True)

    def test_min_above_max(self, sale):
        assert invalid_parameters(replace(sale, min_invest=60))


class TestAccessors:

    def test_defaults(self, state):
        assert state.balance(3) == 0
        assert state.vault_balance(3) == 0
        assert state.token_balance(3) == 0
        assert state.kyc(3) is KYCStatus.UNSET
        assert not state.has_bonus(3)
        assert state.token == TOKEN
        assert state.token_paused

    def test_windows(self, state, sale):
        assert state.in_sale_window()
        assert state.in_bonus_window()
        assert state.at(sale.start_time + 7 * DAY).in_bonus_window()
        assert not state.at(sale.start_time + 7 * DAY + 1).in_bonus_window()
        assert not state.at(sale.start_time - 1).in_sale_window()
        assert state.at(sale.end_time).in_sale_window()
        assert not state.at(sale.end_time + 1).in_sale_window()

    def test_headroom_and_cap(self, state):
        state.wei_raised = 80
        assert state.headroom() == 20
        assert not state.cap_reached()
        state.wei_raised = 100
        assert state.headroom() == 0
        assert state.cap_reached()


class TestCopies:

    def test_clone_is_independent(self, state):
        state.balances[2] = 5
        copy = state.clone()
        copy.balances[2] = 9
        copy.funds_owners.append(2)
        assert state.balances[2] == 5
        assert state.funds_owners == []

    def test_at_same_time_returns_self(self, state):
        assert state.at(state.now) is state

    def test_at_moves_clock(self, state):
        later = state.at(state.now + 10)
        assert later.now == state.now + 10
        assert state.now != later.now


class TestInvariants:

    def test_fresh_state_is_clean(self, state):
        assert state.check_invariants() == []

    def test_cap_exceeded(self, state):
        state.wei_raised = 101
        assert any("cap" in v for v in state.check_invariants())

    def test_approved_with_vault(self, state):
        state.passed_kyc[2] = KYCStatus.APPROVED
        state.vault[2] = 3
        assert any("vault" in v for v in state.check_invariants())

    def test_approved_above_max(self, state):
        state.passed_kyc[2] = KYCStatus.APPROVED
        state.balances[2] = 51
        assert any("max_cumulative_invest" in v for v in state.check_invariants())

    def test_rejected_with_vault(self, state):
        state.passed_kyc[2] = KYCStatus.REJECTED
        state.vault[2] = 1
        assert state.check_invariants()

    def test_negative_balance(self, state):
        state.token_balances[2] = -1
        assert any("negative" in v for v in state.check_invariants())

    def test_bad_parameters_with_funds(self, state):
        state = replace(state, crowdsale=replace(state.crowdsale, min_invest=60))
        assert state.check_invariants() == []
        state.purchases.append(Purchase(account=2, tokens=10, rate=10, wei=1))
        assert state.check_invariants()


class TestEthBookkeeping:

    def test_adjust_eth_returns_copy(self, state):
        updated = adjust_eth(state, 2, -100)
        assert updated.eth_balance(2) == -100
        assert state.eth_balance(2) == 0

    @pytest.mark.parametrize("account", [None, ZERO, TOKEN])
    def test_untracked_identities(self, state, account):
        assert adjust_eth(state, account, -100) is state


class TestSerialization:

    def test_to_dict_is_json_friendly(self, state):
        state.passed_kyc[2] = KYCStatus.APPROVED
        state.purchases.append(Purchase(account=2, tokens=52, rate=10, wei=5))
        data = state.to_dict()
        assert data["passed_kyc"] == {"2": "approved"}
        assert data["purchases"][0]["tokens"] == 52
        assert data["crowdsale"]["cap"] == 100
        assert data["now"] == state.now
