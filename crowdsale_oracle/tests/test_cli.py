"""Tests for the command-line interface."""

from __future__ import annotations

import json
import logging

import pytest

from crowdsale_oracle import __version__
from crowdsale_oracle.cli.main import EXIT_OK, EXIT_USAGE, _settings_for, build_parser, main
from crowdsale_oracle.core.config import get_settings
from crowdsale_oracle.fuzzer.commands import BuyTokens, ValidatePurchase, WaitTime
from crowdsale_oracle.fuzzer.replay import save_sequence
from crowdsale_oracle.fuzzer.state import DAY
from crowdsale_oracle.ledger.simulated import GENESIS_TIME


@pytest.fixture(autouse=True)
def isolated_cli(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CROWDSALE_ORACLE_ACCOUNT_COUNT", "5")
    get_settings.cache_clear()
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    get_settings.cache_clear()


class TestParser:

    def test_simulate_args(self):
        args = build_parser().parse_args(["simulate", "--model-only", "--seed", "3", "--max-length", "5", "-f", "json"])
        assert args.command == "simulate"
        assert args.model_only
        assert args.seed == 3
        assert args.format == "json"
        assert not args.no_macro

    def test_replay_ledger_choice(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["replay", "f.json", "--ledger", "mainnet"])

    def test_overrides(self):
        args = build_parser().parse_args(["run", "--crowdsale", "0xabc", "--max-examples", "9"])
        s = _settings_for(args)
        assert s.crowdsale_address == "0xabc"
        assert s.max_examples == 9
        assert s.account_count == 5


class TestCommands:

    def test_version(self, capsys):
        assert main(["--version"]) == EXIT_OK
        assert __version__ in capsys.readouterr().out

    def test_no_command_prints_help(self, capsys):
        assert main(["--no-banner"]) == EXIT_OK
        assert "crowdsale-oracle" in capsys.readouterr().out

    def test_config(self, capsys):
        assert main(["--no-banner", "config"]) == EXIT_OK
        out = capsys.readouterr().out
        assert "rpc_url" in out
        assert "max_sequence_length" in out

    def test_simulate(self, capsys, tmp_path):
        argv = [
            "--no-banner", "-q", "simulate", "--max-examples", "3", "--max-length", "4",
            "--seed", "1", "--failure-dir", str(tmp_path / "failures"), "-f", "json",
        ]
        assert main(argv) == EXIT_OK
        report = json.loads(capsys.readouterr().out)
        assert report["status"] == "passed"
        assert report["mode"] == "ledger"

    def test_simulate_model_only_table(self, capsys):
        assert main(["--no-banner", "simulate", "--model-only", "--max-examples", "3", "--seed", "2"]) == EXIT_OK
        out = capsys.readouterr().out
        assert "PASSED" in out
        assert "Mode: model" in out

    def test_run_without_address(self, capsys):
        assert main(["--no-banner", "-q", "run"]) == EXIT_USAGE
        assert "crowdsale_address" in capsys.readouterr().err


class TestReplay:

    def test_missing_file(self, capsys):
        assert main(["--no-banner", "replay", "nope.json"]) == EXIT_USAGE
        assert "does not exist" in capsys.readouterr().err

    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"commands": [{"kind": "mint_everything"}]}))
        assert main(["--no-banner", "replay", str(path)]) == EXIT_USAGE

    def test_passing_sequence(self, capsys, tmp_path):
        start = GENESIS_TIME + DAY
        path = save_sequence(
            tmp_path / "seq.json",
            [WaitTime(until=start), BuyTokens(account=2, wei=5), ValidatePurchase(account=0, beneficiary=2)],
        )
        assert main(["--no-banner", "-q", "replay", str(path)]) == EXIT_OK
        assert "without failure" in capsys.readouterr().out
