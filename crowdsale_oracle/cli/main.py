"""Crowdsale Oracle CLI — model-based testing of a KYC-gated token crowdsale.

Usage:
    crowdsale-oracle run                    Fuzz a deployed crowdsale over JSON-RPC
    crowdsale-oracle simulate               Fuzz the in-memory reference crowdsale
    crowdsale-oracle replay <file>          Re-run a saved failing sequence
    crowdsale-oracle config                 Show current configuration

Examples:
    CROWDSALE_ORACLE_CROWDSALE_ADDRESS=0xabc... crowdsale-oracle run --max-examples 200
    crowdsale-oracle simulate --model-only --seed 7
    crowdsale-oracle replay .crowdsale-oracle/failures/3f2a....json --minimize -o minimal.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from crowdsale_oracle import __version__
from crowdsale_oracle.core.config import Settings, get_settings
from crowdsale_oracle.core.errors import ConfigurationError
from crowdsale_oracle.core.logging import setup_logging
from crowdsale_oracle.core.types import CampaignReport

# ── Coloured output helpers ──────────────────────────────────────────────────

_RESET = "\033[0m"
_BOLD = "\033[1m"
_RED = "\033[91m"
_YELLOW = "\033[93m"
_GREEN = "\033[92m"
_CYAN = "\033[96m"
_DIM = "\033[2m"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def _c(text: str, code: str) -> str:
    return f"{code}{text}{_RESET}"


# ── Banner ───────────────────────────────────────────────────────────────────

BANNER = rf"""
{_BOLD}{_CYAN}  ___ ___  _____      _____  ___   _   _    ___
 / __| _ \/ _ \ \    / / __|/   \ | | | |  | __|
| (__|   / (_) \ \/\/ /\__ \| - | | |_| |__| _|
 \___|_|_\\___/ \_/\_/ |___/|_|_| |____|____|___|{_RESET}
  {_DIM}Crowdsale Oracle — model-based ledger testing v{__version__}{_RESET}
"""


# ── CLI argument parser ─────────────────────────────────────────────────────


def _add_output_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--format",
        "-f",
        default="table",
        choices=["table", "json"],
        help="Output format (default: table)",
    )
    p.add_argument("--output", "-o", help="Write output to file instead of stdout")


def _add_campaign_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--max-examples", type=int, help="Number of sequences to generate")
    p.add_argument("--max-length", type=int, help="Maximum generation steps per sequence")
    p.add_argument("--seed", type=int, help="Seed for reproducible generation")
    p.add_argument("--no-macro", action="store_true", help="Do not generate fund-to-cap macros")
    p.add_argument("--failure-dir", help="Directory for saved failing sequences")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="crowdsale-oracle",
        description="Crowdsale Oracle — model-based testing of a crowdsale ledger",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("--no-banner", action="store_true", help="Suppress the startup banner")
    parser.add_argument("--quiet", "-q", action="store_true", help="Minimal output")

    sub = parser.add_subparsers(dest="command")

    # ── run ──────────────────────────────────────────────────────────────────
    run_p = sub.add_parser("run", help="Fuzz a deployed crowdsale over JSON-RPC")
    run_p.add_argument("--rpc-url", help="Node URL (default from settings)")
    run_p.add_argument("--crowdsale", help="Crowdsale contract address")
    _add_campaign_args(run_p)
    _add_output_args(run_p)

    # ── simulate ─────────────────────────────────────────────────────────────
    sim_p = sub.add_parser("simulate", help="Fuzz the in-memory reference crowdsale")
    sim_p.add_argument(
        "--model-only",
        action="store_true",
        help="Apply preconditions and transitions only, without executing commands",
    )
    _add_campaign_args(sim_p)
    _add_output_args(sim_p)

    # ── replay ───────────────────────────────────────────────────────────────
    replay_p = sub.add_parser("replay", help="Re-run a saved failing sequence")
    replay_p.add_argument("file", help="Sequence file written by run/simulate")
    replay_p.add_argument(
        "--ledger",
        default="simulated",
        choices=["simulated", "rpc"],
        help="Ledger to replay against (default: simulated)",
    )
    replay_p.add_argument("--minimize", action="store_true", help="Delta-debug the sequence to a minimal reproducer")
    _add_output_args(replay_p)

    # ── config ───────────────────────────────────────────────────────────────
    sub.add_parser("config", help="Show current configuration")

    return parser


def _settings_for(args: argparse.Namespace) -> Settings:
    """Settings with command-line overrides applied."""
    overrides: dict[str, Any] = {}
    for arg, field_name in (
        ("rpc_url", "rpc_url"),
        ("crowdsale", "crowdsale_address"),
        ("max_examples", "max_examples"),
        ("max_length", "max_sequence_length"),
        ("seed", "seed"),
        ("failure_dir", "failure_dir"),
    ):
        value = getattr(args, arg, None)
        if value is not None:
            overrides[field_name] = value
    return get_settings().model_copy(update=overrides)


# ── Output ───────────────────────────────────────────────────────────────────


def _print_report(report: CampaignReport, quiet: bool = False) -> None:
    """Pretty-print a campaign report."""
    status = _c(" PASSED ", _GREEN + _BOLD) if report.passed else _c(" FAILED ", _RED + _BOLD)
    print(f"\n{_BOLD}Campaign complete{_RESET} — {report.campaign_id} {status}")
    print(
        f"  Mode: {report.mode}"
        f"  |  Sequences: {report.sequences_executed}"
        f"  |  Commands: {report.commands_executed}"
        f" ({_c(str(report.commands_accepted), _GREEN)} accepted,"
        f" {_c(str(report.commands_rejected), _YELLOW)} rejected)"
        f"  |  Duration: {report.duration_seconds:.1f}s\n"
    )

    if not quiet:
        kinds = sorted(set(report.accepted_by_kind) | set(report.rejected_by_kind))
        for kind in kinds:
            accepted = report.accepted_by_kind.get(kind, 0)
            rejected = report.rejected_by_kind.get(kind, 0)
            print(f"  {_DIM}{kind:<20}{_RESET} {accepted:>6} ok  {rejected:>6} rejected")
        if kinds:
            print()

    failure = report.failure
    if failure is None:
        return

    print(f"  {_c(failure.kind.value.upper(), _RED + _BOLD)} at step {failure.step}: {failure.message}")
    print(f"       {_DIM}command:{_RESET} {failure.command}")
    if failure.detail:
        print(f"       {_DIM}detail:{_RESET}  {failure.detail}")
    print(f"\n  Minimal sequence ({len(failure.sequence)} commands):")
    for i, command in enumerate(failure.sequence):
        print(f"  {_DIM}{i:>3}.{_RESET} {command}")
    if report.failure_file:
        print(f"\n  Saved to {_c(report.failure_file, _CYAN)}")
    print()


def _emit(args: argparse.Namespace, report: CampaignReport) -> None:
    if args.format == "json":
        output = report.model_dump_json(indent=2)
        if args.output:
            Path(args.output).write_text(output)
            if not args.quiet:
                print(f"  Written to {_c(args.output, _CYAN)}")
        else:
            print(output)
    else:
        _print_report(report, quiet=args.quiet)


# ── run / simulate ───────────────────────────────────────────────────────────


def _run_campaign(args: argparse.Namespace) -> int:
    from crowdsale_oracle.fuzzer.driver import OracleDriver
    from crowdsale_oracle.fuzzer.stateful import CampaignConfig, StatefulCampaign
    from crowdsale_oracle.ledger.simulated import SimulatedCrowdsale
    from crowdsale_oracle.ledger.web3_client import Web3Ledger

    settings = _settings_for(args)
    config = CampaignConfig.from_settings(settings)
    config.include_macro = not args.no_macro

    loop = asyncio.new_event_loop()
    try:
        if args.command == "run":
            ledger = loop.run_until_complete(Web3Ledger.connect(settings))
            campaign = StatefulCampaign(OracleDriver(ledger, ledger, settings), config, loop=loop)
        elif args.model_only:
            sim = SimulatedCrowdsale.from_settings(settings)
            initial = loop.run_until_complete(OracleDriver(sim, sim, settings).setup())
            campaign = StatefulCampaign(
                OracleDriver(None, None, settings),
                config,
                initial_state=initial,
                account_count=settings.account_count,
                loop=loop,
            )
        else:
            sim = SimulatedCrowdsale.from_settings(settings)
            campaign = StatefulCampaign(OracleDriver(sim, sim, settings), config, loop=loop)

        if not args.quiet:
            print(f"  Campaign {_c(campaign.campaign_id, _CYAN)}: {config.max_examples} sequences…", file=sys.stderr)
        report = campaign.run()
    except ConfigurationError as exc:
        print(_c(f"Error: {exc}", _RED), file=sys.stderr)
        return EXIT_USAGE
    finally:
        loop.close()

    _emit(args, report)
    return EXIT_OK if report.passed else EXIT_FAILED


# ── replay ───────────────────────────────────────────────────────────────────


async def _run_replay(args: argparse.Namespace) -> int:
    from crowdsale_oracle.fuzzer.driver import OracleDriver
    from crowdsale_oracle.fuzzer.replay import SequenceMinimizer, load_sequence, replay, save_sequence
    from crowdsale_oracle.ledger.simulated import SimulatedCrowdsale
    from crowdsale_oracle.ledger.web3_client import Web3Ledger

    path = Path(args.file)
    if not path.exists():
        print(_c(f"Error: '{path}' does not exist.", _RED), file=sys.stderr)
        return EXIT_USAGE
    try:
        commands = load_sequence(path)
    except (ValueError, TypeError, json.JSONDecodeError) as exc:
        print(_c(f"Error: cannot read sequence: {exc}", _RED), file=sys.stderr)
        return EXIT_USAGE

    settings = _settings_for(args)
    if args.ledger == "rpc":
        ledger = await Web3Ledger.connect(settings)
    else:
        ledger = SimulatedCrowdsale.from_settings(settings)
    driver = OracleDriver(ledger, ledger, settings)
    initial = await driver.setup()

    failure = await replay(driver, initial, commands)
    if failure is None:
        print(_c(f"  ✓ {len(commands)} commands replayed without failure.", _GREEN))
        return EXIT_OK

    print(_c(f"  ✗ {failure}", _RED))
    if args.minimize:
        minimizer = SequenceMinimizer.for_failure(driver, initial, failure.kind)
        minimal = await minimizer.minimize(failure.sequence)
        if args.output:
            save_sequence(args.output, minimal)
            if not args.quiet:
                print(f"  Minimal sequence written to {_c(args.output, _CYAN)}")
        elif args.format == "json":
            print(json.dumps([c.to_dict() for c in minimal], indent=2))
        else:
            print(f"\n  Minimal sequence ({len(minimal)} commands):")
            for i, command in enumerate(minimal):
                print(f"  {_DIM}{i:>3}.{_RESET} {command!r}")
    elif args.format == "json":
        print(failure.to_report().model_dump_json(indent=2))
    return EXIT_FAILED


# ── Config command ───────────────────────────────────────────────────────────


def _run_config() -> int:
    """Print current settings (redacted)."""
    s = get_settings()
    print(f"\n{_BOLD}Crowdsale Oracle Configuration{_RESET}\n")
    for field_name in sorted(type(s).model_fields.keys()):
        val = getattr(s, field_name, "")
        if any(kw in field_name for kw in ("password", "secret", "key")):
            val = "****" if val else "(not set)"
        print(f"  {_DIM}{field_name}:{_RESET}  {val}")
    print()
    return EXIT_OK


# ── Entrypoint ───────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"crowdsale-oracle {__version__}")
        return EXIT_OK

    if not args.no_banner:
        print(BANNER, file=sys.stderr)

    if not args.command:
        parser.print_help()
        return EXIT_OK

    if args.command == "config":
        return _run_config()

    s = get_settings()
    setup_logging(s.app_env, "WARNING" if args.quiet else s.log_level)

    if args.command in ("run", "simulate"):
        return _run_campaign(args)

    if args.command == "replay":
        try:
            return asyncio.run(_run_replay(args))
        except ConfigurationError as exc:
            print(_c(f"Error: {exc}", _RED), file=sys.stderr)
            return EXIT_USAGE

    parser.print_help()
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
