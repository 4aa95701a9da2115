"""Command catalog — one :class:`CatalogEntry` per command kind."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from hypothesis import strategies as st

from crowdsale_oracle.core.types import CommandKind
from crowdsale_oracle.fuzzer import commands as c
from crowdsale_oracle.fuzzer import executors as x
from crowdsale_oracle.fuzzer import generators as g
from crowdsale_oracle.fuzzer.state import ReferenceState

Precondition = Callable[[ReferenceState, Any], list[str]]
Transition = Callable[[ReferenceState, Any], ReferenceState]
Executor = Callable[[Any, ReferenceState, x.ExecutionContext], Awaitable[x.ExecutionResult]]
Verifier = Callable[[ReferenceState, Any, x.ExecutionResult, Any], list[x.Mismatch]]
StrategyFactory = Callable[[g.GeneratorContext], st.SearchStrategy]


@dataclass(frozen=True)
class CatalogEntry:
    kind: CommandKind
    command_type: type[c.Command]
    strategy: StrategyFactory
    precondition: Precondition
    transition: Transition
    execute: Executor
    verify: Verifier


def _entry(kind: CommandKind, name: str) -> CatalogEntry:
    return CatalogEntry(
        kind=kind,
        command_type=c.COMMAND_TYPES[kind],
        strategy=getattr(g, f"{name}_commands"),
        precondition=getattr(c, f"{name}_rejections"),
        transition=getattr(c, f"apply_{name}"),
        execute=getattr(x, f"execute_{name}"),
        verify=getattr(x, f"verify_{name}"),
    )


CATALOG: dict[CommandKind, CatalogEntry] = {kind: _entry(kind, kind.value) for kind in CommandKind}


def find_command(command: c.Command | CommandKind | str) -> CatalogEntry:
    """Look up the catalog entry for a command value, a kind or a kind name."""
    if isinstance(command, c.Command):
        kind = command.kind
    else:
        try:
            kind = CommandKind(command)
        except ValueError as e:
            raise KeyError(f"unknown command kind {command!r}") from e
    return CATALOG[kind]


def step_strategy(ctx: g.GeneratorContext, include_macro: bool = True) -> st.SearchStrategy[list[c.Command]]:
    """One generation step: a single primitive command or an expanded macro.

    Kinds are sampled uniformly; the macro counts as one more kind.
    """
    choices = [entry.strategy(ctx).map(lambda cmd: [cmd]) for entry in CATALOG.values()]
    if include_macro:
        choices.append(g.fund_crowdsale_to_cap_steps(ctx))
    return st.one_of(*choices)


def sequence_strategy(
    ctx: g.GeneratorContext, max_steps: int, include_macro: bool = True
) -> st.SearchStrategy[list[c.Command]]:
    return st.lists(step_strategy(ctx, include_macro), max_size=max_steps).map(
        lambda steps: [cmd for step in steps for cmd in step]
    )
