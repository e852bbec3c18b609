from __future__ import annotations

from typing import Iterable, Iterator, Mapping

from ...core.errors import ConfigurationError
from ..classifier import ExecutionMode
from .base import (
    CouncilResult,
    CouncilVote,
    DebateArgument,
    DebateResult,
    DeliberationResult,
    ModeExecutor,
    ModeResult,
    PhaseContext,
    PriorOutput,
    SingleResult,
    SwarmResult,
    SwarmTaskOutcome,
)
from .council import CouncilModeExecutor
from .debate import DebateModeExecutor
from .deliberation import DeliberationModeExecutor
from .single import SingleModeExecutor
from .swarm import SwarmModeExecutor


class ModeRegistry:
    """Exactly one executor per :class:`ExecutionMode`; incomplete registries are rejected."""

    def __init__(self, executors: Iterable[ModeExecutor]) -> None:
        self._executors: dict[ExecutionMode, ModeExecutor] = {}
        for executor in executors:
            if executor.mode in self._executors:
                raise ConfigurationError(f"duplicate executor for mode {executor.mode.value!r}")
            self._executors[executor.mode] = executor
        missing = [mode.value for mode in ExecutionMode if mode not in self._executors]
        if missing:
            raise ConfigurationError(f"no executor registered for modes: {', '.join(missing)}")

    def __getitem__(self, mode: ExecutionMode) -> ModeExecutor:
        return self._executors[ExecutionMode(mode)]

    def __iter__(self) -> Iterator[ExecutionMode]:
        return iter(self._executors)

    def __len__(self) -> int:
        return len(self._executors)

    def replace(self, executor: ModeExecutor) -> "ModeRegistry":
        executors: Mapping[ExecutionMode, ModeExecutor] = {**self._executors, executor.mode: executor}
        return ModeRegistry(executors.values())


def default_registry() -> ModeRegistry:
    return ModeRegistry(
        [
            SingleModeExecutor(),
            CouncilModeExecutor(),
            DeliberationModeExecutor(),
            DebateModeExecutor(),
            SwarmModeExecutor(),
        ]
    )


__all__ = [
    "CouncilModeExecutor",
    "CouncilResult",
    "CouncilVote",
    "DebateArgument",
    "DebateModeExecutor",
    "DebateResult",
    "DeliberationModeExecutor",
    "DeliberationResult",
    "ModeExecutor",
    "ModeRegistry",
    "ModeResult",
    "PhaseContext",
    "PriorOutput",
    "SingleModeExecutor",
    "SingleResult",
    "SwarmModeExecutor",
    "SwarmResult",
    "SwarmTaskOutcome",
    "default_registry",
]
