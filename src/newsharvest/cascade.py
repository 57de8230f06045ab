from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Protocol, Sequence, TypeVar

from .utils import log_event

S = TypeVar("S", contravariant=True)
V = TypeVar("V")


@dataclass(frozen=True)
class StrategyOutcome(Generic[V]):
    strategy: str
    value: V | None
    confidence: float = 0.0
    error: str | None = None

    @property
    def produced(self) -> bool:
        return self.value is not None and self.error is None


class Strategy(Protocol[S]):
    name: str

    def attempt(self, subject: S) -> StrategyOutcome[Any]: ...


@dataclass(frozen=True)
class CascadeResult(Generic[V]):
    selected: StrategyOutcome[V] | None
    outcomes: tuple[StrategyOutcome[V], ...]

    @property
    def attempted(self) -> tuple[str, ...]:
        return tuple(outcome.strategy for outcome in self.outcomes)

    def best(self) -> StrategyOutcome[V] | None:
        produced = [outcome for outcome in self.outcomes if outcome.produced]
        if not produced:
            return None
        return max(produced, key=lambda outcome: outcome.confidence)


class CascadeRunner:
    """Runs strategies in order and stops at the first accepted outcome."""

    def __init__(self, strategies: Sequence[Any], logger: logging.Logger | None = None) -> None:
        self.strategies = list(strategies)
        self._logger = logger or logging.getLogger("newsharvest.cascade")

    def run(self, subject: Any, accept: Callable[[StrategyOutcome[Any]], bool]) -> CascadeResult[Any]:
        outcomes: list[StrategyOutcome[Any]] = []
        for strategy in self.strategies:
            try:
                outcome = strategy.attempt(subject)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    self._logger,
                    logging.WARNING,
                    "cascade_strategy_failed",
                    strategy=strategy.name,
                    error=str(exc),
                )
                outcome = StrategyOutcome(strategy=strategy.name, value=None, error=str(exc))
            outcomes.append(outcome)
            if outcome.produced and accept(outcome):
                return CascadeResult(selected=outcome, outcomes=tuple(outcomes))
        return CascadeResult(selected=None, outcomes=tuple(outcomes))
