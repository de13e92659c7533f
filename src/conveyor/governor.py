from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from conveyor.decisions import Decision, DecisionProvider, Escalation, EscalationKind
from conveyor.errors import BoundExceededError

logger = logging.getLogger(__name__)


class Outcome(StrEnum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILURE = "FAILURE"


class Verdict(StrEnum):
    CONTINUE = "CONTINUE"
    COMPLETE = "COMPLETE"
    SKIP_UNIT = "SKIP_UNIT"
    STOP = "STOP"


@dataclass(slots=True)
class Bound:
    limit: int
    extension: int = 0
    extended: bool = False

    @property
    def extendable(self) -> bool:
        return self.extension > 0 and not self.extended

    def extend(self) -> int:
        if not self.extendable:
            raise BoundExceededError(f"Bound {self.limit} cannot be extended again.")
        self.limit += self.extension
        self.extended = True
        return self.limit


@dataclass(slots=True)
class LoopCounter:
    name: str
    value: int = 0

    def increment(self) -> int:
        self.value += 1
        return self.value


@dataclass(slots=True)
class FailureStreak:
    count: int = 0

    def record_failure(self) -> int:
        self.count += 1
        return self.count

    def reset(self) -> None:
        self.count = 0


class IterationGovernor:
    """Bounded iteration with per-unit failure streaks.

    ``begin_iteration`` guards the run-wide loop counter against ``bound``;
    ``record`` folds one iteration's outcome into the unit's failure streak.
    Both escalate through ``decisions`` and never resolve a bound or a streak
    on their own. Counters live for one run only.
    """

    def __init__(
        self,
        loop_name: str,
        bound: Bound | None,
        *,
        decisions: DecisionProvider,
        failure_limit: int = 2,
    ) -> None:
        self.loop_name = loop_name
        self.bound = bound
        self.decisions = decisions
        self.failure_limit = max(1, int(failure_limit))
        self.counter = LoopCounter(loop_name)
        self.streaks: dict[str, FailureStreak] = {}
        self.decided: dict[str, Decision] = {}
        self.escalations: list[dict[str, Any]] = []

    def _escalate(self, escalation: Escalation) -> Decision:
        if escalation.options == (Decision.STOP,):
            decision = Decision.STOP
            logger.warning("%s: %s", escalation.unit, escalation.reason)
        else:
            decision = self.decisions.resolve(escalation)
        self.escalations.append({**escalation.to_dict(), "decision": decision.value})
        return decision

    def begin_iteration(self) -> Verdict:
        value = self.counter.increment()
        if self.bound is None or value <= self.bound.limit:
            return Verdict.CONTINUE
        if self.bound.extendable:
            options = (Decision.EXTEND_BOUND, Decision.STOP)
        else:
            options = (Decision.STOP,)
        decision = self._escalate(
            Escalation(
                kind=EscalationKind.BOUND_EXCEEDED,
                unit=self.loop_name,
                reason=(
                    f"iteration {value} exceeds the {self.loop_name} bound of {self.bound.limit}"
                ),
                options=options,
            )
        )
        if decision is Decision.EXTEND_BOUND:
            limit = self.bound.extend()
            logger.info("%s bound extended to %s", self.loop_name, limit)
            return Verdict.CONTINUE
        return Verdict.STOP

    def record(self, unit: str, outcome: Outcome, *, done: bool = False) -> Verdict:
        outcome = Outcome(outcome)
        if unit in self.decided:
            return self._verdict_for(self.decided[unit])
        streak = self.streaks.setdefault(unit, FailureStreak())
        if outcome is Outcome.SUCCESS:
            streak.reset()
            return Verdict.COMPLETE if done else Verdict.CONTINUE
        if outcome is Outcome.PARTIAL:
            streak.reset()
            return Verdict.CONTINUE

        count = streak.record_failure()
        logger.warning("%s: %s failure %s of %s", self.loop_name, unit, count, self.failure_limit)
        if count < self.failure_limit:
            return Verdict.CONTINUE
        decision = self._escalate(
            Escalation(
                kind=EscalationKind.FAILURE_STREAK,
                unit=unit,
                reason=f"{count} consecutive failures",
                options=(Decision.SKIP_UNIT, Decision.STOP),
            )
        )
        self.decided[unit] = decision
        return self._verdict_for(decision)

    @staticmethod
    def _verdict_for(decision: Decision) -> Verdict:
        if decision is Decision.SKIP_UNIT:
            return Verdict.SKIP_UNIT
        return Verdict.STOP

    def streak(self, unit: str) -> int:
        streak = self.streaks.get(unit)
        return streak.count if streak else 0
