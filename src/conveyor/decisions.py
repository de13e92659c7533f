from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import click

from conveyor.errors import ConveyorError

logger = logging.getLogger(__name__)


class EscalationKind(StrEnum):
    APPROVAL = "approval"
    FAILURE_STREAK = "failure_streak"
    BOUND_EXCEEDED = "bound_exceeded"


class Decision(StrEnum):
    APPROVE = "approve"
    SKIP_UNIT = "skip"
    STOP = "stop"
    EXTEND_BOUND = "extend"


@dataclass(frozen=True, slots=True)
class Escalation:
    kind: EscalationKind
    unit: str
    reason: str
    options: tuple[Decision, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "unit": self.unit,
            "reason": self.reason,
            "options": [option.value for option in self.options],
        }


class DecisionProvider(ABC):
    """Answers escalations on behalf of a human."""

    @abstractmethod
    def decide(self, escalation: Escalation) -> Decision:
        """Pick one of ``escalation.options``."""

    def resolve(self, escalation: Escalation) -> Decision:
        decision = Decision(self.decide(escalation))
        if decision not in escalation.options:
            raise ConveyorError(
                f"Decision '{decision.value}' is not one of "
                f"{[option.value for option in escalation.options]} for {escalation.unit}."
            )
        logger.info(
            "escalation %s for %s answered %s: %s",
            escalation.kind.value,
            escalation.unit,
            decision.value,
            escalation.reason,
        )
        return decision


class PresetDecisionProvider(DecisionProvider):
    """Non-interactive answers. Anything not pre-approved is a STOP."""

    def __init__(
        self,
        *,
        approve_plans: bool = False,
        extend_bound: bool = False,
        skip_failing: bool = False,
    ) -> None:
        self.approve_plans = approve_plans
        self.extend_bound = extend_bound
        self.skip_failing = skip_failing

    def decide(self, escalation: Escalation) -> Decision:
        if self.approve_plans and Decision.APPROVE in escalation.options:
            return Decision.APPROVE
        if self.extend_bound and Decision.EXTEND_BOUND in escalation.options:
            return Decision.EXTEND_BOUND
        if self.skip_failing and Decision.SKIP_UNIT in escalation.options:
            return Decision.SKIP_UNIT
        return Decision.STOP


class PromptDecisionProvider(DecisionProvider):
    def __init__(self, preset: PresetDecisionProvider | None = None) -> None:
        self.preset = preset

    def decide(self, escalation: Escalation) -> Decision:
        if self.preset is not None:
            answer = self.preset.decide(escalation)
            if answer is not Decision.STOP:
                return answer
        if escalation.options == (Decision.STOP,):
            return Decision.STOP
        click.echo(f"[{escalation.kind.value}] {escalation.unit}: {escalation.reason}", err=True)
        raw = click.prompt(
            "Decision",
            type=click.Choice([option.value for option in escalation.options]),
            default=Decision.STOP.value,
            err=True,
        )
        return Decision(raw)
