from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from conveyor.errors import FormatError
from conveyor.markers import CheckboxCounts, count_checkboxes, parse_checkboxes, read_status
from conveyor.store.base import ArtifactKey, ArtifactStore

logger = logging.getLogger(__name__)

PLAN_APPROVED_TOKEN = "APPROVED"
REVIEW_TOKENS = {"OK", "NEEDS_FIXES", "BLOCKED"}
REVIEW_OK_TOKEN = "OK"
VALIDATED_TOKEN = "VALIDATED"


class Stage(StrEnum):
    REQUIREMENTS = "REQUIREMENTS"
    RESEARCH_PLAN = "RESEARCH_PLAN"
    TASK_BREAKDOWN = "TASK_BREAKDOWN"
    IMPLEMENTATION = "IMPLEMENTATION"
    REVIEW = "REVIEW"
    DOCUMENTATION = "DOCUMENTATION"
    VALIDATION = "VALIDATION"
    SYNC = "SYNC"


PIPELINE_STAGES: tuple[Stage, ...] = tuple(Stage)


class GateStatus(StrEnum):
    PASSED = "PASSED"
    PENDING = "PENDING"


@dataclass(frozen=True, slots=True)
class GateResult:
    stage: str
    status: GateStatus
    reason: str = ""
    counts: CheckboxCounts | None = None
    token: str | None = None
    vacuous: bool = False

    @property
    def passed(self) -> bool:
        return self.status is GateStatus.PASSED

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "stage": self.stage,
            "status": self.status.value,
            "reason": self.reason,
        }
        if self.counts is not None:
            payload["progress"] = self.counts.progress
        if self.token is not None:
            payload["token"] = self.token
        if self.vacuous:
            payload["vacuous"] = True
        return payload


def _passed(stage: Stage | str, reason: str, **extra: Any) -> GateResult:
    return GateResult(stage=str(stage), status=GateStatus.PASSED, reason=reason, **extra)


def _pending(stage: Stage | str, reason: str, **extra: Any) -> GateResult:
    return GateResult(stage=str(stage), status=GateStatus.PENDING, reason=reason, **extra)


def mentions(text: str, unit: str) -> bool:
    pattern = re.compile(r"(?<![A-Za-z0-9_-])" + re.escape(unit) + r"(?![A-Za-z0-9_-])")
    return pattern.search(text) is not None


def _status_gate(
    stage: Stage, store: ArtifactStore, key: ArtifactKey, expected: str
) -> GateResult:
    text = store.read_optional(key)
    if text is None:
        return _pending(stage, f"{key} does not exist")
    token = read_status(text, artifact=str(key))
    if token is None:
        return _pending(stage, f"{key} has no Status line")
    if token != expected:
        return _pending(stage, f"{key} status is {token}, expected {expected}", token=token)
    return _passed(stage, f"{key} status is {expected}", token=token)


def _exists_gate(stage: Stage, store: ArtifactStore, key: ArtifactKey) -> GateResult:
    if store.exists(key):
        return _passed(stage, f"{key} exists")
    return _pending(stage, f"{key} does not exist")


def _review_gate(store: ArtifactStore, unit: str) -> GateResult:
    key = ArtifactKey.review_report(unit)
    text = store.read_optional(key)
    if text is None:
        return _pending(Stage.REVIEW, f"{key} does not exist")
    token = read_status(text, artifact=str(key))
    if token is None:
        return _pending(Stage.REVIEW, f"{key} has no Status line")
    if token not in REVIEW_TOKENS:
        raise FormatError(
            f"Review status must be one of {', '.join(sorted(REVIEW_TOKENS))}, got {token}",
            artifact=str(key),
            stage=Stage.REVIEW.value,
        )
    if token == REVIEW_OK_TOKEN:
        return _passed(Stage.REVIEW, "review status is OK", token=token)
    return _pending(Stage.REVIEW, f"review status is {token}", token=token)


def _tasklist_gate(stage: Stage, store: ArtifactStore, unit: str) -> GateResult:
    key = ArtifactKey.tasklist(unit)
    text = store.read_optional(key)
    if text is None:
        return _pending(stage, f"{key} does not exist")
    counts = count_checkboxes(text, artifact=str(key))
    if stage is Stage.TASK_BREAKDOWN:
        return _passed(stage, f"{key} parses ({counts.total} tasks)", counts=counts)
    if counts.total == 0:
        return _passed(stage, f"{key} holds no tasks", counts=counts, vacuous=True)
    if counts.unchecked:
        return _pending(stage, f"{counts.unchecked} unchecked tasks remain", counts=counts)
    return _passed(stage, f"all {counts.total} tasks checked", counts=counts)


def _sync_gate(store: ArtifactStore, unit: str) -> GateResult:
    changelog = store.read_optional(ArtifactKey.changelog())
    if changelog is None or not mentions(changelog, unit):
        return _pending(Stage.SYNC, f"changelog() does not mention {unit}")
    for phase in store.list_phase_details():
        key = ArtifactKey.phase_detail(phase)
        text = store.read_optional(key)
        if text is None:
            continue
        for box in parse_checkboxes(text, artifact=str(key)):
            if not box.checked and mentions(box.text, unit):
                return _pending(Stage.SYNC, f"{key} line {box.line} is still unchecked")
    return _passed(Stage.SYNC, f"changelog() mentions {unit}")


def evaluate(stage: Stage, store: ArtifactStore, unit: str) -> GateResult:
    """Decide whether ``stage`` is complete for ``unit``.

    Reads only. A present artifact that cannot be parsed raises FormatError
    instead of reading as PENDING or PASSED.
    """
    stage = Stage(stage)
    if stage is Stage.REQUIREMENTS:
        result = _exists_gate(stage, store, ArtifactKey.requirements(unit))
    elif stage is Stage.RESEARCH_PLAN:
        result = _status_gate(stage, store, ArtifactKey.plan(unit), PLAN_APPROVED_TOKEN)
    elif stage in (Stage.TASK_BREAKDOWN, Stage.IMPLEMENTATION):
        result = _tasklist_gate(stage, store, unit)
    elif stage is Stage.REVIEW:
        result = _review_gate(store, unit)
    elif stage is Stage.DOCUMENTATION:
        result = _exists_gate(stage, store, ArtifactKey.summary_doc(unit))
    elif stage is Stage.VALIDATION:
        result = _status_gate(stage, store, ArtifactKey.summary_doc(unit), VALIDATED_TOKEN)
    else:
        result = _sync_gate(store, unit)
    logger.debug("gate %s for %s: %s (%s)", stage.value, unit, result.status.value, result.reason)
    return result


def evaluate_phase(store: ArtifactStore, phase: int) -> GateResult:
    key = ArtifactKey.phase_detail(phase)
    name = f"phase-{phase}"
    text = store.read_optional(key)
    if text is None:
        return _pending(name, f"{key} does not exist")
    counts = count_checkboxes(text, artifact=str(key))
    if counts.complete:
        return _passed(name, f"all {counts.total} tasks checked", counts=counts)
    if counts.total == 0:
        return _pending(name, f"{key} holds no tasks", counts=counts)
    return _pending(name, f"{counts.unchecked} unchecked tasks remain", counts=counts)
