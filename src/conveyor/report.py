from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from conveyor.errors import ConveyorError

RunShape = Literal["pipeline", "phases"]
RunOutcome = Literal["complete", "failed", "stopped"]


@dataclass(slots=True)
class GateRecord:
    stage: str
    before: str
    action: str
    after: str = ""
    result: str = ""
    detail: str = ""


@dataclass(slots=True)
class RunReport:
    unit: str
    shape: RunShape
    outcome: RunOutcome = "complete"
    gates: list[GateRecord] = field(default_factory=list)
    iterations: int = 0
    escalations: list[dict[str, Any]] = field(default_factory=list)
    reason: str = ""
    failed_stage: str | None = None
    error: str | None = None

    def record(
        self,
        stage: str,
        before: str,
        action: str,
        *,
        after: str = "",
        result: str = "",
        detail: str = "",
    ) -> GateRecord:
        entry = GateRecord(
            stage=str(stage),
            before=before,
            action=action,
            after=after,
            result=result,
            detail=detail,
        )
        self.gates.append(entry)
        return entry

    def fail(self, exc: ConveyorError) -> None:
        self.outcome = "failed"
        self.reason = str(exc)
        self.failed_stage = exc.stage
        self.error = type(exc).__name__

    def stop(self, reason: str, *, stage: str | None = None) -> None:
        self.outcome = "stopped"
        self.reason = reason
        self.failed_stage = stage

    @property
    def succeeded(self) -> bool:
        return self.outcome == "complete"

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit": self.unit,
            "shape": self.shape,
            "outcome": self.outcome,
            "iterations": self.iterations,
            "gates": [asdict(entry) for entry in self.gates],
            "escalations": list(self.escalations),
            "reason": self.reason,
            "failed_stage": self.failed_stage,
            "error": self.error,
        }
