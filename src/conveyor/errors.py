from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from conveyor.report import RunReport


class ConveyorError(RuntimeError):
    """Base class for every error that halts a unit's loop."""

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage
        self.report: RunReport | None = None


class StoreError(ConveyorError):
    """Raised when the artifact store cannot complete an operation."""


class ArtifactMissingError(StoreError):
    """Raised when reading an artifact that does not exist."""


class ResolutionError(ConveyorError):
    """Raised when the unit of work cannot be determined."""


class FormatError(ConveyorError):
    """Raised when an artifact exists but cannot be parsed."""

    def __init__(
        self,
        message: str,
        *,
        artifact: str | None = None,
        line: int | None = None,
        stage: str | None = None,
    ) -> None:
        location = ""
        if artifact:
            location = f" [{artifact}" + (f":{line}" if line is not None else "") + "]"
        super().__init__(f"{message}{location}", stage=stage)
        self.artifact = artifact
        self.line = line


class GateRegressionError(ConveyorError):
    """Raised when a gate that passed earlier in the run reads PENDING again."""


class StageIncompleteError(ConveyorError):
    """Raised when a worker returned but the stage gate is still pending."""


class NothingToImplementError(ConveyorError):
    """Raised when the tasklist holds no tasks at all."""


class StageBlockedError(ConveyorError):
    """Raised when a worker is blocked and nobody unblocked it."""


class WorkerFailureError(ConveyorError):
    """Raised when a failure streak escalation ends the unit."""

    def __init__(self, message: str, *, stage: str | None = None, decision: str = "") -> None:
        super().__init__(message, stage=stage)
        self.decision = decision


class ReviewLoopExceededError(ConveyorError):
    """Raised when the review loop exceeds its bound."""


class BoundExceededError(ConveyorError):
    """Raised when a loop bound is exceeded and no extension was granted."""


class PhaseDependencyError(ConveyorError):
    """Raised when the current phase depends on phases that are not done."""

    def __init__(self, message: str, *, phase: int, unmet: list[int]) -> None:
        super().__init__(message, stage=f"phase-{phase}")
        self.phase = phase
        self.unmet = list(unmet)


def describe(exc: BaseException) -> dict[str, Any]:
    payload: dict[str, Any] = {"error": type(exc).__name__, "message": str(exc)}
    stage = getattr(exc, "stage", None)
    if stage:
        payload["stage"] = stage
    return payload
