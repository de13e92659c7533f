from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class WorkerError(RuntimeError):
    """Raised when a worker process cannot run or exits abnormally."""

    def __init__(
        self,
        message: str,
        *,
        worker: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.worker = worker
        self.exit_code = exit_code
        self.retriable = retriable


class ResultKind(StrEnum):
    SUCCESS = "SUCCESS"
    NEEDS_FIXES = "NEEDS_FIXES"
    BLOCKED = "BLOCKED"
    FAILURE = "FAILURE"


@dataclass(slots=True)
class WorkerRequest:
    unit: str
    stage: str
    context: dict[str, Any] = field(default_factory=dict)
    artifacts: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class WorkerResult:
    kind: ResultKind
    artifacts: list[str] = field(default_factory=list)
    reason: str = ""
    appended_tasks: int = 0
    error: str = ""

    @classmethod
    def success(cls, artifacts: list[str] | None = None) -> WorkerResult:
        return cls(ResultKind.SUCCESS, artifacts=list(artifacts or []))

    @classmethod
    def needs_fixes(cls, reason: str, appended_tasks: int = 0) -> WorkerResult:
        return cls(ResultKind.NEEDS_FIXES, reason=reason, appended_tasks=appended_tasks)

    @classmethod
    def blocked(cls, reason: str) -> WorkerResult:
        return cls(ResultKind.BLOCKED, reason=reason)

    @classmethod
    def failure(cls, error: str) -> WorkerResult:
        return cls(ResultKind.FAILURE, error=error)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> WorkerResult:
        raw_kind = str(payload.get("status") or payload.get("kind") or "").strip().upper()
        try:
            kind = ResultKind(raw_kind.replace("-", "_"))
        except ValueError as exc:
            raise WorkerError(
                f"Worker reported an unknown result status: {raw_kind!r}", retriable=False
            ) from exc
        artifacts = payload.get("artifacts", [])
        if not isinstance(artifacts, list):
            artifacts = []
        try:
            appended = int(payload.get("appended_tasks", 0) or 0)
        except (TypeError, ValueError):
            appended = 0
        return cls(
            kind=kind,
            artifacts=[str(item) for item in artifacts],
            reason=str(payload.get("reason", "") or ""),
            appended_tasks=max(0, appended),
            error=str(payload.get("error", "") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "artifacts": list(self.artifacts),
            "reason": self.reason,
            "appended_tasks": self.appended_tasks,
            "error": self.error,
        }


class Worker(ABC):
    @abstractmethod
    async def invoke(self, request: WorkerRequest) -> WorkerResult:
        """Run one stage to completion and report how it ended."""
