from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

from conveyor.errors import ArtifactMissingError, ResolutionError


class ArtifactKind(StrEnum):
    REQUIREMENTS = "requirements"
    PLAN = "plan"
    TASKLIST = "tasklist"
    PHASE_SUMMARY = "phase-summary"
    PHASE_DETAIL = "phase-detail"
    REVIEW_REPORT = "review-report"
    SUMMARY_DOC = "summary-doc"
    CHANGELOG = "changelog"
    ACTIVE_UNIT_POINTER = "active-unit-pointer"


UNIT_SCOPED_KINDS = {
    ArtifactKind.REQUIREMENTS,
    ArtifactKind.PLAN,
    ArtifactKind.TASKLIST,
    ArtifactKind.REVIEW_REPORT,
    ArtifactKind.SUMMARY_DOC,
}


def validate_unit(unit: str) -> str:
    candidate = str(unit or "").strip()
    if not candidate:
        raise ResolutionError("Unit of work id is empty.")
    if any(char.isspace() for char in candidate) or "/" in candidate or "\\" in candidate:
        raise ResolutionError(f"Unit of work id is not a plain key: {unit!r}")
    if candidate in {".", ".."} or ".." in candidate:
        raise ResolutionError(f"Unit of work id is not a plain key: {unit!r}")
    return candidate


@dataclass(frozen=True, slots=True)
class ArtifactKey:
    kind: ArtifactKind
    unit: str | None = None
    phase: int | None = None

    def __str__(self) -> str:
        if self.kind in UNIT_SCOPED_KINDS:
            return f"{self.kind.value}({self.unit})"
        if self.kind is ArtifactKind.PHASE_DETAIL:
            return f"{self.kind.value}({self.phase})"
        return f"{self.kind.value}()"

    @classmethod
    def requirements(cls, unit: str) -> ArtifactKey:
        return cls(ArtifactKind.REQUIREMENTS, unit=validate_unit(unit))

    @classmethod
    def plan(cls, unit: str) -> ArtifactKey:
        return cls(ArtifactKind.PLAN, unit=validate_unit(unit))

    @classmethod
    def tasklist(cls, unit: str) -> ArtifactKey:
        return cls(ArtifactKind.TASKLIST, unit=validate_unit(unit))

    @classmethod
    def review_report(cls, unit: str) -> ArtifactKey:
        return cls(ArtifactKind.REVIEW_REPORT, unit=validate_unit(unit))

    @classmethod
    def summary_doc(cls, unit: str) -> ArtifactKey:
        return cls(ArtifactKind.SUMMARY_DOC, unit=validate_unit(unit))

    @classmethod
    def phase_summary(cls) -> ArtifactKey:
        return cls(ArtifactKind.PHASE_SUMMARY)

    @classmethod
    def phase_detail(cls, phase: int) -> ArtifactKey:
        if int(phase) < 1:
            raise ValueError(f"Phase numbers start at 1, got {phase}.")
        return cls(ArtifactKind.PHASE_DETAIL, phase=int(phase))

    @classmethod
    def changelog(cls) -> ArtifactKey:
        return cls(ArtifactKind.CHANGELOG)

    @classmethod
    def active_unit_pointer(cls) -> ArtifactKey:
        return cls(ArtifactKind.ACTIVE_UNIT_POINTER)


class ArtifactStore(ABC):
    """Durable named documents shared by every unit of work.

    Readers may run concurrently; writers are serialized per artifact key.
    """

    @abstractmethod
    def exists(self, key: ArtifactKey) -> bool:
        """Return whether the artifact exists."""

    @abstractmethod
    def read(self, key: ArtifactKey) -> str:
        """Return the artifact body or raise ArtifactMissingError."""

    @abstractmethod
    def write(self, key: ArtifactKey, content: str) -> None:
        """Replace the artifact body atomically."""

    @abstractmethod
    def create(self, key: ArtifactKey, content: str) -> bool:
        """Write the artifact only if it is absent. Return True when written."""

    @abstractmethod
    def update(self, key: ArtifactKey, updater: Callable[[str], str]) -> str:
        """Read-modify-write the artifact under its writer lock."""

    @abstractmethod
    def list_phase_details(self) -> list[int]:
        """Return the phase numbers that have a detail document."""

    @abstractmethod
    def path_for(self, key: ArtifactKey) -> Path:
        """Return where the artifact lives."""

    def read_optional(self, key: ArtifactKey) -> str | None:
        try:
            return self.read(key)
        except ArtifactMissingError:
            return None
