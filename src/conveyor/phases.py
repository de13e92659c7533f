"""Phase summary reconciliation.

The summary table and the per-phase detail documents both describe progress.
Checkbox counts in the detail documents are authoritative; each row's status
and progress cells are derived from them and written back only when they
drift. The current phase is the first row in table order that is not DONE.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from typing import Any

from conveyor.errors import ResolutionError
from conveyor.markers import (
    CheckboxCounts,
    PhaseRow,
    PhaseSection,
    PhaseStatus,
    PhaseSummary,
    count_checkboxes,
    parse_phase_sections,
    parse_summary,
    render_summary,
)
from conveyor.store.base import ArtifactKey, ArtifactStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Reconciliation:
    summary: PhaseSummary
    current: PhaseRow | None
    changed: bool = False
    written: bool = False

    @property
    def complete(self) -> bool:
        return self.current is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows": [
                {
                    "phase": row.number,
                    "title": row.title,
                    "status": row.status.value,
                    "progress": row.progress,
                    "depends_on": list(row.depends_on),
                }
                for row in self.summary.rows
            ],
            "current": self.current.number if self.current else None,
            "changed": self.changed,
            "written": self.written,
        }


def derive_row(row: PhaseRow, counts: CheckboxCounts | None) -> PhaseRow:
    if counts is None:
        return replace(row, status=PhaseStatus.PENDING, progress="0/?")
    if counts.complete:
        status = PhaseStatus.DONE
    elif counts.checked > 0:
        status = PhaseStatus.PARTIAL
    else:
        status = PhaseStatus.PENDING
    return replace(row, status=status, progress=counts.progress)


def reconcile_summary(
    summary: PhaseSummary, counts: Mapping[int, CheckboxCounts | None]
) -> PhaseSummary:
    return summary.with_rows([derive_row(row, counts.get(row.number)) for row in summary.rows])


def select_current(summary: PhaseSummary, exclude: Iterable[int] = ()) -> PhaseRow | None:
    skipped = set(exclude)
    for row in summary.rows:
        if row.done or row.number in skipped:
            continue
        return row
    return None


def unmet_dependencies(row: PhaseRow, summary: PhaseSummary) -> list[int]:
    unmet: list[int] = []
    for dependency in row.depends_on:
        target = summary.row(dependency)
        if target is None or not target.done:
            unmet.append(dependency)
    return unmet


def render_phase_detail(row: PhaseRow, section: PhaseSection | None) -> str:
    title = (section.title if section and section.title else row.title) or f"Phase {row.number}"
    goal = section.goal if section and section.goal else title
    tasks = list(section.tasks) if section and section.tasks else [f"Complete {title}"]
    acceptance = list(section.acceptance) if section else []

    lines = [f"# Phase {row.number}: {title}", "", f"Goal: {goal}", "", "## Tasks", ""]
    lines.extend(f"- [ ] {task}" for task in tasks)
    if acceptance:
        lines.extend(["", "## Acceptance criteria", ""])
        lines.extend(f"- {criterion}" for criterion in acceptance)
    return "\n".join(lines) + "\n"


class PhaseReconciler:
    def __init__(self, store: ArtifactStore) -> None:
        self.store = store

    def read_summary(self) -> PhaseSummary:
        key = ArtifactKey.phase_summary()
        text = self.store.read_optional(key)
        if text is None:
            raise ResolutionError(f"No phase summary found at {self.store.path_for(key)}.")
        return parse_summary(text, artifact=str(key))

    def count(self, phase: int) -> CheckboxCounts | None:
        key = ArtifactKey.phase_detail(phase)
        text = self.store.read_optional(key)
        if text is None:
            return None
        return count_checkboxes(text, artifact=str(key))

    def reconcile(self, *, exclude: Iterable[int] = (), write: bool = True) -> Reconciliation:
        summary = self.read_summary()
        counts = {row.number: self.count(row.number) for row in summary.rows}
        updated = reconcile_summary(summary, counts)
        changed = [
            (old.number, old.status.value, new.status.value, old.progress, new.progress)
            for old, new in zip(summary.rows, updated.rows, strict=True)
            if (old.status, old.progress) != (new.status, new.progress)
        ]
        written = False
        if changed and write:
            rendered = render_summary(updated)
            self.store.update(ArtifactKey.phase_summary(), lambda _current: rendered)
            written = True
            for number, old_status, new_status, old_progress, new_progress in changed:
                logger.info(
                    "phase %s: %s %s -> %s %s",
                    number,
                    old_status,
                    old_progress,
                    new_status,
                    new_progress,
                )
        current = select_current(updated, exclude)
        return Reconciliation(
            summary=updated, current=current, changed=bool(changed), written=written
        )

    def materialize(self, row: PhaseRow, summary: PhaseSummary) -> bool:
        """Create the phase document when it is missing. Never overwrites."""
        key = ArtifactKey.phase_detail(row.number)
        if self.store.exists(key):
            return False
        sections = parse_phase_sections("\n".join(summary.lines))
        created = self.store.create(key, render_phase_detail(row, sections.get(row.number)))
        if created:
            logger.info("materialized %s", key)
        return created
