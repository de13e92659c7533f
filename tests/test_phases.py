from pathlib import Path

import pytest

from conveyor.errors import ResolutionError
from conveyor.markers import PhaseStatus, parse_summary
from conveyor.phases import PhaseReconciler, select_current, unmet_dependencies
from conveyor.store import ArtifactKey, FileArtifactStore

SUMMARY = """# Delivery phases

| Phase | Title | Status | Progress | Depends On |
|-------|-------|--------|----------|------------|
| 1 | Setup | PENDING | 0/? | - |
| 2 | Storage | PENDING | 0/? | 1 |
| 3 | Engine | PENDING | 0/? | 2 |
| 4 | CLI | PENDING | 0/? | 3 |

## Phase 4: CLI

Goal: Ship the command line

- [ ] Add run command
- [ ] Add status command

Acceptance:
- `conveyor run` exits 0 on a finished unit
"""


def _store(tmp_path: Path, summary: str = SUMMARY) -> FileArtifactStore:
    store = FileArtifactStore(tmp_path)
    store.write(ArtifactKey.phase_summary(), summary)
    return store


def test_reconcile_derives_status_and_progress_from_checkboxes(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.write(ArtifactKey.phase_detail(1), "- [x] a\n- [x] b\n")
    store.write(ArtifactKey.phase_detail(2), "- [x] a\n- [ ] b\n- [ ] c\n")
    store.write(ArtifactKey.phase_detail(3), "- [ ] a\n")

    reconciliation = PhaseReconciler(store).reconcile()

    rows = {row.number: row for row in reconciliation.summary.rows}
    assert (rows[1].status, rows[1].progress) == (PhaseStatus.DONE, "2/2")
    assert (rows[2].status, rows[2].progress) == (PhaseStatus.PARTIAL, "1/3")
    assert (rows[3].status, rows[3].progress) == (PhaseStatus.PENDING, "0/1")
    assert (rows[4].status, rows[4].progress) == (PhaseStatus.PENDING, "0/?")
    assert reconciliation.current is not None and reconciliation.current.number == 2
    assert reconciliation.written is True

    on_disk = store.read(ArtifactKey.phase_summary())
    assert "| 2 | Storage | PARTIAL | 1/3 | 1 |" in on_disk
    assert "## Phase 4: CLI" in on_disk


def test_current_phase_is_first_row_not_done(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.write(ArtifactKey.phase_detail(1), "- [x] a\n")
    store.write(ArtifactKey.phase_detail(2), "- [x] a\n")
    store.write(ArtifactKey.phase_detail(3), "- [x] a\n- [ ] b\n")

    reconciliation = PhaseReconciler(store).reconcile()

    statuses = [row.status for row in reconciliation.summary.rows]
    assert statuses == [
        PhaseStatus.DONE,
        PhaseStatus.DONE,
        PhaseStatus.PARTIAL,
        PhaseStatus.PENDING,
    ]
    assert reconciliation.current is not None and reconciliation.current.number == 3


def test_done_row_without_document_is_reset(tmp_path: Path) -> None:
    summary = SUMMARY.replace("| 1 | Setup | PENDING | 0/? |", "| 1 | Setup | DONE | 3/3 |")
    store = _store(tmp_path, summary)

    reconciliation = PhaseReconciler(store).reconcile()

    assert reconciliation.summary.rows[0].status is PhaseStatus.PENDING
    assert reconciliation.summary.rows[0].progress == "0/?"
    assert reconciliation.current is not None and reconciliation.current.number == 1


def test_reconcile_writes_nothing_when_table_is_current(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.write(ArtifactKey.phase_detail(1), "- [x] a\n- [ ] b\n")
    reconciler = PhaseReconciler(store)
    reconciler.reconcile()
    path = store.path_for(ArtifactKey.phase_summary())
    before = (path.read_text(encoding="utf-8"), path.stat().st_mtime_ns)

    second = reconciler.reconcile()

    assert second.changed is False
    assert second.written is False
    assert (path.read_text(encoding="utf-8"), path.stat().st_mtime_ns) == before


def test_dry_run_does_not_write(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.write(ArtifactKey.phase_detail(1), "- [x] a\n")

    reconciliation = PhaseReconciler(store).reconcile(write=False)

    assert reconciliation.changed is True
    assert reconciliation.written is False
    assert store.read(ArtifactKey.phase_summary()) == SUMMARY


def test_all_done_means_complete_and_skips_are_excluded(tmp_path: Path) -> None:
    store = _store(tmp_path)
    for phase in (1, 2, 4):
        store.write(ArtifactKey.phase_detail(phase), "- [x] a\n")

    reconciler = PhaseReconciler(store)
    assert reconciler.reconcile().current.number == 3
    assert reconciler.reconcile(exclude={3}).current is None

    store.write(ArtifactKey.phase_detail(3), "- [x] a\n")
    assert reconciler.reconcile().complete is True


def test_materialize_uses_summary_section_and_never_resets(tmp_path: Path) -> None:
    store = _store(tmp_path)
    reconciler = PhaseReconciler(store)
    summary = reconciler.read_summary()
    row = summary.row(4)

    assert reconciler.materialize(row, summary) is True
    key = ArtifactKey.phase_detail(4)
    text = store.read(key)
    assert text.startswith("# Phase 4: CLI\n")
    assert "Goal: Ship the command line" in text
    assert "- [ ] Add run command" in text
    assert "- `conveyor run` exits 0 on a finished unit" in text
    assert reconciler.count(4).total == 2

    store.write(key, text.replace("- [ ] Add run command", "- [x] Add run command"))
    checked = store.read(key)

    assert reconciler.materialize(row, summary) is False
    assert reconciler.materialize(row, summary) is False
    assert store.read(key) == checked


def test_materialize_without_section_writes_placeholder(tmp_path: Path) -> None:
    store = _store(tmp_path)
    reconciler = PhaseReconciler(store)
    summary = reconciler.read_summary()

    reconciler.materialize(summary.row(2), summary)

    text = store.read(ArtifactKey.phase_detail(2))
    assert "- [ ] Complete Storage" in text
    assert reconciler.count(2).progress == "0/1"


def test_unmet_dependencies_lists_phases_not_done() -> None:
    summary = parse_summary(
        SUMMARY.replace("| 1 | Setup | PENDING | 0/? |", "| 1 | Setup | DONE | 1/1 |")
    )

    assert unmet_dependencies(summary.row(2), summary) == []
    assert unmet_dependencies(summary.row(3), summary) == [2]
    assert select_current(summary).number == 2


def test_missing_summary_cannot_resolve(tmp_path: Path) -> None:
    with pytest.raises(ResolutionError):
        PhaseReconciler(FileArtifactStore(tmp_path)).reconcile()
