import os
import subprocess
import sys
import time
from pathlib import Path

import pytest

from conveyor.config import LayoutConfig
from conveyor.errors import ArtifactMissingError, ResolutionError, StoreError
from conveyor.store import ArtifactKey, FileArtifactStore


def test_keys_render_logical_names() -> None:
    assert str(ArtifactKey.plan("U-1")) == "plan(U-1)"
    assert str(ArtifactKey.phase_detail(7)) == "phase-detail(7)"
    assert str(ArtifactKey.changelog()) == "changelog()"


@pytest.mark.parametrize("unit", ["", "   ", "a/b", "a b", "..", "x..y"])
def test_keys_reject_units_that_are_not_plain(unit: str) -> None:
    with pytest.raises(ResolutionError):
        ArtifactKey.tasklist(unit)


def test_store_write_read_and_layout(tmp_path: Path) -> None:
    store = FileArtifactStore(tmp_path)
    key = ArtifactKey.plan("U-1")

    assert store.exists(key) is False
    assert store.read_optional(key) is None
    with pytest.raises(ArtifactMissingError):
        store.read(key)

    store.write(key, "# Plan\n")

    assert store.path_for(key) == tmp_path.resolve() / "docs" / "plan" / "U-1.md"
    assert store.read(key) == "# Plan\n"
    assert not list(store.path_for(key).parent.glob("*.lock"))


def test_create_never_overwrites(tmp_path: Path) -> None:
    store = FileArtifactStore(tmp_path)
    key = ArtifactKey.phase_detail(3)

    assert store.create(key, "- [ ] a\n") is True
    store.write(key, "- [x] a\n")
    assert store.create(key, "- [ ] a\n") is False
    assert store.read(key) == "- [x] a\n"


def test_update_is_read_modify_write(tmp_path: Path) -> None:
    store = FileArtifactStore(tmp_path)
    key = ArtifactKey.changelog()
    store.write(key, "# Changelog\n")

    result = store.update(key, lambda text: text + "- U-1 shipped\n")

    assert result == "# Changelog\n- U-1 shipped\n"
    assert store.read(key) == result
    with pytest.raises(ArtifactMissingError):
        store.update(ArtifactKey.plan("U-2"), lambda text: text)


def test_writer_lock_times_out(tmp_path: Path) -> None:
    store = FileArtifactStore(tmp_path, lock_timeout_seconds=0.05)
    key = ArtifactKey.requirements("U-1")
    path = store.path_for(key)
    path.parent.mkdir(parents=True)
    (path.parent / (path.name + ".lock")).write_text(str(os.getpid()), encoding="utf-8")

    with pytest.raises(StoreError, match="Timed out"):
        store.write(key, "# Requirements\n")
    assert not path.exists()


def _dead_pid() -> int:
    process = subprocess.Popen([sys.executable, "-c", "pass"])
    process.wait()
    return process.pid


def test_writer_lock_left_by_dead_process_is_taken_over(tmp_path: Path) -> None:
    store = FileArtifactStore(tmp_path, lock_timeout_seconds=0.05)
    key = ArtifactKey.phase_summary()
    path = store.path_for(key)
    path.parent.mkdir(parents=True)
    lock = path.parent / (path.name + ".lock")
    lock.write_text(str(_dead_pid()), encoding="utf-8")

    store.write(key, "# Delivery phases\n")

    assert store.read(key) == "# Delivery phases\n"
    assert not lock.exists()


def test_writer_lock_without_pid_expires_with_age(tmp_path: Path) -> None:
    store = FileArtifactStore(tmp_path, lock_timeout_seconds=0.05)
    key = ArtifactKey.changelog()
    path = store.path_for(key)
    lock = path.parent / (path.name + ".lock")
    lock.write_text("", encoding="utf-8")
    old = time.time() - 60
    os.utime(lock, (old, old))

    store.write(key, "# Changelog\n")

    assert store.read(key) == "# Changelog\n"
    assert not lock.exists()


def test_list_phase_details_follows_template(tmp_path: Path) -> None:
    store = FileArtifactStore(tmp_path)
    store.write(ArtifactKey.phase_detail(7), "- [ ] a\n")
    store.write(ArtifactKey.phase_detail(1), "- [ ] b\n")
    (tmp_path / "docs" / "phases" / "phase-xx.md").write_text("noise", encoding="utf-8")

    assert store.list_phase_details() == [1, 7]


def test_paths_may_not_escape_root(tmp_path: Path) -> None:
    store = FileArtifactStore(tmp_path / "project", LayoutConfig(plan="../outside/{unit}.md"))

    with pytest.raises(StoreError, match="escapes"):
        store.path_for(ArtifactKey.plan("U-1"))
