from __future__ import annotations

import logging
import os
import re
import string
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from conveyor.config import LayoutConfig
from conveyor.errors import ArtifactMissingError, StoreError
from conveyor.store.base import ArtifactKey, ArtifactKind, ArtifactStore

logger = logging.getLogger(__name__)

_TEMPLATE_FIELDS = {
    ArtifactKind.REQUIREMENTS: "requirements",
    ArtifactKind.PLAN: "plan",
    ArtifactKind.TASKLIST: "tasklist",
    ArtifactKind.PHASE_SUMMARY: "phase_summary",
    ArtifactKind.PHASE_DETAIL: "phase_detail",
    ArtifactKind.REVIEW_REPORT: "review_report",
    ArtifactKind.SUMMARY_DOC: "summary_doc",
    ArtifactKind.CHANGELOG: "changelog",
    ArtifactKind.ACTIVE_UNIT_POINTER: "active_unit_pointer",
}


def _template_pattern(template: str) -> tuple[str, re.Pattern[str]]:
    glob_parts: list[str] = []
    regex_parts: list[str] = []
    for literal, field_name, _spec, _conversion in string.Formatter().parse(template):
        glob_parts.append(literal)
        regex_parts.append(re.escape(literal))
        if field_name is None:
            continue
        if field_name != "phase":
            raise StoreError(f"Unsupported placeholder '{field_name}' in phase template.")
        glob_parts.append("*")
        regex_parts.append(r"(?P<phase>\d+)")
    return "".join(glob_parts), re.compile("^" + "".join(regex_parts) + "$")


class FileArtifactStore(ArtifactStore):
    """Artifacts as plain files under a project root.

    Writes go through a temporary file and ``os.replace`` so readers never
    observe half-written documents. Each key has its own lock file.
    """

    LOCK_SUFFIX = ".lock"

    def __init__(
        self,
        root: Path,
        layout: LayoutConfig | None = None,
        *,
        lock_timeout_seconds: float = 3.0,
    ) -> None:
        self.root = root.resolve()
        self.layout = layout or LayoutConfig()
        self.lock_timeout_seconds = lock_timeout_seconds

    def path_for(self, key: ArtifactKey) -> Path:
        template = getattr(self.layout, _TEMPLATE_FIELDS[key.kind])
        try:
            relative = template.format(unit=key.unit or "", phase=key.phase or 0)
        except (KeyError, IndexError, ValueError) as exc:
            raise StoreError(f"Invalid layout template for {key.kind.value}: {template}") from exc
        path = (self.root / relative).resolve()
        if self.root not in path.parents:
            raise StoreError(f"Artifact path escapes the project root: {relative}")
        return path

    def _lock_path(self, path: Path) -> Path:
        return path.with_name(path.name + self.LOCK_SUFFIX)

    def _lock_is_stale(self, lock_path: Path) -> bool:
        """A lock is stale when its holder process is gone.

        Locks without a readable pid fall back to age: they are stale once
        older than the lock timeout.
        """
        try:
            raw = lock_path.read_text(encoding="utf-8").strip()
            age = time.time() - lock_path.stat().st_mtime
        except FileNotFoundError:
            return False
        if not raw.isdigit():
            return age > self.lock_timeout_seconds
        try:
            os.kill(int(raw), 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    @contextmanager
    def _writer_lock(self, key: ArtifactKey) -> Iterator[Path]:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        lock_path = self._lock_path(path)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._lock_is_stale(lock_path):
                    logger.warning("removing stale writer lock %s", lock_path)
                    lock_path.unlink(missing_ok=True)
                    continue
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StoreError(f"Timed out waiting for writer lock on {key}.") from exc
                time.sleep(0.02)

        try:
            yield path
        finally:
            try:
                lock_path.unlink()
            except FileNotFoundError:
                pass

    @staticmethod
    def _replace(path: Path, content: str) -> None:
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(temp_name, path)
        except BaseException:
            try:
                os.unlink(temp_name)
            except OSError:
                pass
            raise

    def exists(self, key: ArtifactKey) -> bool:
        return self.path_for(key).is_file()

    def read(self, key: ArtifactKey) -> str:
        path = self.path_for(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ArtifactMissingError(f"Artifact not found: {key}") from exc
        except UnicodeDecodeError as exc:
            raise StoreError(f"Artifact is not UTF-8 text: {key}") from exc

    def write(self, key: ArtifactKey, content: str) -> None:
        with self._writer_lock(key) as path:
            self._replace(path, content)
        logger.debug("wrote %s", key)

    def create(self, key: ArtifactKey, content: str) -> bool:
        with self._writer_lock(key) as path:
            if path.exists():
                return False
            self._replace(path, content)
        logger.debug("created %s", key)
        return True

    def update(self, key: ArtifactKey, updater: Callable[[str], str]) -> str:
        with self._writer_lock(key) as path:
            try:
                current = path.read_text(encoding="utf-8")
            except FileNotFoundError as exc:
                raise ArtifactMissingError(f"Artifact not found: {key}") from exc
            updated = updater(current)
            if updated != current:
                self._replace(path, updated)
                logger.debug("updated %s", key)
        return updated

    def list_phase_details(self) -> list[int]:
        glob_pattern, regex = _template_pattern(self.layout.phase_detail)
        phases: set[int] = set()
        for candidate in self.root.glob(glob_pattern):
            if not candidate.is_file():
                continue
            relative = candidate.relative_to(self.root).as_posix()
            match = regex.match(relative)
            if match and int(match.group("phase")) >= 1:
                phases.add(int(match.group("phase")))
        return sorted(phases)
