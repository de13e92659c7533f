"""Structured markers shared by gates and reconciliation.

Only three things are read out of artifact bodies: task checkboxes, a
``Status: <TOKEN>`` line and the phase summary table. Anything that looks
like one of them but does not parse raises ``FormatError``.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import StrEnum

from conveyor.errors import FormatError

CHECKBOX_PREFIX_PATTERN = re.compile(r"^\s*[-*+]\s+\[[^\]]{0,2}\](?!\()")
CHECKBOX_PATTERN = re.compile(
    r"^(?P<lead>\s*[-*+]\s+)\[(?P<mark>[ xX])\](?P<tail>(?:\s+(?P<text>.*?))?)\s*$"
)
STATUS_PATTERN = re.compile(r"^\s*(?:\*\*)?Status(?:\*\*)?:(?:\*\*)?\s*(?P<token>.*?)\s*$")
STATUS_TOKEN_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")
FENCE_PATTERN = re.compile(r"^\s*(```|~~~)")
HEADING_PATTERN = re.compile(r"^(?P<level>#{1,6})\s+(?P<title>.*?)\s*$")
PHASE_HEADING_PATTERN = re.compile(
    r"^#{2,3}\s+Phase\s+(?P<number>\d+)\b\s*[:.\-–—]?\s*(?P<title>.*?)\s*$",
    re.IGNORECASE,
)
BULLET_PATTERN = re.compile(r"^\s*[-*+]\s+(?:\[[ xX]\]\s+)?(?P<text>.+?)\s*$")
PROGRESS_PATTERN = re.compile(r"^(?P<done>\d+)\s*/\s*(?P<total>\d+|\?)$")
EMPTY_DEPENDENCY_TOKENS = {"", "-", "—", "none", "n/a"}


class CheckState(StrEnum):
    UNCHECKED = "unchecked"
    CHECKED = "checked"


class PhaseStatus(StrEnum):
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    DONE = "DONE"


@dataclass(frozen=True, slots=True)
class Checkbox:
    line: int
    state: CheckState
    text: str

    @property
    def checked(self) -> bool:
        return self.state is CheckState.CHECKED


@dataclass(frozen=True, slots=True)
class CheckboxCounts:
    checked: int
    total: int

    @property
    def unchecked(self) -> int:
        return self.total - self.checked

    @property
    def progress(self) -> str:
        return f"{self.checked}/{self.total}"

    @property
    def complete(self) -> bool:
        return self.total > 0 and self.checked == self.total


def _content_lines(text: str) -> list[tuple[int, str]]:
    """Yield (line number, line) pairs outside fenced code blocks."""
    lines: list[tuple[int, str]] = []
    in_fence = False
    for number, line in enumerate(text.splitlines(), start=1):
        if FENCE_PATTERN.match(line):
            in_fence = not in_fence
            continue
        if not in_fence:
            lines.append((number, line))
    return lines


def parse_checkboxes(text: str, *, artifact: str | None = None) -> list[Checkbox]:
    boxes: list[Checkbox] = []
    for number, line in _content_lines(text):
        if not CHECKBOX_PREFIX_PATTERN.match(line):
            continue
        match = CHECKBOX_PATTERN.match(line)
        if match is None:
            raise FormatError(
                f"Malformed task checkbox: {line.strip()!r}", artifact=artifact, line=number
            )
        state = CheckState.UNCHECKED if match.group("mark") == " " else CheckState.CHECKED
        boxes.append(Checkbox(line=number, state=state, text=(match.group("text") or "").strip()))
    return boxes


def count_checkboxes(text: str, *, artifact: str | None = None) -> CheckboxCounts:
    boxes = parse_checkboxes(text, artifact=artifact)
    return CheckboxCounts(checked=sum(1 for box in boxes if box.checked), total=len(boxes))


def flip_checkboxes(text: str, predicate: Callable[[Checkbox], bool]) -> tuple[str, int]:
    """Check every unchecked box matching ``predicate``. Never unchecks."""
    boxes = {
        box.line: box
        for box in parse_checkboxes(text)
        if box.state is CheckState.UNCHECKED and predicate(box)
    }
    if not boxes:
        return text, 0
    lines = text.splitlines(keepends=True)
    for number in boxes:
        original = lines[number - 1]
        newline = original[len(original.rstrip("\r\n")) :]
        match = CHECKBOX_PATTERN.match(original.rstrip("\r\n"))
        if match is None:
            continue
        lines[number - 1] = f"{match.group('lead')}[x]{match.group('tail')}{newline}"
    return "".join(lines), len(boxes)


def read_status(text: str, *, artifact: str | None = None) -> str | None:
    token: str | None = None
    for number, line in _content_lines(text):
        match = STATUS_PATTERN.match(line)
        if match is None:
            continue
        raw = match.group("token").strip().strip("*`").strip()
        if not STATUS_TOKEN_PATTERN.match(raw):
            raise FormatError(f"Unreadable status token {raw!r}", artifact=artifact, line=number)
        normalized = raw.upper().replace("-", "_")
        if token is not None and normalized != token:
            raise FormatError(
                f"Conflicting status lines ({token} vs {normalized})",
                artifact=artifact,
                line=number,
            )
        token = normalized
    return token


def write_status(text: str, token: str) -> str:
    if not STATUS_TOKEN_PATTERN.match(token):
        raise ValueError(f"Invalid status token: {token!r}")
    lines = text.splitlines(keepends=True)
    visible = {number for number, _line in _content_lines(text)}
    for index, line in enumerate(lines):
        if index + 1 in visible and STATUS_PATTERN.match(line.rstrip("\r\n")):
            newline = line[len(line.rstrip("\r\n")) :] or "\n"
            lines[index] = f"Status: {token}{newline}"
            return "".join(lines)

    status_line = f"Status: {token}\n"
    for index, line in enumerate(lines):
        if line.startswith("# "):
            if not line.endswith("\n"):
                lines[index] = line + "\n"
            lines.insert(index + 1, "\n" + status_line)
            return "".join(lines)
    return status_line + "\n" + "".join(lines)


@dataclass(frozen=True, slots=True)
class PhaseRow:
    number: int
    title: str
    status: PhaseStatus
    progress: str
    depends_on: tuple[int, ...] = ()
    cells: tuple[str, ...] = ()

    @property
    def done(self) -> bool:
        return self.status is PhaseStatus.DONE


@dataclass(slots=True)
class PhaseSummary:
    rows: list[PhaseRow]
    lines: list[str] = field(default_factory=list)
    columns: list[str] = field(default_factory=list)
    table_start: int = 0
    table_end: int = 0

    def row(self, number: int) -> PhaseRow | None:
        for row in self.rows:
            if row.number == number:
                return row
        return None

    def with_rows(self, rows: list[PhaseRow]) -> PhaseSummary:
        return PhaseSummary(
            rows=rows,
            lines=list(self.lines),
            columns=list(self.columns),
            table_start=self.table_start,
            table_end=self.table_end,
        )


def _split_row(line: str) -> list[str]:
    stripped = line.strip()
    if stripped.startswith("|"):
        stripped = stripped[1:]
    if stripped.endswith("|"):
        stripped = stripped[:-1]
    return [cell.strip() for cell in stripped.split("|")]


def _is_separator(line: str) -> bool:
    stripped = line.strip()
    return "-" in stripped and set(stripped) <= set("|-: ")


def _column_role(name: str) -> str | None:
    normalized = name.strip().strip("*").lower()
    if normalized in {"phase", "#", "phase #"}:
        return "phase"
    if normalized in {"title", "name", "goal"}:
        return "title"
    if normalized == "status":
        return "status"
    if normalized == "progress":
        return "progress"
    if normalized in {"depends on", "depends", "deps", "dependencies"}:
        return "depends"
    return None


def _parse_dependencies(raw: str, *, line: int, artifact: str | None) -> tuple[int, ...]:
    if raw.strip().lower() in EMPTY_DEPENDENCY_TOKENS:
        return ()
    deps: list[int] = []
    for part in raw.split(","):
        match = re.search(r"\d+", part)
        if match is None or not part.strip():
            raise FormatError(
                f"Unreadable dependency {part.strip()!r}", artifact=artifact, line=line
            )
        deps.append(int(match.group(0)))
    return tuple(deps)


def parse_summary(text: str, *, artifact: str | None = None) -> PhaseSummary:
    lines = text.splitlines()
    header_index: int | None = None
    roles: dict[str, int] = {}
    columns: list[str] = []
    for index, line in enumerate(lines):
        if not line.strip().startswith("|"):
            continue
        candidate = _split_row(line)
        candidate_roles = {
            role: position
            for position, cell in enumerate(candidate)
            if (role := _column_role(cell)) is not None
        }
        if "phase" in candidate_roles and "status" in candidate_roles:
            header_index = index
            roles = candidate_roles
            columns = candidate
            break
    if header_index is None:
        raise FormatError("Phase summary table not found", artifact=artifact)

    separator_index = header_index + 1
    if separator_index >= len(lines) or not _is_separator(lines[separator_index]):
        raise FormatError(
            "Phase summary table has no separator row", artifact=artifact, line=separator_index + 1
        )

    rows: list[PhaseRow] = []
    seen: set[int] = set()
    index = separator_index + 1
    while index < len(lines) and lines[index].strip().startswith("|"):
        line_number = index + 1
        cells = _split_row(lines[index])
        if len(cells) != len(columns):
            raise FormatError(
                f"Expected {len(columns)} cells, found {len(cells)}",
                artifact=artifact,
                line=line_number,
            )
        phase_match = re.search(r"\d+", cells[roles["phase"]])
        if phase_match is None:
            raise FormatError(
                f"Unreadable phase number {cells[roles['phase']]!r}",
                artifact=artifact,
                line=line_number,
            )
        number = int(phase_match.group(0))
        if number in seen:
            raise FormatError(f"Duplicate phase {number}", artifact=artifact, line=line_number)
        seen.add(number)

        status_raw = cells[roles["status"]].strip("*` ").upper()
        try:
            status = PhaseStatus(status_raw)
        except ValueError as exc:
            raise FormatError(
                f"Unknown phase status {cells[roles['status']]!r}",
                artifact=artifact,
                line=line_number,
            ) from exc

        progress = "0/?"
        if "progress" in roles:
            progress = cells[roles["progress"]].replace(" ", "") or "0/?"
            if not PROGRESS_PATTERN.match(progress):
                raise FormatError(
                    f"Unreadable progress {cells[roles['progress']]!r}",
                    artifact=artifact,
                    line=line_number,
                )
        depends: tuple[int, ...] = ()
        if "depends" in roles:
            depends = _parse_dependencies(
                cells[roles["depends"]], line=line_number, artifact=artifact
            )
        title = cells[roles["title"]] if "title" in roles else ""
        rows.append(
            PhaseRow(
                number=number,
                title=title,
                status=status,
                progress=progress,
                depends_on=depends,
                cells=tuple(cells),
            )
        )
        index += 1

    return PhaseSummary(
        rows=rows,
        lines=lines,
        columns=columns,
        table_start=separator_index + 1,
        table_end=index,
    )


def render_summary(summary: PhaseSummary) -> str:
    roles = {
        role: position
        for position, cell in enumerate(summary.columns)
        if (role := _column_role(cell)) is not None
    }
    rendered_rows: list[str] = []
    for row in summary.rows:
        cells = list(row.cells) if len(row.cells) == len(summary.columns) else [""] * len(
            summary.columns
        )
        cells[roles["phase"]] = cells[roles["phase"]] or str(row.number)
        cells[roles["status"]] = row.status.value
        if "progress" in roles:
            cells[roles["progress"]] = row.progress
        if "title" in roles and not cells[roles["title"]]:
            cells[roles["title"]] = row.title
        if "depends" in roles and not cells[roles["depends"]]:
            cells[roles["depends"]] = ", ".join(str(dep) for dep in row.depends_on) or "-"
        rendered_rows.append("| " + " | ".join(cells) + " |")
    lines = (
        summary.lines[: summary.table_start]
        + rendered_rows
        + summary.lines[summary.table_end :]
    )
    return "\n".join(lines) + "\n"


@dataclass(frozen=True, slots=True)
class PhaseSection:
    number: int
    title: str
    goal: str = ""
    tasks: tuple[str, ...] = ()
    acceptance: tuple[str, ...] = ()


def parse_phase_sections(text: str) -> dict[int, PhaseSection]:
    sections: dict[int, PhaseSection] = {}
    current: PhaseSection | None = None
    current_level = 0
    in_acceptance = False

    def _close() -> None:
        if current is not None and current.number not in sections:
            sections[current.number] = current

    for _number, line in _content_lines(text):
        phase_heading = PHASE_HEADING_PATTERN.match(line)
        if phase_heading:
            _close()
            current = PhaseSection(
                number=int(phase_heading.group("number")), title=phase_heading.group("title")
            )
            current_level = len(line) - len(line.lstrip("#"))
            in_acceptance = False
            continue
        if current is None:
            continue
        stripped = line.strip()
        heading = HEADING_PATTERN.match(line)
        if heading:
            if len(heading.group("level")) <= current_level:
                _close()
                current = None
                continue
            stripped = heading.group("title")
        lowered = stripped.lower()
        if lowered.startswith("goal:"):
            current = replace(current, goal=stripped.split(":", maxsplit=1)[1].strip())
            continue
        if lowered.startswith("acceptance"):
            in_acceptance = True
            continue
        if lowered.startswith("tasks"):
            in_acceptance = False
            continue
        bullet = BULLET_PATTERN.match(line)
        if bullet:
            item = bullet.group("text")
            if in_acceptance:
                current = replace(current, acceptance=current.acceptance + (item,))
            else:
                current = replace(current, tasks=current.tasks + (item,))
    _close()
    return sections
