import asyncio
from pathlib import Path
from typing import Any

import pytest

from conveyor.workers import CommandWorker, ResultKind, WorkerError, WorkerRequest, build_roles
from conveyor.workers.command import parse_result
from conveyor.workers.roles import PHASE_STAGE, RESULT_CONTRACT


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, data: bytes = b"") -> None:
        self._data = data

    async def read(self) -> bytes:
        return self._data


class FakeProcess:
    def __init__(self, lines: list[bytes], *, return_code: int = 0, stderr: bytes = b"") -> None:
        self.stdout = FakeStdout(lines)
        self.stderr = FakeStderr(stderr)
        self._return_code = return_code

    async def wait(self) -> int:
        return self._return_code


def _patch_process(
    monkeypatch: pytest.MonkeyPatch, process: FakeProcess, seen: list[dict[str, Any]]
) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        seen.append({"args": list(args), **kwargs})
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)


def _request(stage: str = "REQUIREMENTS") -> WorkerRequest:
    return WorkerRequest(
        unit="FEAT-1",
        stage=stage,
        context={"commit": False, "target": "docs/prd/FEAT-1.prd.md"},
        artifacts={"plan(FEAT-1)": "docs/plan/FEAT-1.md"},
    )


def test_parse_result_uses_last_result_line() -> None:
    output = "\n".join(
        [
            'RESULT: {"status": "FAILURE", "error": "first try"}',
            "some narration",
            '`RESULT: {"status": "needs-fixes", "reason": "lint", "appended_tasks": 2}`',
        ]
    )

    result = parse_result(output)

    assert result.kind is ResultKind.NEEDS_FIXES
    assert result.reason == "lint"
    assert result.appended_tasks == 2


def test_parse_result_without_result_line_is_success() -> None:
    assert parse_result("wrote the plan\nall good").kind is ResultKind.SUCCESS


@pytest.mark.parametrize(
    "line",
    ["RESULT: {not json", 'RESULT: ["SUCCESS"]', 'RESULT: {"status": "MAYBE"}'],
)
def test_parse_result_rejects_unreadable_payloads(line: str) -> None:
    with pytest.raises(WorkerError) as excinfo:
        parse_result(line)

    assert excinfo.value.retriable is False


def test_codex_build_command_shape() -> None:
    worker = CommandWorker("codex", model="gpt-5-codex", extra_args=["--full-auto"])

    command = worker.build_command("system", "write requirements")

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert any(part.startswith("instructions=") for part in command)
    assert command[command.index("-m") + 1] == "gpt-5-codex"
    assert "--full-auto" in command
    assert command[-1] == "write requirements"


def test_claude_build_command_shape() -> None:
    worker = CommandWorker("claude", binary="/opt/bin/claude")

    command = worker.build_command("system", "write requirements")

    assert command[0:3] == ["/opt/bin/claude", "-p", "write requirements"]
    assert "stream-json" in command
    assert "--model" not in command


def test_invoke_streams_events_and_reads_result(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    seen: list[dict[str, Any]] = []
    process = FakeProcess(
        [
            b'{"type":"item.completed","content":"drafting requirements"}\n',
            b"noise-before-json\n",
            b'{"type":"message","message":{"content":[{"text":"RESULT: {\\"status\\": '
            b'\\"BLOCKED\\", \\"reason\\": \\"needs sign-off\\"}"}]}}\n',
        ]
    )
    _patch_process(monkeypatch, process, seen)
    worker = CommandWorker("codex", working_directory=tmp_path)

    result = asyncio.run(worker.invoke(_request("RESEARCH_PLAN")))

    assert result.kind is ResultKind.BLOCKED
    assert result.reason == "needs sign-off"
    args = seen[0]["args"]
    assert args[0:2] == ["codex", "exec"]
    assert "Stage RESEARCH_PLAN for unit of work FEAT-1." in args[-1]
    assert '"commit": false' in args[-1]
    assert seen[0]["cwd"] == str(tmp_path)


def test_claude_invoke_passes_system_prompt_file(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[dict[str, Any]] = []
    _patch_process(monkeypatch, FakeProcess([b'{"type":"result","result":"done"}\n']), seen)

    result = asyncio.run(CommandWorker("claude").invoke(_request()))

    assert result.kind is ResultKind.SUCCESS
    assert seen[0]["env"]["CLAUDE_MD"].endswith(".md")


def test_nonzero_exit_raises_worker_error(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[dict[str, Any]] = []
    _patch_process(monkeypatch, FakeProcess([], return_code=3, stderr=b"quota"), seen)

    with pytest.raises(WorkerError, match="quota") as excinfo:
        asyncio.run(CommandWorker("codex").invoke(_request()))

    assert excinfo.value.exit_code == 3
    assert excinfo.value.retriable is True


def test_missing_binary_is_not_retriable(tmp_path: Path) -> None:
    worker = CommandWorker("codex", binary=str(tmp_path / "no-such-agent"))

    with pytest.raises(WorkerError, match="not found") as excinfo:
        asyncio.run(worker.invoke(_request()))

    assert excinfo.value.retriable is False


def test_unknown_stage_has_no_role() -> None:
    with pytest.raises(WorkerError, match="No role"):
        CommandWorker("codex").role_for("DEPLOY")


def test_roles_cover_every_stage_and_load_packaged_prompts() -> None:
    roles = build_roles()

    assert set(roles) == {
        "REQUIREMENTS",
        "RESEARCH_PLAN",
        "TASK_BREAKDOWN",
        "IMPLEMENTATION",
        "REVIEW",
        "DOCUMENTATION",
        "VALIDATION",
        "SYNC",
        PHASE_STAGE,
    }
    assert roles["REVIEW"].system_prompt.startswith("You are the reviewer for one unit of work.")
    assert all(role.system_prompt.endswith(RESULT_CONTRACT) for role in roles.values())
