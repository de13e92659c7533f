from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from conveyor.config import AgentName
from conveyor.workers.base import Worker, WorkerError, WorkerRequest, WorkerResult
from conveyor.workers.roles import StageRole, build_roles

logger = logging.getLogger(__name__)

RESULT_PREFIX = "RESULT:"


def extract_content(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)

    delta = event.get("delta")
    if isinstance(delta, str):
        return delta

    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        return extract_content(message)

    result = event.get("result")
    if isinstance(result, str):
        return result
    return ""


def parse_result(output: str) -> WorkerResult:
    """Read the last ``RESULT: {json}`` line of a worker transcript.

    A transcript without one is a nominal success; the stage gate decides
    whether anything was actually produced.
    """
    for raw_line in reversed(output.splitlines()):
        line = raw_line.strip().strip("`").strip()
        if not line.startswith(RESULT_PREFIX):
            continue
        raw_payload = line[len(RESULT_PREFIX) :].strip()
        try:
            payload = json.loads(raw_payload)
        except json.JSONDecodeError as exc:
            raise WorkerError(
                f"Worker result line is not valid JSON: {raw_payload[:200]}", retriable=False
            ) from exc
        if not isinstance(payload, dict):
            raise WorkerError("Worker result line must hold a JSON object.", retriable=False)
        return WorkerResult.from_payload(payload)
    return WorkerResult.success()


class CommandWorker(Worker):
    """Runs an agent CLI once per request and waits for it to exit."""

    def __init__(
        self,
        agent: AgentName = "claude",
        *,
        binary: str = "",
        model: str = "",
        extra_args: list[str] | None = None,
        working_directory: Path | None = None,
        roles: dict[str, StageRole] | None = None,
    ) -> None:
        self.agent = agent
        self.binary = binary or agent
        self.model = model
        self.extra_args = list(extra_args or [])
        self.working_directory = working_directory
        self.roles = roles if roles is not None else build_roles()

    def role_for(self, stage: str) -> StageRole:
        try:
            return self.roles[stage]
        except KeyError as exc:
            raise WorkerError(f"No role registered for stage '{stage}'.", retriable=False) from exc

    def build_command(self, system_prompt: str, user_prompt: str) -> list[str]:
        if self.agent == "codex":
            command = [
                self.binary,
                "exec",
                "--json",
                "-c",
                f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
            ]
            if self.model:
                command.extend(["-m", self.model])
            command.extend(self.extra_args)
            command.append(user_prompt)
            return command

        command = [self.binary, "-p", user_prompt, "--output-format", "stream-json", "--verbose"]
        if self.model:
            command.extend(["--model", self.model])
        command.extend(self.extra_args)
        return command

    @staticmethod
    def _render_prompt(role: StageRole, request: WorkerRequest) -> str:
        prompt = role.instruction(request)
        if request.context:
            prompt = (
                f"{prompt}\n\nContext JSON:\n"
                f"{json.dumps(request.context, ensure_ascii=False, indent=2)}"
            )
        return prompt

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def _collect(self, command: list[str], env: dict[str, str]) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise WorkerError(
                f"Agent binary not found: {self.binary}", worker=self.agent, retriable=False
            ) from exc
        if process.stdout is None:
            raise WorkerError(
                "Agent process did not expose stdout.", worker=self.agent, retriable=False
            )

        chunks: list[str] = []
        parse_buffer = ""
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            candidate = f"{parse_buffer}{line}" if parse_buffer else line
            try:
                event = json.loads(candidate)
                parse_buffer = ""
            except json.JSONDecodeError:
                if self._appears_partial_json(candidate) and not line.startswith(RESULT_PREFIX):
                    parse_buffer = candidate
                    continue
                parse_buffer = ""
                chunks.append(line)
                continue
            if not isinstance(event, dict):
                continue
            content = extract_content(event)
            logger.debug("%s event %s", self.agent, event.get("type", ""))
            if content:
                chunks.append(content)
        if parse_buffer:
            chunks.append(parse_buffer)

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        if return_code != 0:
            raise WorkerError(
                f"{self.agent} exited with code {return_code}: {stderr_output[:400]}",
                worker=self.agent,
                exit_code=return_code,
            )
        return "\n".join(chunks)

    async def invoke(self, request: WorkerRequest) -> WorkerResult:
        role = self.role_for(request.stage)
        user_prompt = self._render_prompt(role, request)
        env = os.environ.copy()
        logger.info("invoking %s as %s for %s", self.agent, role.role, request.unit)
        if self.agent == "codex":
            output = await self._collect(self.build_command(role.system_prompt, user_prompt), env)
        else:
            with tempfile.NamedTemporaryFile(
                mode="w", suffix=".md", encoding="utf-8"
            ) as temp_file:
                temp_file.write(role.system_prompt)
                temp_file.flush()
                env["CLAUDE_MD"] = temp_file.name
                output = await self._collect(
                    self.build_command(role.system_prompt, user_prompt), env
                )
        result = parse_result(output)
        logger.info("%s finished %s with %s", role.role, request.unit, result.kind.value)
        return result
