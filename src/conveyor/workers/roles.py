from __future__ import annotations

import json
from importlib import resources

from conveyor.workers.base import WorkerRequest

PHASE_STAGE = "PHASE"

RESULT_CONTRACT = """
When you are done, print one final line of the form
RESULT: {"status": "SUCCESS", "artifacts": ["<artifact keys you wrote>"]}
Other statuses: NEEDS_FIXES (with "reason" and "appended_tasks"), BLOCKED
(with "reason") and FAILURE (with "error").
""".strip()


class StageRole:
    role: str = "worker"
    stage: str = ""
    prompt_file: str | None = None
    fallback_prompt: str = "You are a software delivery worker."

    def __init__(self) -> None:
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            prompt = self.fallback_prompt.strip()
        else:
            try:
                prompt_path = resources.files("conveyor.prompts").joinpath(self.prompt_file)
                prompt = prompt_path.read_text(encoding="utf-8").strip()
            except (FileNotFoundError, ModuleNotFoundError):
                prompt = self.fallback_prompt.strip()
        return f"{prompt}\n\n{RESULT_CONTRACT}"

    def instruction(self, request: WorkerRequest) -> str:
        parts = [f"Stage {request.stage} for unit of work {request.unit}."]
        target = request.context.get("target")
        if target:
            parts.append(f"Write your output to: {target}")
        if request.artifacts:
            parts.append("Artifacts produced so far:")
            parts.append(json.dumps(request.artifacts, ensure_ascii=False, indent=2))
        return "\n\n".join(parts)


class AnalystRole(StageRole):
    role = "analyst"
    stage = "REQUIREMENTS"
    prompt_file = "analyst.md"
    fallback_prompt = "You are the requirements analyst. Write the requirements document."


class ResearcherRole(StageRole):
    role = "researcher"
    stage = "RESEARCH_PLAN"
    prompt_file = "researcher.md"
    fallback_prompt = """
You are the researcher and planner. Write the plan with a Status line.
Report BLOCKED when the plan needs human approval.
""".strip()


class PlannerRole(StageRole):
    role = "planner"
    stage = "TASK_BREAKDOWN"
    prompt_file = "planner.md"
    fallback_prompt = "You are the planner. Break the plan into `- [ ]` tasks."


class ImplementerRole(StageRole):
    role = "implementer"
    stage = "IMPLEMENTATION"
    prompt_file = "implementer.md"
    fallback_prompt = "You are the implementer. Complete tasks and check them off."


class ReviewerRole(StageRole):
    role = "reviewer"
    stage = "REVIEW"
    prompt_file = "reviewer.md"
    fallback_prompt = """
You are the reviewer. Write the review report with Status OK, NEEDS_FIXES or
BLOCKED. Append new `- [ ]` tasks to the tasklist for every required fix.
""".strip()


class DocumenterRole(StageRole):
    role = "documenter"
    stage = "DOCUMENTATION"
    prompt_file = "documenter.md"
    fallback_prompt = "You are the documenter. Write the summary document."


class ValidatorRole(StageRole):
    role = "validator"
    stage = "VALIDATION"
    prompt_file = "validator.md"
    fallback_prompt = "You are the validator. Set the summary Status to VALIDATED when it holds."


class SyncerRole(StageRole):
    role = "syncer"
    stage = "SYNC"
    prompt_file = "syncer.md"
    fallback_prompt = "You are the syncer. Append a changelog entry naming the unit of work."


class PhaseRole(StageRole):
    role = "phase-worker"
    stage = PHASE_STAGE
    prompt_file = "phase.md"
    fallback_prompt = "You are the phase worker. Complete the phase tasks and check them off."


ROLE_TYPES: tuple[type[StageRole], ...] = (
    AnalystRole,
    ResearcherRole,
    PlannerRole,
    ImplementerRole,
    ReviewerRole,
    DocumenterRole,
    ValidatorRole,
    SyncerRole,
    PhaseRole,
)


def build_roles() -> dict[str, StageRole]:
    return {role_type.stage: role_type() for role_type in ROLE_TYPES}
