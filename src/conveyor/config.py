from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

AgentName = Literal["claude", "codex"]


@dataclass(slots=True)
class LayoutConfig:
    requirements: str = "docs/prd/{unit}.prd.md"
    plan: str = "docs/plan/{unit}.md"
    tasklist: str = "docs/tasklist/{unit}.md"
    phase_summary: str = "docs/phases/SUMMARY.md"
    phase_detail: str = "docs/phases/phase-{phase:02d}.md"
    review_report: str = "reports/reviews/{unit}.md"
    summary_doc: str = "docs/summaries/{unit}.md"
    changelog: str = "CHANGELOG.md"
    active_unit_pointer: str = "docs/.active_unit"


@dataclass(slots=True)
class LoopsConfig:
    review_bound: int = 3
    phase_bound: int = 10
    bound_extension: int = 5
    failure_streak_limit: int = 2
    enforce_phase_dependencies: bool = True


@dataclass(slots=True)
class WorkerConfig:
    agent: AgentName = "claude"
    binary: str = ""
    model: str = ""
    extra_args: list[str] = field(default_factory=list)


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class ConveyorConfig:
    layout: LayoutConfig = field(default_factory=LayoutConfig)
    loops: LoopsConfig = field(default_factory=LoopsConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ConveyorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConveyorConfig:
        return cls(
            layout=LayoutConfig(**data.get("layout", {})),
            loops=LoopsConfig(**data.get("loops", {})),
            worker=WorkerConfig(**data.get("worker", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "layout": {
                "requirements": self.layout.requirements,
                "plan": self.layout.plan,
                "tasklist": self.layout.tasklist,
                "phase_summary": self.layout.phase_summary,
                "phase_detail": self.layout.phase_detail,
                "review_report": self.layout.review_report,
                "summary_doc": self.layout.summary_doc,
                "changelog": self.layout.changelog,
                "active_unit_pointer": self.layout.active_unit_pointer,
            },
            "loops": {
                "review_bound": self.loops.review_bound,
                "phase_bound": self.loops.phase_bound,
                "bound_extension": self.loops.bound_extension,
                "failure_streak_limit": self.loops.failure_streak_limit,
                "enforce_phase_dependencies": self.loops.enforce_phase_dependencies,
            },
            "worker": {
                "agent": self.worker.agent,
                "binary": self.worker.binary,
                "model": self.worker.model,
                "extra_args": list(self.worker.extra_args),
            },
            "logging": {
                "level": self.logging.level,
                "format": self.logging.format,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConveyorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("layout", "loops", "worker", "logging"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConveyorConfig:
    if not path.exists():
        return ConveyorConfig.default()
    return ConveyorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ConveyorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
