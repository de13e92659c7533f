import tomllib
from pathlib import Path

from conveyor import __version__
from conveyor.config import ConveyorConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "conveyor.toml"
    config = ConveyorConfig.default()
    config.layout.plan = "design/{unit}/plan.md"
    config.layout.phase_detail = "roadmap/phase-{phase}.md"
    config.loops.review_bound = 5
    config.loops.enforce_phase_dependencies = False
    config.worker.agent = "codex"
    config.worker.model = "gpt-5-codex"
    config.worker.extra_args = ["--full-auto", "--sandbox=workspace-write"]
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.layout.plan == "design/{unit}/plan.md"
    assert loaded.layout.phase_detail == "roadmap/phase-{phase}.md"
    assert loaded.layout.tasklist == "docs/tasklist/{unit}.md"
    assert loaded.loops.review_bound == 5
    assert loaded.loops.phase_bound == 10
    assert loaded.loops.enforce_phase_dependencies is False
    assert loaded.worker.agent == "codex"
    assert loaded.worker.model == "gpt-5-codex"
    assert loaded.worker.extra_args == ["--full-auto", "--sandbox=workspace-write"]
    assert loaded.logging.level == "DEBUG"


def test_missing_config_file_means_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.loops.review_bound == 3
    assert loaded.loops.failure_streak_limit == 2
    assert loaded.worker.agent == "claude"


def test_partial_config_keeps_defaults_for_the_rest(tmp_path: Path) -> None:
    config_path = tmp_path / "conveyor.toml"
    config_path.write_text("[loops]\nphase_bound = 4\n", encoding="utf-8")

    loaded = load_config(config_path)

    assert loaded.loops.phase_bound == 4
    assert loaded.loops.bound_extension == 5
    assert loaded.layout.changelog == "CHANGELOG.md"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(ConveyorConfig.default())

    for section in ("[layout]", "[loops]", "[worker]", "[logging]"):
        assert section in rendered
    assert 'phase_detail = "docs/phases/phase-{phase:02d}.md"' in rendered
    assert "enforce_phase_dependencies = true" in rendered
    assert "extra_args = []" in rendered
    assert tomllib.loads(rendered)["loops"]["review_bound"] == 3


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
