import tomllib
from pathlib import Path

import pytest

from workgraph import __version__
from workgraph.config import LOG_LEVEL_ENV, WorkgraphConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "workgraph.toml"
    config = WorkgraphConfig.default()
    config.storage.root = "state/graphs"
    config.storage.lock_timeout_seconds = 0.5
    config.lifecycle.max_title_length = 80
    config.lifecycle.allow_reopen = False
    config.dispatch.default_mode = "git"
    config.dispatch.branch_prefix = "wg"
    config.dispatch.timeout_seconds = 15.0
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.storage.root == "state/graphs"
    assert loaded.storage.lock_timeout_seconds == 0.5
    assert loaded.lifecycle.max_title_length == 80
    assert loaded.lifecycle.allow_reopen is False
    assert loaded.dispatch.default_mode == "git"
    assert loaded.dispatch.branch_prefix == "wg"
    assert loaded.dispatch.timeout_seconds == 15.0
    assert loaded.logging.level == "DEBUG"


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.storage.root == ".workgraph"
    assert loaded.lifecycle.max_title_length == 200
    assert loaded.dispatch.default_mode == "none"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(WorkgraphConfig.default())

    for section in ("[storage]", "[lifecycle]", "[dispatch]", "[logging]"):
        assert section in rendered
    assert "lock_timeout_seconds = 3.0" in rendered
    assert "allow_reopen = true" in rendered
    assert 'branch_prefix = "workgraph"' in rendered
    assert tomllib.loads(rendered)["dispatch"]["timeout_seconds"] == 60.0


def test_storage_root_resolves_relative_to_project(tmp_path: Path) -> None:
    config = WorkgraphConfig.default()

    assert config.storage_root(tmp_path) == (tmp_path / ".workgraph").resolve()


def test_log_level_env_override(monkeypatch: pytest.MonkeyPatch) -> None:
    config = WorkgraphConfig.default()
    monkeypatch.setenv(LOG_LEVEL_ENV, "debug")
    assert config.effective_log_level() == "DEBUG"

    monkeypatch.setenv(LOG_LEVEL_ENV, "loud")
    assert config.effective_log_level() == "INFO"


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
