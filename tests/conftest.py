"""Shared test configuration and fixtures."""

import os
from pathlib import Path

import pytest
from click.testing import CliRunner

from tandem.config import ConfigManager
from tandem.models import Config, Task, WorktreeInfo


@pytest.fixture
def temp_home(tmp_path):
    """Create a temporary home directory for tests."""
    home = tmp_path / "temp_home"
    home.mkdir()
    return home


@pytest.fixture
def isolated_config_manager(temp_home, monkeypatch):
    """Create an isolated ConfigManager that doesn't touch real config files."""
    monkeypatch.setattr(Path, "home", lambda: temp_home)

    # No project config
    monkeypatch.setattr("tandem.config.get_git_root", lambda path=None: None)

    for key in list(os.environ):
        if key.startswith("TANDEM_") and "__" in key:
            monkeypatch.delenv(key)

    manager = ConfigManager()
    manager._user_config_path = temp_home / ".tandem" / "config.yaml"
    manager._project_config_path = None
    manager._config = None
    return manager


@pytest.fixture(autouse=True)
def mock_global_config_manager(isolated_config_manager, monkeypatch):
    """Automatically mock the global config_manager for all tests."""
    import tandem.cli
    import tandem.config

    monkeypatch.setattr(tandem.config, "config_manager", isolated_config_manager)
    monkeypatch.setattr(tandem.cli, "config_manager", isolated_config_manager)
    return isolated_config_manager


@pytest.fixture
def runner():
    """Click test runner."""
    return CliRunner()


@pytest.fixture
def config():
    """Default configuration."""
    return Config()


@pytest.fixture
def make_task(tmp_path):
    """Factory for running tasks with sensible defaults."""

    def factory(**overrides) -> Task:
        task_id = overrides.pop("task_id", "task-1")
        branch = overrides.pop("branch_name", f"tandem/{task_id}")
        data = {
            "task_id": task_id,
            "spec_path": "spec.md",
            "original_spec": "Add a health endpoint",
            "max_iterations": 3,
            "branch_name": branch,
            "worktree_info": WorktreeInfo(
                path=str(tmp_path / "worktrees" / task_id), branch=branch, base_branch="main"
            ),
        }
        data.update(overrides)
        return Task(**data)

    return factory
