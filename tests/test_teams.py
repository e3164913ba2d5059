"""Tests for the team registry."""

import pytest

from tandem.errors import ErrorKind, TandemError
from tandem.models import TeamsConfig
from tandem.teams import BUILTIN_TEAMS_DIR, TeamRegistry, load_team_file

VALID_TEAM = '''
def CODER(spec_or_issue):
    return f"custom coder: {spec_or_issue}"


def REVIEWER(spec_or_issue):
    return f"custom reviewer: {spec_or_issue}"
'''


def write_team(directory, name, source):
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{name}.py"
    path.write_text(source)
    return path


class TestBuiltinTeams:
    """Test the bundled teams."""

    def test_builtin_names(self):
        registry = TeamRegistry.load([BUILTIN_TEAMS_DIR])
        assert registry.names() == ["frontend", "smart_contract", "standard", "tdd"]
        assert registry.invalid == {}

    @pytest.mark.parametrize("name", ["frontend", "smart_contract", "standard", "tdd"])
    def test_prompts_embed_specification(self, name):
        team = TeamRegistry.load([BUILTIN_TEAMS_DIR]).get(name)
        assert "Add a health endpoint" in team.coder("Add a health endpoint")
        assert "Add a health endpoint" in team.reviewer("Add a health endpoint")


class TestTeamRegistry:
    """Test discovery and lookup."""

    def test_user_team_overrides_builtin(self, tmp_path):
        path = write_team(tmp_path / "teams", "standard", VALID_TEAM)
        registry = TeamRegistry.load([BUILTIN_TEAMS_DIR, tmp_path / "teams"])

        team = registry.get("standard")
        assert team.source == path
        assert team.coder("spec") == "custom coder: spec"

    def test_missing_role_is_invalid(self, tmp_path):
        write_team(tmp_path, "halfteam", "def CODER(spec):\n    return spec\n")
        registry = TeamRegistry.load([tmp_path])

        assert "halfteam" not in registry.names()
        with pytest.raises(TandemError) as exc_info:
            registry.get("halfteam")
        assert exc_info.value.kind == ErrorKind.TEAM_INVALID
        assert "REVIEWER" in exc_info.value.message

    def test_non_callable_role_is_invalid(self, tmp_path):
        write_team(tmp_path, "strings", 'CODER = "code"\nREVIEWER = "review"\n')
        registry = TeamRegistry.load([tmp_path])
        assert "strings" in registry.invalid

    def test_import_error_is_invalid(self, tmp_path):
        write_team(tmp_path, "broken", "def CODER(:\n")
        registry = TeamRegistry.load([tmp_path])

        with pytest.raises(TandemError) as exc_info:
            registry.get("broken")
        assert exc_info.value.kind == ErrorKind.TEAM_INVALID

    def test_unknown_team(self, tmp_path):
        write_team(tmp_path, "mine", VALID_TEAM)
        registry = TeamRegistry.load([tmp_path])

        with pytest.raises(TandemError) as exc_info:
            registry.get("ghost")
        assert exc_info.value.kind == ErrorKind.TEAM_NOT_FOUND
        assert "mine" in exc_info.value.message

    def test_private_modules_skipped(self, tmp_path):
        write_team(tmp_path, "_helpers", "raise RuntimeError('never imported')\n")
        registry = TeamRegistry.load([tmp_path])
        assert registry.names() == []
        assert registry.invalid == {}

    def test_missing_directory(self, tmp_path):
        registry = TeamRegistry.from_config(
            TeamsConfig(directory=str(tmp_path / "nope"), include_builtin=False)
        )
        assert registry.names() == []

    def test_from_config_includes_builtin(self, tmp_path):
        write_team(tmp_path / "teams", "mine", VALID_TEAM)
        registry = TeamRegistry.from_config(TeamsConfig(directory=str(tmp_path / "teams")))
        assert "mine" in registry.names()
        assert "standard" in registry.names()

    def test_load_team_file(self, tmp_path):
        team = load_team_file(write_team(tmp_path, "mine", VALID_TEAM))
        assert team.name == "mine"
        assert team.reviewer("x") == "custom reviewer: x"
