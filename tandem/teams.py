"""Registry of coder/reviewer teams.

A team is a Python module defining two callables, ``CODER`` and
``REVIEWER``, each taking the specification text and returning a prompt.
The bundled teams live in :mod:`tandem.templates`; user teams in
``~/.tandem/teams`` override bundled teams of the same name.
"""

import importlib.util
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Callable, Dict, Iterable, List, Optional

from tandem.errors import ErrorKind, TandemError
from tandem.models import TeamsConfig
from tandem.utils.logger import get_logger

logger = get_logger(__name__)

BUILTIN_TEAMS_DIR = Path(__file__).parent / "templates"

PromptBuilder = Callable[[str], str]


@dataclass(frozen=True)
class Team:
    """Named pair of role prompt builders."""

    name: str
    coder: PromptBuilder
    reviewer: PromptBuilder
    source: Path


class TeamRegistry:
    """Teams discovered once at startup.

    Malformed team files are kept in :attr:`invalid` with the reason, so a
    lookup can tell "no such team" apart from "team file is broken".
    """

    def __init__(self, teams: Optional[Dict[str, Team]] = None, invalid: Optional[Dict[str, str]] = None):
        self.teams: Dict[str, Team] = dict(teams or {})
        self.invalid: Dict[str, str] = dict(invalid or {})

    @classmethod
    def load(cls, directories: Iterable[Path]) -> "TeamRegistry":
        """Build a registry from directories, later directories overriding earlier ones."""
        registry = cls()
        for directory in directories:
            registry.load_directory(Path(directory).expanduser())
        return registry

    @classmethod
    def from_config(cls, config: TeamsConfig) -> "TeamRegistry":
        directories: List[Path] = []
        if config.include_builtin:
            directories.append(BUILTIN_TEAMS_DIR)
        directories.append(Path(config.directory))
        return cls.load(directories)

    def load_directory(self, directory: Path) -> None:
        if not directory.is_dir():
            logger.debug(f"Team directory does not exist: {directory}")
            return

        for path in sorted(directory.glob("*.py")):
            if path.name.startswith("_"):
                continue
            name = path.stem
            try:
                team = load_team_file(path)
            except TandemError as e:
                logger.warning(f"Skipping invalid team '{name}' in {path}: {e.message}")
                self.teams.pop(name, None)
                self.invalid[name] = e.message
                continue
            self.invalid.pop(name, None)
            self.teams[name] = team
            logger.debug(f"Registered team '{name}' from {path}")

    def names(self) -> List[str]:
        return sorted(self.teams)

    def get(self, name: str) -> Team:
        """Look up a team.

        Raises:
            TandemError: TEAM_INVALID if the team file exists but is broken,
                TEAM_NOT_FOUND if there is no such team
        """
        if name in self.teams:
            return self.teams[name]
        if name in self.invalid:
            raise TandemError(ErrorKind.TEAM_INVALID, f"Team '{name}': {self.invalid[name]}")
        available = ", ".join(self.names()) or "none"
        raise TandemError(
            ErrorKind.TEAM_NOT_FOUND, f"Team '{name}' not found. Available teams: {available}"
        )


def _import_file(path: Path) -> ModuleType:
    spec = importlib.util.spec_from_file_location(f"tandem_team_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise TandemError(ErrorKind.TEAM_INVALID, f"Cannot import {path}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        raise TandemError(ErrorKind.TEAM_INVALID, f"Failed to import {path.name}: {e}", e) from e
    return module


def load_team_file(path: Path) -> Team:
    """Import a team module and check it defines callable CODER and REVIEWER."""
    module = _import_file(path)
    missing = [
        attr for attr in ("CODER", "REVIEWER")
        if not callable(getattr(module, attr, None))
    ]
    if missing:
        raise TandemError(
            ErrorKind.TEAM_INVALID,
            f"{path.name} must define callable {' and '.join(missing)}",
        )
    return Team(name=path.stem, coder=module.CODER, reviewer=module.REVIEWER, source=path)
