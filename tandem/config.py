"""Configuration management for tandem."""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from tandem.errors import ConfigError
from tandem.models import Config
from tandem.utils.logger import get_logger
from tandem.utils.shell import get_git_root

logger = get_logger(__name__)

ENV_PREFIX = "TANDEM_"
CONFIG_DIR_NAME = ".tandem"
ENV_FILES = (".env.local", ".env")


class ConfigManager:
    """Configuration manager with hierarchical loading and environment variable support."""

    def __init__(self):
        self._config: Optional[Config] = None
        self._user_config_path = Path.home() / CONFIG_DIR_NAME / "config.yaml"
        self._project_config_path: Optional[Path] = None
        self._find_project_config()

    def _find_project_config(self) -> None:
        """Find the project configuration file at the repository root."""
        self._project_config_path = None
        git_root = get_git_root()
        if not git_root:
            return
        project_config = git_root / CONFIG_DIR_NAME / "config.yaml"
        if project_config.exists() and project_config != self._user_config_path:
            self._project_config_path = project_config
            logger.debug(f"Found project config: {project_config}")

    def _expand_env_vars(self, data: Any) -> Any:
        """Recursively expand environment variables in configuration data.

        Supports ``${VAR}``, ``${VAR:-default}`` and ``$VAR``. Unknown
        variables are left in place.
        """
        if isinstance(data, str):
            def replace_braced(match):
                var_expr = match.group(1)
                if ":-" in var_expr:
                    var_name, default_value = var_expr.split(":-", 1)
                    return os.getenv(var_name, default_value)
                value = os.getenv(var_expr)
                if value is None:
                    logger.warning(f"Environment variable '{var_expr}' not found")
                    return match.group(0)
                return value

            def replace_simple(match):
                value = os.getenv(match.group(1))
                if value is None:
                    logger.warning(f"Environment variable '{match.group(1)}' not found")
                    return match.group(0)
                return value

            data = re.sub(r"\$\{([^}]+)\}", replace_braced, data)
            return re.sub(r"\$([A-Z_][A-Z0-9_]*)", replace_simple, data)
        if isinstance(data, dict):
            return {key: self._expand_env_vars(value) for key, value in data.items()}
        if isinstance(data, list):
            return [self._expand_env_vars(item) for item in data]
        return data

    def _load_yaml_file(self, path: Path) -> Dict[str, Any]:
        """Load and parse a YAML configuration file.

        Args:
            path: Path to YAML file

        Returns:
            Parsed configuration data, empty when the file does not exist

        Raises:
            ConfigError: If file cannot be read or parsed
        """
        if not path.exists():
            return {}

        logger.debug(f"Loading config file: {path}")
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML file {path}: {e}", e) from e
        except OSError as e:
            raise ConfigError(f"Failed to read config file {path}: {e}", e) from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return self._expand_env_vars(data)

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value
        return result

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply ``TANDEM_SECTION__KEY`` environment overrides.

        For example ``TANDEM_DEFAULTS__MAX_REVIEWS=5`` sets
        ``defaults.max_reviews``. ``TANDEM_LOG_DIR`` has no double underscore
        and is ignored here.
        """
        for key, value in os.environ.items():
            if not key.startswith(ENV_PREFIX) or "__" not in key:
                continue

            key_parts = key[len(ENV_PREFIX):].lower().split("__")
            current = config_data
            for part in key_parts[:-1]:
                if not isinstance(current.get(part), dict):
                    current[part] = {}
                current = current[part]

            final_key = key_parts[-1]
            if value.lower() in ("true", "false"):
                current[final_key] = value.lower() == "true"
            elif value.isdigit():
                current[final_key] = int(value)
            else:
                try:
                    current[final_key] = float(value)
                except ValueError:
                    current[final_key] = value

            logger.debug(f"Applied env override: {'.'.join(key_parts)} = {current[final_key]}")

        return config_data

    def load_config(self) -> Config:
        """Load configuration from all sources.

        Loading order (later sources override earlier):
        1. Defaults from the Config model
        2. User configuration (~/.tandem/config.yaml)
        3. Project configuration (<repo>/.tandem/config.yaml)
        4. Environment variables

        Raises:
            ConfigError: If configuration is invalid
        """
        config_data = self._load_yaml_file(self._user_config_path)
        if self._project_config_path:
            config_data = self._merge_configs(
                config_data, self._load_yaml_file(self._project_config_path)
            )
        config_data = self._apply_env_overrides(config_data)

        try:
            self._config = Config.model_validate(config_data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}", e) from e

        logger.debug("Configuration loaded successfully")
        return self._config

    def get_config(self) -> Config:
        """Get current configuration, loading if necessary."""
        if self._config is None:
            self._config = self.load_config()
        return self._config

    def reload_config(self) -> Config:
        self._config = None
        self._find_project_config()
        return self.load_config()

    def create_default_config(self, user_level: bool = True) -> Path:
        """Write the default configuration to disk.

        Args:
            user_level: If True, create user config; if False, create project config

        Returns:
            Path to the configuration file

        Raises:
            ConfigError: If configuration cannot be created
        """
        if user_level:
            config_path = self._user_config_path
        else:
            config_path = (get_git_root() or Path.cwd()) / CONFIG_DIR_NAME / "config.yaml"

        if config_path.exists():
            logger.warning(f"Configuration file already exists: {config_path}")
            return config_path

        config_data = Config().model_dump(mode="json")
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(config_path, "w") as f:
                f.write("# tandem configuration\n\n")
                yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
        except OSError as e:
            raise ConfigError(f"Failed to create configuration file {config_path}: {e}", e) from e

        logger.info(f"Default configuration created: {config_path}")
        if not user_level:
            self._project_config_path = config_path
        self.reload_config()
        return config_path

    def list_config_files(self) -> Dict[str, Optional[Path]]:
        return {
            "user": self._user_config_path if self._user_config_path.exists() else None,
            "project": self._project_config_path,
        }


def load_env_files(directory: Optional[Path] = None) -> List[Path]:
    """Load ``.env.local`` then ``.env`` from directory.

    Variables that are already set are never overridden, so ``.env.local``
    wins over ``.env`` and the real environment wins over both.

    Returns:
        Files that were read
    """
    directory = directory or Path.cwd()
    loaded = []
    for name in ENV_FILES:
        path = directory / name
        if not path.is_file():
            continue
        load_dotenv(path, override=False)
        loaded.append(path)
        logger.debug(f"Loaded environment file: {path}")
    return loaded


config_manager = ConfigManager()


def get_config() -> Config:
    return config_manager.get_config()


def reload_config() -> Config:
    return config_manager.reload_config()
