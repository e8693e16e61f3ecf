import copy
import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from omegaconf import OmegaConf
from omegaconf.errors import InterpolationResolutionError

from spacelink.constants import (
    DEFAULT_HOST_ALIAS,
    MONITOR_INTERVAL_SECONDS,
    MONITOR_MAX_CHECKS,
    REMOTE_COMMAND_TIMEOUT_SECONDS,
    Editor,
)
from spacelink.utils import toolkit_storage_dir

logger = logging.getLogger(__name__)

HOST_ALIAS_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class ConfigLoader:
    """Load and merge YAML configuration with defaults."""

    def __init__(self) -> None:
        """Initialize ConfigLoader with built-in defaults."""
        self.BUILT_IN_DEFAULTS = {
            "host_alias": DEFAULT_HOST_ALIAS,
            "editor": Editor.CURSOR.value,
            "storage_dir": None,
            "ssh_config_path": "~/.ssh/config",
            "known_hosts_path": "~/.ssh/known_hosts",
            "extensions_dir": None,
            "space_arn": None,
            "region": "us-east-1",
            "monitor_interval": MONITOR_INTERVAL_SECONDS,
            "monitor_max_checks": MONITOR_MAX_CHECKS,
            "remote_timeout": REMOTE_COMMAND_TIMEOUT_SECONDS,
            "server_start_command": None,
            "server_start_wait": 5,
        }

    def load_config(self, config_path: str | None = None) -> dict[str, Any]:
        """Load configuration from YAML file.

        Parameters
        ----------
        config_path : str | None
            Path to YAML config file. If None, checks SPACELINK_CONFIG env var,
            then falls back to spacelink.yaml

        Returns
        -------
        dict[str, Any]
            Parsed configuration with all variable interpolations resolved

        Raises
        ------
        ValueError
            If the file is not valid YAML or variables cannot be resolved
        RuntimeError
            If the file exists but cannot be read
        """
        if config_path is None:
            config_path = os.environ.get("SPACELINK_CONFIG", "spacelink.yaml")

        config_file = Path(config_path).expanduser()

        if not config_file.exists():
            return {}

        try:
            cfg = OmegaConf.load(config_file)
        except yaml.YAMLError as e:
            logger.error("Failed to parse YAML config file %s: %s", config_file, e)
            raise ValueError(f"Invalid YAML in {config_file}: {e}") from e
        except OSError as e:
            logger.error("Failed to read config file %s: %s", config_file, e)
            raise RuntimeError(f"Failed to read config file {config_file}: {e}") from e

        if cfg is None:
            return {}

        try:
            config = OmegaConf.to_container(cfg, resolve=True, throw_on_missing=True)
        except InterpolationResolutionError as e:
            logger.error("Failed to resolve configuration variables: %s", e)
            raise ValueError(f"Configuration variable resolution error: {e}") from e
        except (ValueError, KeyError, AttributeError) as e:
            logger.error("Failed to resolve configuration variables: %s", e)
            raise ValueError(f"Configuration variable resolution error: {e}") from e

        if not isinstance(config, dict):
            raise ValueError(f"Configuration in {config_file} must be a mapping")

        return config

    def merge(self, config: dict[str, Any], **overrides: Any) -> dict[str, Any]:
        """Merge file configuration and explicit overrides over the defaults.

        Parameters
        ----------
        config : dict[str, Any]
            Configuration loaded from YAML
        **overrides : Any
            Values taking precedence over the file; None values are ignored

        Returns
        -------
        dict[str, Any]
            Merged configuration with derived paths filled in
        """
        merged = copy.deepcopy(self.BUILT_IN_DEFAULTS)

        for key, value in config.items():
            merged[key] = value

        for key, value in overrides.items():
            if value is not None:
                merged[key] = value

        if not merged.get("storage_dir"):
            editor = merged.get("editor", Editor.CURSOR.value)
            if editor in {e.value for e in Editor}:
                merged["storage_dir"] = str(toolkit_storage_dir(editor))

        return merged

    def validate_config(self, config: dict[str, Any]) -> None:
        """Validate configuration has required fields and correct types.

        Parameters
        ----------
        config : dict[str, Any]
            Configuration to validate

        Raises
        ------
        ValueError
            If configuration is invalid
        """
        self._validate_required_fields(config)
        self._validate_optional_fields(config)

        editors = [e.value for e in Editor]
        if config["editor"] not in editors:
            raise ValueError(f"editor must be one of {editors}, got {config['editor']!r}")

        if not HOST_ALIAS_PATTERN.match(config["host_alias"]):
            raise ValueError(
                f"host_alias {config['host_alias']!r} is not a valid SSH host alias"
            )

        for field in ("monitor_interval", "monitor_max_checks", "remote_timeout"):
            if config[field] <= 0:
                raise ValueError(f"{field} must be positive, got {config[field]}")

        if config.get("server_start_wait", 0) < 0:
            raise ValueError("server_start_wait must not be negative")

    def _validate_required_fields(self, config: dict[str, Any]) -> None:
        """Validate required configuration fields.

        Parameters
        ----------
        config : dict[str, Any]
            Configuration to validate

        Raises
        ------
        ValueError
            If required fields are missing or invalid
        """
        required_validations = {
            "host_alias": (str, "host_alias is required", "host_alias must be a string"),
            "editor": (str, "editor is required", "editor must be a string"),
            "ssh_config_path": (
                str,
                "ssh_config_path is required",
                "ssh_config_path must be a string",
            ),
            "monitor_interval": (
                (int, float),
                "monitor_interval is required",
                "monitor_interval must be a number",
            ),
            "monitor_max_checks": (
                int,
                "monitor_max_checks is required",
                "monitor_max_checks must be an integer",
            ),
            "remote_timeout": (
                (int, float),
                "remote_timeout is required",
                "remote_timeout must be a number",
            ),
        }

        for field, (expected_type, required_msg, type_msg) in required_validations.items():
            if field not in config or config[field] is None or config[field] == "":
                raise ValueError(required_msg)
            value = config[field]
            if isinstance(value, bool) or not isinstance(value, expected_type):
                raise ValueError(type_msg)

    def _validate_optional_fields(self, config: dict[str, Any]) -> None:
        """Validate optional configuration fields when present.

        Parameters
        ----------
        config : dict[str, Any]
            Configuration to validate

        Raises
        ------
        ValueError
            If an optional field has the wrong type
        """
        optional_validations = {
            "storage_dir": (str, "storage_dir must be a string"),
            "known_hosts_path": (str, "known_hosts_path must be a string"),
            "extensions_dir": (str, "extensions_dir must be a string"),
            "space_arn": (str, "space_arn must be a string"),
            "region": (str, "region must be a string"),
            "server_start_command": (str, "server_start_command must be a string"),
            "server_start_wait": ((int, float), "server_start_wait must be a number"),
        }

        for field, (expected_type, type_msg) in optional_validations.items():
            value = config.get(field)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, expected_type):
                raise ValueError(type_msg)
