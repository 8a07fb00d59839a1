"""Configuration loader with support for YAML files and environment variables."""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional
import yaml

from .config_models import CallGuardConfig

ENV_PREFIX = "CALLGUARD_"
ENV_NESTING = "__"


class ConfigLoader:
    """
    Load and manage callguard configuration.

    Configuration is loaded in the following order (later sources override earlier):
    1. Default configuration (embedded in code)
    2. Global configuration (~/.callguard/config.yaml)
    3. Project configuration (./callguard.yaml or .callguard.yaml)
    4. User-specified configuration file
    5. Environment variables (CALLGUARD_<SECTION>__<FIELD>)
    """

    DEFAULT_CONFIG_PATHS = [
        Path.home() / ".callguard" / "config.yaml",
        Path("./callguard.yaml"),
        Path("./.callguard.yaml"),
    ]

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> CallGuardConfig:
        """
        Load configuration from every source.

        Args:
            config_path: Optional path to configuration file

        Returns:
            Validated CallGuardConfig

        Raises:
            FileNotFoundError: If ``config_path`` does not exist
            ValueError: If a file is not valid YAML
        """
        config_dict: Dict[str, Any] = {}

        for path in cls.DEFAULT_CONFIG_PATHS:
            if path.exists():
                config_dict = cls._merge_dicts(config_dict, cls._load_yaml_file(path))

        if config_path:
            user_path = Path(config_path)
            if not user_path.exists():
                raise FileNotFoundError(f"Configuration file not found: {config_path}")
            config_dict = cls._merge_dicts(config_dict, cls._load_yaml_file(user_path))

        config_dict = cls._merge_dicts(config_dict, cls._load_from_env())

        return CallGuardConfig(**config_dict)

    @staticmethod
    def _load_yaml_file(path: Path) -> Dict[str, Any]:
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"Configuration in {path} must be a mapping, got {type(data).__name__}")
        return data

    @staticmethod
    def _merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge ``override`` into a copy of ``base``."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = ConfigLoader._merge_dicts(result[key], value)
            else:
                result[key] = value

        return result

    @staticmethod
    def _load_from_env() -> Dict[str, Any]:
        """
        Load configuration from environment variables.

        Nested keys are separated by a double underscore so field names
        keep their single underscores. For example:
        - CALLGUARD_RETRY__MAX_RETRIES -> retry.max_retries
        - CALLGUARD_CIRCUIT_BREAKER__RESET_TIMEOUT -> circuit_breaker.reset_timeout
        - CALLGUARD_SERVICES__PAYMENTS__RETRY__RETRY_DELAY -> services.payments.retry.retry_delay

        Variables that do not name a field inside a known section (such as
        CALLGUARD_HOME) are ignored.
        """
        config: Dict[str, Any] = {}

        for key, value in os.environ.items():
            key_parts = ConfigLoader._env_key_parts(key)
            if key_parts is None:
                continue

            current = config
            for part in key_parts[:-1]:
                current = current.setdefault(part, {})
                if not isinstance(current, dict):
                    break
            else:
                current[key_parts[-1]] = ConfigLoader._convert_env_value(value)

        return config

    @staticmethod
    def _env_key_parts(key: str) -> Optional[List[str]]:
        """Split a prefixed variable name into config keys, or None if it is not an override."""
        if not key.startswith(ENV_PREFIX):
            return None
        key_parts = key[len(ENV_PREFIX):].lower().split(ENV_NESTING)
        if len(key_parts) < 2 or not all(key_parts):
            return None
        if key_parts[0] not in CallGuardConfig.model_fields:
            return None
        return key_parts

    @staticmethod
    def _convert_env_value(value: str) -> Any:
        """Convert an environment string to bool, int, float or leave it as str."""
        if value.lower() in ('true', 'yes'):
            return True
        if value.lower() in ('false', 'no'):
            return False

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    @staticmethod
    def create_default_config(path: Optional[str] = None) -> Path:
        """
        Write a default configuration file.

        Args:
            path: Target path; defaults to ~/.callguard/config.yaml

        Returns:
            Path to the created file
        """
        if path:
            config_path = Path(path)
            config_path.parent.mkdir(parents=True, exist_ok=True)
        else:
            config_dir = Path.home() / ".callguard"
            config_dir.mkdir(parents=True, exist_ok=True)
            config_path = config_dir / "config.yaml"

        yaml_content = CallGuardConfig().to_yaml()

        yaml_with_comments = f"""# callguard Configuration
#
# Defaults for every protected dependency. Add per-dependency overrides
# under `services:`, e.g.
#
# services:
#   payments:
#     retry:
#       max_retries: 5
#       retry_delay: 0.5
#
# Environment variables (CALLGUARD_<SECTION>__<FIELD>) override this file.

{yaml_content}"""

        config_path.write_text(yaml_with_comments)

        return config_path

    @staticmethod
    def get_config_info() -> Dict[str, Any]:
        """Report which configuration sources are present."""
        return {
            "default_paths": [str(p) for p in ConfigLoader.DEFAULT_CONFIG_PATHS],
            "existing_configs": [str(p) for p in ConfigLoader.DEFAULT_CONFIG_PATHS if p.exists()],
            "env_overrides": sorted(
                k for k in os.environ if ConfigLoader._env_key_parts(k) is not None
            ),
        }
