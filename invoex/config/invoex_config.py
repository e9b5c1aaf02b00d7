"""
invoex Configuration Management

Loads the packaged defaults, deep-merges a user YAML file over them and
applies secrets from the environment. Instances are built explicitly and
handed to the components that need them.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'default_config.yaml'
USER_CONFIG_PATH = Path.home() / '.invoex' / 'config.yaml'

# Environment variable -> dotted config key
ENV_OVERRIDES = {
    'ANTHROPIC_API_KEY': 'llm.api_key',
    'SQUARE_ACCESS_TOKEN': 'square.access_token',
    'INVOEX_DATABASE_PATH': 'database.path',
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class InvoexConfig:
    """
    Configuration for the extraction, reconciliation and sync components

    Values are addressed with dot notation, e.g. ``config.get('sync.weeks_back')``.
    """

    def __init__(
        self,
        config_path: Optional[Union[str, Path]] = None,
        overrides: Optional[Dict[str, Any]] = None,
        use_environment: bool = True
    ):
        """
        Args:
            config_path: YAML file merged over the defaults. When None the
                user file ``~/.invoex/config.yaml`` is used if it exists.
            overrides: Dictionary merged last, mostly useful in tests
            use_environment: Apply secrets from environment variables
        """
        with open(DEFAULT_CONFIG_PATH, 'r') as f:
            self.config: Dict[str, Any] = yaml.safe_load(f) or {}

        path = Path(config_path) if config_path else USER_CONFIG_PATH
        if config_path or path.exists():
            self.config = _deep_merge(self.config, self._load_file(path))
            self.config_file = path
        else:
            self.config_file = None

        if use_environment:
            for env_var, key in ENV_OVERRIDES.items():
                value = os.environ.get(env_var)
                if value:
                    self.set(key, value)

        if overrides:
            self.config = _deep_merge(self.config, overrides)

    @staticmethod
    def _load_file(path: Path) -> Dict[str, Any]:
        try:
            with open(path, 'r') as f:
                return yaml.safe_load(f) or {}
        except Exception as e:
            logger.error(f"Failed to load configuration from {path}: {str(e)}")
            raise

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation

        Args:
            key: Configuration key (e.g., 'database.path')
            default: Default value if key not found
        """
        try:
            value = self.config
            for k in key.split('.'):
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """Set configuration value using dot notation"""
        keys = key.split('.')
        target = self.config
        for k in keys[:-1]:
            if not isinstance(target.get(k), dict):
                target[k] = {}
            target = target[k]
        target[keys[-1]] = value

    def section(self, name: str) -> Dict[str, Any]:
        """Return a copy of a top-level section (empty dict when absent)"""
        return copy.deepcopy(self.config.get(name) or {})

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.config)

    def save(self, path: Optional[Union[str, Path]] = None) -> Path:
        """Write the current configuration, without secrets, to a YAML file"""
        path = Path(path) if path else USER_CONFIG_PATH
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.to_dict()
        data.get('llm', {}).pop('api_key', None)
        data.get('square', {}).pop('access_token', None)
        with open(path, 'w') as f:
            yaml.safe_dump(data, f, sort_keys=False)
        return path


def configure_logging(config: InvoexConfig) -> None:
    """Configure root logging from the ``logging`` section"""
    level_name = str(config.get('logging.level', 'INFO')).upper()
    level = getattr(logging, level_name, logging.INFO)
    log_format = config.get('logging.format', '%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    handlers = [logging.StreamHandler()]
    log_file = config.get('logging.file')
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level, format=log_format, handlers=handlers, force=True)
    logger.debug(f"Logging configured at {level_name}")
