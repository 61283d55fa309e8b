"""
BatchEx Configuration Management

This module provides configuration management for BatchEx.
"""

import os
import logging
from typing import Dict, Any, Optional
from pathlib import Path

import yaml

# Configure logging
logger = logging.getLogger(__name__)

# Environment variables that override instance limits and storage paths
ENV_OVERRIDES = {
    'INSTANCE_MAX_CONCURRENT_PROJECTS': ('instance.max_concurrent_projects', int),
    'INSTANCE_MAX_PARALLEL_REQUESTS': ('instance.max_parallel_requests', int),
    'INSTANCE_MAX_REQUESTS_PER_MINUTE': ('instance.max_requests_per_minute', int),
    'BATCHEX_DB_PATH': ('database.path', str),
    'BATCHEX_STORAGE_PATH': ('storage.path', str),
}


class BatchExConfig:
    """
    Manages system-wide configuration for BatchEx

    This class follows the singleton pattern to ensure only one configuration instance exists.
    It manages system-wide settings like database connection, instance limits and logging.
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not hasattr(self, 'initialized'):
            self.config: Dict[str, Any] = self.load_defaults()

            # Load user configuration from file if it exists
            self.config_file = Path.home() / '.batchex' / 'config.yaml'
            if self.config_file.exists():
                self._load_config()

            self._apply_env_overrides()
            self.initialized = True

    @staticmethod
    def load_defaults() -> Dict[str, Any]:
        """Load the packaged default configuration"""
        default_config_path = Path(__file__).parent / 'default_config.yaml'
        with open(default_config_path, 'r') as f:
            return yaml.safe_load(f)

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton so the next instantiation reloads configuration"""
        cls._instance = None

    @classmethod
    def from_dict(cls, overrides: Dict[str, Any]) -> 'BatchExConfig':
        """Create configuration from defaults deep-merged with ``overrides``

        The returned object is detached from the singleton, which lets tests and
        embedded callers run with private settings.
        """
        instance = object.__new__(cls)
        instance.config = cls.load_defaults()
        instance.config_file = Path.home() / '.batchex' / 'config.yaml'
        instance._update_config_recursive(instance.config, overrides or {})
        instance.initialized = True
        return instance

    @classmethod
    def from_file(cls, config_path: str) -> 'BatchExConfig':
        """Load configuration from file

        Args:
            config_path: Path to configuration file

        Returns:
            BatchExConfig instance
        """
        instance = cls()
        try:
            with open(config_path) as f:
                file_config = yaml.safe_load(f) or {}
            instance._update_config_recursive(instance.config, file_config)
        except Exception as e:
            logger.error(f"Failed to load configuration from {config_path}: {str(e)}")
            raise
        return instance

    @classmethod
    def setup(cls, **kwargs) -> None:
        """
        Set up BatchEx configuration and persist it

        Args:
            database: Database configuration
                - type: Database type ('sqlite' or 'postgresql')
                - path: Path to SQLite database file
                - postgres: PostgreSQL-specific settings
            instance: Instance limits
                - max_concurrent_projects, max_parallel_requests, max_requests_per_minute
            queue: Queue and retry settings
            reaper: Stale batch reaper settings
            logging: Logging configuration
                - level: Logging level
                - file: Path to log file
        """
        instance = cls()

        for section, values in kwargs.items():
            if isinstance(values, dict) and isinstance(instance.config.get(section), dict):
                instance._update_config_recursive(instance.config[section], values)
            else:
                instance.config[section] = values

        config_dir = instance.config_file.parent
        config_dir.mkdir(parents=True, exist_ok=True)

        instance._save_config()

        logger.info("BatchEx configuration updated")

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value

        Args:
            key: Configuration key (dot notation)
            default: Default value if key not found

        Returns:
            Configuration value
        """
        try:
            value = self.config
            for k in key.split('.'):
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """Set configuration value

        Args:
            key: Configuration key (dot notation)
            value: Configuration value
        """
        keys = key.split('.')
        config = self.config
        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]
        config[keys[-1]] = value

    def _apply_env_overrides(self) -> None:
        for env_name, (key, cast) in ENV_OVERRIDES.items():
            raw = os.environ.get(env_name)
            if raw in (None, ''):
                continue
            try:
                self.set(key, cast(raw))
            except ValueError:
                logger.warning(f"Ignoring invalid value for {env_name}: {raw!r}")

    def _load_config(self) -> None:
        """Load configuration from file"""
        try:
            with open(self.config_file, 'r') as f:
                file_config = yaml.safe_load(f)
            if file_config is None:
                raise RuntimeError("Configuration file is empty")
            self._update_config_recursive(self.config, file_config)
            logger.info(f"Configuration loaded from {self.config_file}")
        except yaml.YAMLError as e:
            logger.error(f"Invalid YAML in configuration file: {str(e)}")
            raise RuntimeError(f"Invalid YAML in configuration file: {str(e)}")

        self._validate_config()

    def _validate_config(self) -> None:
        """Validate configuration structure and values"""
        if not isinstance(self.config, dict):
            raise RuntimeError("Configuration must be a dictionary")

        for section in ('database', 'instance', 'queue', 'logging'):
            if section not in self.config:
                raise RuntimeError(f"Missing required configuration section: {section}")

        db_type = self.config['database'].get('type')
        if db_type not in ('sqlite', 'postgresql', 'postgres', 'memory'):
            raise RuntimeError(f"Unsupported database type: {db_type}")

        for key, value in self.config['instance'].items():
            if not isinstance(value, int) or value < 1:
                raise RuntimeError(f"Instance limit {key} must be a positive integer")

    def _save_config(self) -> None:
        """Save configuration to file"""
        try:
            with open(self.config_file, 'w') as f:
                yaml.dump(self.config, f)
            logger.info(f"Configuration saved to {self.config_file}")
        except Exception as e:
            logger.error(f"Failed to save configuration: {str(e)}")
            raise

    def _update_config_recursive(self, base: Dict[str, Any], update: Dict[str, Any]) -> None:
        """Update configuration recursively"""
        for key, value in update.items():
            if isinstance(value, dict) and key in base and isinstance(base[key], dict):
                self._update_config_recursive(base[key], value)
            else:
                base[key] = value

    def get_database_config(self) -> Dict[str, Any]:
        """Get database configuration"""
        return self.config.get('database', {})

    def get_logging_config(self) -> Dict[str, Any]:
        """Get logging configuration"""
        return self.config.get('logging', {})

    def validate(self) -> bool:
        """Validate configuration"""
        try:
            self._validate_config()
            return True
        except Exception as e:
            logger.error(f"Configuration validation failed: {str(e)}")
            return False

    def get_all(self) -> Dict[str, Any]:
        """Get all configuration"""
        return self.config.copy()


def setup_logging(config: Optional[BatchExConfig] = None, level: Optional[str] = None) -> None:
    """Configure root logging from the ``logging`` config section"""
    config = config or BatchExConfig()
    log_config = config.get_logging_config()

    handlers = [logging.StreamHandler()]
    log_file = log_config.get('file')
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, (level or log_config.get('level', 'INFO')).upper()),
        format=log_config.get('format', '%(asctime)s - %(name)s - %(levelname)s - %(message)s'),
        handlers=handlers,
        force=True
    )
