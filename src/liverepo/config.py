"""
Configuration Management for LiveRepo

🔧 Unified Configuration System:
Dataclass based configuration for the data layer, with per-environment
presets, dictionary / file loading and environment variable overrides.
"""

from typing import Dict, Any, Optional, Union
from dataclasses import dataclass, field
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
import json
import logging
import os


class Environment(Enum):
    """Application environments"""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


@dataclass
class QueryConfig:
    """Query engine configuration"""
    default_page_size: int = 100
    max_include_depth: int = 5
    default_find_limit: Optional[int] = None


@dataclass
class LiveQueryConfig:
    """Live query engine configuration"""
    enabled: bool = True
    queue_size: int = 1000
    requery_on_window_change: bool = True


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file_path: Optional[str] = None
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5


@dataclass
class DataLayerConfig:
    """Complete data layer configuration"""
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False

    query: QueryConfig = field(default_factory=QueryConfig)
    live_query: LiveQueryConfig = field(default_factory=LiveQueryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def for_environment(cls, environment: Environment) -> 'DataLayerConfig':
        """Create configuration for specific environment"""
        config = cls(environment=environment)

        if environment == Environment.DEVELOPMENT:
            config.debug = True
            config.logging.level = "DEBUG"

        elif environment == Environment.TESTING:
            config.logging.level = "WARNING"

        elif environment == Environment.PRODUCTION:
            config.debug = False
            config.logging.level = "INFO"
            config.query.max_include_depth = 3

        return config

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'DataLayerConfig':
        """Create configuration from dictionary"""
        environment = Environment(config_dict.get("environment", Environment.DEVELOPMENT.value))
        config = cls.for_environment(environment)

        if "debug" in config_dict:
            config.debug = bool(config_dict["debug"])

        for section_name in ("query", "live_query", "logging"):
            section = getattr(config, section_name)
            for key, value in config_dict.get(section_name, {}).items():
                if not hasattr(section, key):
                    raise ValueError(f"Unknown {section_name} setting: {key}")
                setattr(section, key, value)

        return config

    @classmethod
    def from_file(cls, config_path: Union[str, Path]) -> 'DataLayerConfig':
        """Load configuration from a JSON or YAML file"""
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        if config_path.suffix == '.json':
            with open(config_path) as f:
                config_dict = json.load(f)
        elif config_path.suffix in ('.yml', '.yaml'):
            try:
                import yaml
            except ImportError as e:
                raise ImportError("PyYAML is required for YAML configuration files") from e
            with open(config_path) as f:
                config_dict = yaml.safe_load(f) or {}
        else:
            raise ValueError(f"Unsupported configuration file format: {config_path.suffix}")

        return cls.from_dict(config_dict)

    @classmethod
    def from_environment(cls) -> 'DataLayerConfig':
        """Create configuration from environment variables"""
        env_name = os.getenv('LIVEREPO_ENV', 'development')
        config = cls.for_environment(Environment(env_name))

        if os.getenv('LIVEREPO_DEBUG'):
            config.debug = os.getenv('LIVEREPO_DEBUG').lower() == 'true'

        if os.getenv('LIVEREPO_PAGE_SIZE'):
            config.query.default_page_size = int(os.getenv('LIVEREPO_PAGE_SIZE'))

        if os.getenv('LIVEREPO_MAX_INCLUDE_DEPTH'):
            config.query.max_include_depth = int(os.getenv('LIVEREPO_MAX_INCLUDE_DEPTH'))

        if os.getenv('LIVEREPO_LOG_LEVEL'):
            config.logging.level = os.getenv('LIVEREPO_LOG_LEVEL').upper()

        if os.getenv('LIVEREPO_LIVE_QUERIES'):
            config.live_query.enabled = os.getenv('LIVEREPO_LIVE_QUERIES').lower() == 'true'

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return {
            "environment": self.environment.value,
            "debug": self.debug,
            "query": vars(self.query).copy(),
            "live_query": vars(self.live_query).copy(),
            "logging": vars(self.logging).copy(),
        }


_current_config: Optional[DataLayerConfig] = None


def get_config() -> DataLayerConfig:
    """Get the process wide configuration, loading it from the environment on first use"""
    global _current_config
    if _current_config is None:
        _current_config = DataLayerConfig.from_environment()
    return _current_config


def set_config(config: DataLayerConfig):
    """Replace the process wide configuration"""
    global _current_config
    _current_config = config


def configure_logging(config: Optional[LoggingConfig] = None) -> logging.Logger:
    """Attach handlers to the ``liverepo`` logger according to ``config``.

    Calling it again replaces the handlers installed by a previous call.
    """
    config = config or get_config().logging
    logger = logging.getLogger("liverepo")
    logger.setLevel(config.level.upper())

    for handler in list(logger.handlers):
        if getattr(handler, "_liverepo_handler", False):
            logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(config.format)
    handlers = [logging.StreamHandler()]
    if config.file_path:
        handlers.append(RotatingFileHandler(
            config.file_path,
            maxBytes=config.max_file_size,
            backupCount=config.backup_count,
        ))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler._liverepo_handler = True
        logger.addHandler(handler)

    return logger


__all__ = [
    "Environment", "QueryConfig", "LiveQueryConfig", "LoggingConfig",
    "DataLayerConfig", "get_config", "set_config", "configure_logging",
]
