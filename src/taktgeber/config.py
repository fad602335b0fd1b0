"""
Configuration management for Taktgeber

Provides environment-based configuration with sensible defaults, optionally
layered over a YAML file.
"""

import logging
import os
import socket
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlsplit, urlunsplit

import yaml

from .core.errors import ConfigError

DEFAULT_CONFIG_PATH = Path.home() / ".taktgeber" / "config.yaml"


def _default_consumer_name() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass
class ServiceConfig:
    """Configuration for the scheduler service and stream consumers"""

    # Redis connection
    redis_url: str = "redis://localhost:6379"
    redis_db: int = 0
    redis_password: Optional[str] = None

    # Streams
    stream_name: str = "cronjob:events"
    group_name: str = "cronjob-workers"
    consumer_name: Optional[str] = None
    stream_maxlen: Optional[int] = None

    # Consumer tuning
    block_ms: int = 5000
    batch_count: int = 10
    consumer_retry_delay: float = 1.0
    claim_idle_ms: Optional[int] = None

    # One-time job publishing
    one_time_retries: int = 1
    publish_retry_delay: float = 5.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    # Validators
    phone_country_code: str = "62"
    whitelists: Dict[str, List[str]] = field(default_factory=dict)

    # Jobs seeded at service start
    jobs: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self):
        """Load configuration from environment variables"""

        # Redis: a full URL wins over host/port
        if os.getenv('REDIS_URL'):
            self.redis_url = os.environ['REDIS_URL']
        elif os.getenv('REDIS_HOST'):
            port = os.getenv('REDIS_PORT', '6379')
            self.redis_url = f"redis://{os.environ['REDIS_HOST']}:{port}"
        self.redis_db = int(os.getenv('REDIS_DB', str(self.redis_db)))
        self.redis_password = os.getenv('REDIS_PASSWORD', self.redis_password)

        # Streams
        self.stream_name = os.getenv('CRONJOB_STREAM_NAME', self.stream_name)
        self.group_name = os.getenv('CRONJOB_GROUP_NAME', self.group_name)
        self.consumer_name = os.getenv('CRONJOB_CONSUMER_NAME', self.consumer_name) or _default_consumer_name()
        if os.getenv('STREAM_MAXLEN'):
            self.stream_maxlen = int(os.environ['STREAM_MAXLEN'])

        # Consumer
        self.block_ms = int(os.getenv('CONSUMER_BLOCK_MS', str(self.block_ms)))
        self.batch_count = int(os.getenv('CONSUMER_COUNT', str(self.batch_count)))
        self.consumer_retry_delay = float(os.getenv('CONSUMER_RETRY_DELAY', str(self.consumer_retry_delay)))
        if os.getenv('CONSUMER_CLAIM_IDLE_MS'):
            self.claim_idle_ms = int(os.environ['CONSUMER_CLAIM_IDLE_MS'])

        # Publishing
        self.one_time_retries = int(os.getenv('ONE_TIME_RETRIES', str(self.one_time_retries)))
        self.publish_retry_delay = float(os.getenv('PUBLISH_RETRY_DELAY', str(self.publish_retry_delay)))

        # Logging
        self.log_level = os.getenv('LOG_LEVEL', self.log_level)

        # Validators
        self.phone_country_code = os.getenv('PHONE_COUNTRY_CODE', self.phone_country_code)

    def redacted_redis_url(self) -> str:
        """Redis URL safe for logging"""
        parts = urlsplit(self.redis_url)
        if parts.password is None:
            return self.redis_url
        netloc = parts.netloc.replace(f":{parts.password}@", ":***@", 1)
        return urlunsplit(parts._replace(netloc=netloc))

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return {
            'redis_url': self.redacted_redis_url(),
            'redis_db': self.redis_db,
            'stream_name': self.stream_name,
            'group_name': self.group_name,
            'consumer_name': self.consumer_name,
            'stream_maxlen': self.stream_maxlen,
            'block_ms': self.block_ms,
            'batch_count': self.batch_count,
            'consumer_retry_delay': self.consumer_retry_delay,
            'claim_idle_ms': self.claim_idle_ms,
            'one_time_retries': self.one_time_retries,
            'publish_retry_delay': self.publish_retry_delay,
            'log_level': self.log_level,
            'phone_country_code': self.phone_country_code,
            'whitelists': {actor: list(entries) for actor, entries in self.whitelists.items()},
            'jobs': len(self.jobs),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServiceConfig':
        """Create configuration from dictionary, rejecting unknown keys"""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**data)

    def validate(self) -> bool:
        """Validate configuration"""
        if not self.redis_url:
            raise ConfigError("redis_url is required")

        if not self.stream_name:
            raise ConfigError("stream_name is required")

        if not self.group_name:
            raise ConfigError("group_name is required")

        if self.block_ms < 0:
            raise ConfigError("block_ms must be non-negative")

        if self.batch_count <= 0:
            raise ConfigError("batch_count must be positive")

        if self.one_time_retries < 0:
            raise ConfigError("one_time_retries must be non-negative")

        if self.publish_retry_delay < 0 or self.consumer_retry_delay < 0:
            raise ConfigError("retry delays must be non-negative")

        if self.stream_maxlen is not None and self.stream_maxlen <= 0:
            raise ConfigError("stream_maxlen must be positive")

        if not isinstance(self.whitelists, dict):
            raise ConfigError("whitelists must map actors to lists of resources")

        if not isinstance(self.jobs, list):
            raise ConfigError("jobs must be a list of job definitions")

        return True


def load_config(path: Optional[Union[str, Path]] = None) -> ServiceConfig:
    """
    Load configuration from a YAML file

    Without a path the default ``~/.taktgeber/config.yaml`` is used when it
    exists; otherwise defaults and environment variables apply.
    """
    if path is None:
        if not DEFAULT_CONFIG_PATH.exists():
            return ServiceConfig()
        path = DEFAULT_CONFIG_PATH

    path = Path(path)
    try:
        with path.open('r') as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    try:
        config = ServiceConfig.from_dict(data)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e

    config.validate()
    return config


def setup_logging(config: ServiceConfig):
    """Setup logging based on configuration"""
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=config.log_format
    )

    # Set specific loggers to appropriate levels
    logging.getLogger('redis').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)

    if config.log_level.upper() == 'DEBUG':
        logging.getLogger('taktgeber').setLevel(logging.DEBUG)
