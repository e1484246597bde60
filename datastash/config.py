"""
Datastash configuration management.

Handles loading, saving, and validating configuration. Everything the
worker writes (database, working directory, logs) lives under one data
directory unless configured otherwise.

Configuration path priority:
1. Explicit config_path argument
2. DATASTASH_CONFIG_PATH environment variable
3. Default: ~/.datastash/config.json
"""

import json
import logging
import os
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional, List

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".datastash"

# Environment variables
ENV_CONFIG_PATH = 'DATASTASH_CONFIG_PATH'
ENV_DATA_DIR = 'DATASTASH_DATA_DIR'
ENV_SMTP_PASSWORD = 'DATASTASH_SMTP_PASSWORD'


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None  # defaults to <data_dir>/logs/datastash.log
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5


@dataclass
class EmailConfig:
    """SMTP settings for trigger notifications."""
    host: Optional[str] = None
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    sender: str = "datastash@localhost"
    use_tls: bool = True

    @property
    def configured(self) -> bool:
        return bool(self.host)


class StashConfig:
    """
    Datastash configuration manager.

    Loads configuration from a JSON file, falling back to defaults for
    anything the file leaves out.
    """

    DEFAULT_CONFIG_PATH = DEFAULT_DATA_DIR / "config.json"

    def __init__(self, config_path: Optional[str] = None, data_dir: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to configuration file. If None, uses env var or default.
            data_dir: Base data directory; overrides the file and environment.
        """
        if config_path:
            self.config_path = Path(config_path).expanduser()
        elif os.environ.get(ENV_CONFIG_PATH):
            self.config_path = Path(os.environ[ENV_CONFIG_PATH]).expanduser()
        else:
            self.config_path = self.DEFAULT_CONFIG_PATH

        self.data_dir: Path = Path(os.environ.get(ENV_DATA_DIR) or DEFAULT_DATA_DIR).expanduser()
        self.source_location: Optional[Path] = None
        self.database: Optional[Path] = None
        self.stored_runs: int = 50
        self.poll_interval_seconds: int = 10
        self.command_timeout: int = 3600
        self.logging = LoggingConfig()
        self.email = EmailConfig()

        if self.config_path.exists():
            self.load()
        else:
            logger.debug(f"No config found at {self.config_path}, using defaults")

        if data_dir:
            self.data_dir = Path(data_dir).expanduser()
        if os.environ.get(ENV_SMTP_PASSWORD):
            self.email.password = os.environ[ENV_SMTP_PASSWORD]

        self.data_dir = self.data_dir.resolve()
        if self.source_location is None:
            self.source_location = self.data_dir / "source"
        if self.database is None:
            self.database = self.data_dir / "stash.db"
        if self.logging.file is None:
            self.logging.file = str(self.data_dir / "logs" / "datastash.log")

    def load(self):
        """Load configuration from JSON file."""
        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)

            if data.get('data_dir'):
                self.data_dir = Path(data['data_dir']).expanduser()
            if data.get('source_location'):
                self.source_location = Path(data['source_location']).expanduser()
            if data.get('database'):
                self.database = Path(data['database']).expanduser()
            self.stored_runs = data.get('stored_runs', self.stored_runs)
            self.poll_interval_seconds = data.get('poll_interval_seconds', self.poll_interval_seconds)
            self.command_timeout = data.get('command_timeout', self.command_timeout)

            if 'logging' in data:
                self.logging = LoggingConfig(**data['logging'])
            if 'email' in data:
                self.email = EmailConfig(**data['email'])

            logger.info(f"Loaded configuration from {self.config_path}")

        except Exception as e:
            logger.error(f"Failed to load config from {self.config_path}: {e}")
            raise

    def save(self):
        """Save configuration to JSON file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        email = asdict(self.email)
        email['password'] = None  # secrets stay in the environment

        data = {
            'data_dir': str(self.data_dir),
            'source_location': str(self.source_location),
            'database': str(self.database),
            'stored_runs': self.stored_runs,
            'poll_interval_seconds': self.poll_interval_seconds,
            'command_timeout': self.command_timeout,
            'logging': asdict(self.logging),
            'email': email
        }

        with open(self.config_path, 'w') as f:
            json.dump(data, f, indent=2)

        logger.info(f"Saved configuration to {self.config_path}")

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not isinstance(self.stored_runs, int) or self.stored_runs < 1:
            errors.append("'stored_runs' must be a positive integer")
        if not isinstance(self.poll_interval_seconds, (int, float)) or self.poll_interval_seconds <= 0:
            errors.append("'poll_interval_seconds' must be positive")
        if not isinstance(self.command_timeout, int) or self.command_timeout <= 0:
            errors.append("'command_timeout' must be positive")
        if self.logging.level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            errors.append(f"Unknown logging level '{self.logging.level}'")
        if self.email.configured and not self.email.sender:
            errors.append("'email.sender' is required when 'email.host' is set")

        return errors

    def __repr__(self):
        return f"StashConfig(data_dir={self.data_dir}, path={self.config_path})"
