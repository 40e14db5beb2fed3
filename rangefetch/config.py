"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from .transfer.protocol import (
    DEFAULT_CHUNK_SIZE, MIN_COMPRESSION_SIZE, STREAM_BUFFER_SIZE, WRITE_BUFFER_SIZE,
)


@dataclass
class Config:
    """
    Range server / fetcher configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (RANGEFETCH_*)
    2. Config file (config.json)
    3. Default values
    """
    # Network
    host: str = '0.0.0.0'
    server_port: int = 8000
    fetcher_port: int = 8888
    server_url: str = 'http://localhost:8000'

    # Storage
    serve_root: Path = field(default_factory=lambda: Path('./files'))
    download_dir: Path = field(default_factory=lambda: Path('.'))

    # Transfer
    chunk_size: int = DEFAULT_CHUNK_SIZE              # 512KB
    write_buffer_size: int = WRITE_BUFFER_SIZE        # 64KB
    stream_buffer_size: int = STREAM_BUFFER_SIZE      # 32KB
    min_compression_size: int = MIN_COMPRESSION_SIZE  # 8KB
    accept_gzip: bool = True

    # Timeouts (seconds)
    connect_timeout: float = 10.0
    read_timeout: float = 30.0
    shutdown_timeout: float = 30.0

    # Retries (whole fetch attempts, 0 = fail on first error)
    retry_attempts: int = 0
    retry_delay: float = 1.0

    # Logging
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Network
        config.host = os.getenv('RANGEFETCH_HOST', config.host)
        config.server_port = int(os.getenv('RANGEFETCH_SERVER_PORT', config.server_port))
        config.fetcher_port = int(os.getenv('RANGEFETCH_FETCHER_PORT', config.fetcher_port))
        config.server_url = os.getenv('RANGEFETCH_SERVER_URL', config.server_url)

        # Storage
        serve_root = os.getenv('RANGEFETCH_SERVE_ROOT')
        if serve_root:
            config.serve_root = Path(serve_root)
        download_dir = os.getenv('RANGEFETCH_DOWNLOAD_DIR')
        if download_dir:
            config.download_dir = Path(download_dir)

        # Transfer
        config.chunk_size = int(os.getenv('RANGEFETCH_CHUNK_SIZE', config.chunk_size))
        config.write_buffer_size = int(
            os.getenv('RANGEFETCH_WRITE_BUFFER_SIZE', config.write_buffer_size)
        )
        config.stream_buffer_size = int(
            os.getenv('RANGEFETCH_STREAM_BUFFER_SIZE', config.stream_buffer_size)
        )
        config.min_compression_size = int(
            os.getenv('RANGEFETCH_MIN_COMPRESSION_SIZE', config.min_compression_size)
        )
        config.accept_gzip = os.getenv('RANGEFETCH_ACCEPT_GZIP', 'true').lower() == 'true'

        # Timeouts
        config.connect_timeout = float(os.getenv('RANGEFETCH_CONNECT_TIMEOUT', config.connect_timeout))
        config.read_timeout = float(os.getenv('RANGEFETCH_READ_TIMEOUT', config.read_timeout))
        config.shutdown_timeout = float(
            os.getenv('RANGEFETCH_SHUTDOWN_TIMEOUT', config.shutdown_timeout)
        )

        # Retries
        config.retry_attempts = int(os.getenv('RANGEFETCH_RETRY_ATTEMPTS', config.retry_attempts))
        config.retry_delay = float(os.getenv('RANGEFETCH_RETRY_DELAY', config.retry_delay))

        # Logging
        config.log_level = os.getenv('RANGEFETCH_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        # Network
        config.host = data.get('host', config.host)
        config.server_port = data.get('server_port', config.server_port)
        config.fetcher_port = data.get('fetcher_port', config.fetcher_port)
        config.server_url = data.get('server_url', config.server_url)

        # Storage
        if 'serve_root' in data:
            config.serve_root = Path(data['serve_root'])
        if 'download_dir' in data:
            config.download_dir = Path(data['download_dir'])

        # Transfer
        config.chunk_size = data.get('chunk_size', config.chunk_size)
        config.write_buffer_size = data.get('write_buffer_size', config.write_buffer_size)
        config.stream_buffer_size = data.get('stream_buffer_size', config.stream_buffer_size)
        config.min_compression_size = data.get('min_compression_size', config.min_compression_size)
        config.accept_gzip = data.get('accept_gzip', config.accept_gzip)

        # Timeouts
        config.connect_timeout = data.get('connect_timeout', config.connect_timeout)
        config.read_timeout = data.get('read_timeout', config.read_timeout)
        config.shutdown_timeout = data.get('shutdown_timeout', config.shutdown_timeout)

        # Retries
        config.retry_attempts = data.get('retry_attempts', config.retry_attempts)
        config.retry_delay = data.get('retry_delay', config.retry_delay)

        # Logging
        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'server_port': self.server_port,
            'fetcher_port': self.fetcher_port,
            'server_url': self.server_url,
            'serve_root': str(self.serve_root),
            'download_dir': str(self.download_dir),
            'chunk_size': self.chunk_size,
            'write_buffer_size': self.write_buffer_size,
            'stream_buffer_size': self.stream_buffer_size,
            'min_compression_size': self.min_compression_size,
            'accept_gzip': self.accept_gzip,
            'connect_timeout': self.connect_timeout,
            'read_timeout': self.read_timeout,
            'shutdown_timeout': self.shutdown_timeout,
            'retry_attempts': self.retry_attempts,
            'retry_delay': self.retry_delay,
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    # Start with defaults
    config = Config()

    # Load from file if provided
    if config_path and config_path.exists():
        config = Config.from_file(config_path)

    # Override with environment variables
    env_config = Config.from_env()

    # Merge (env takes precedence for non-default values)
    defaults = Config()
    for key in config.to_dict():
        env_val = getattr(env_config, key)
        if env_val != getattr(defaults, key):
            setattr(config, key, env_val)

    return config


# Example config file template
EXAMPLE_CONFIG = """
{
  "host": "0.0.0.0",
  "server_port": 8000,
  "fetcher_port": 8888,
  "server_url": "http://localhost:8000",
  "serve_root": "./files",
  "download_dir": ".",
  "chunk_size": 524288,
  "write_buffer_size": 65536,
  "min_compression_size": 8192,
  "accept_gzip": true,
  "retry_attempts": 0,
  "log_level": "INFO"
}
"""
