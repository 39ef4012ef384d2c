"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Optional
import json

from dotenv import load_dotenv


DEFAULT_ICE_SERVERS = [
    'stun:stun.l.google.com:19302',
    'stun:stun1.l.google.com:19302',
    'stun:stun2.l.google.com:19302',
    'stun:stun.services.mozilla.com',
]


@dataclass
class Config:
    """
    PeerDrop Configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (PEERDROP_*)
    2. Config file (config.json)
    3. Default values
    """
    # Signaling server
    host: str = '0.0.0.0'
    port: int = 3001
    server_url: str = 'http://localhost:3001'
    cors_origins: List[str] = field(default_factory=lambda: ['*'])

    # WebRTC
    ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))

    # Transfer
    chunk_size: int = 16 * 1024  # 16KB, safe for every data channel implementation
    max_buffered_amount: int = 1024 * 1024
    buffered_amount_low_threshold: int = 256 * 1024
    output_dir: Path = field(default_factory=lambda: Path('./received'))

    # Timeouts (seconds)
    connect_timeout: float = 10.0
    health_timeout: float = 5.0
    reconnect_attempts: int = 3
    reconnect_delay: float = 3.0

    # Logging
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Signaling server
        config.host = os.getenv('PEERDROP_HOST', config.host)
        config.port = int(os.getenv('PEERDROP_PORT', config.port))
        config.server_url = os.getenv('PEERDROP_SERVER_URL', config.server_url)

        origins = os.getenv('PEERDROP_CORS_ORIGINS', '')
        if origins:
            config.cors_origins = [o.strip() for o in origins.split(',') if o.strip()]

        # WebRTC
        ice = os.getenv('PEERDROP_ICE_SERVERS', '')
        if ice:
            config.ice_servers = [url.strip() for url in ice.split(',') if url.strip()]

        # Transfer
        config.chunk_size = int(os.getenv('PEERDROP_CHUNK_SIZE', config.chunk_size))
        output_dir = os.getenv('PEERDROP_OUTPUT_DIR')
        if output_dir:
            config.output_dir = Path(output_dir)

        # Timeouts
        config.connect_timeout = float(
            os.getenv('PEERDROP_CONNECT_TIMEOUT', config.connect_timeout)
        )
        config.reconnect_attempts = int(
            os.getenv('PEERDROP_RECONNECT_ATTEMPTS', config.reconnect_attempts)
        )

        # Logging
        config.log_level = os.getenv('PEERDROP_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        # Signaling server
        config.host = data.get('host', config.host)
        config.port = int(data.get('port', config.port))
        config.server_url = data.get('server_url', config.server_url)
        config.cors_origins = data.get('cors_origins', config.cors_origins)

        # WebRTC
        config.ice_servers = data.get('ice_servers', config.ice_servers)

        # Transfer
        config.chunk_size = int(data.get('chunk_size', config.chunk_size))
        config.max_buffered_amount = int(data.get(
            'max_buffered_amount', config.max_buffered_amount
        ))
        config.buffered_amount_low_threshold = int(data.get(
            'buffered_amount_low_threshold', config.buffered_amount_low_threshold
        ))
        if 'output_dir' in data:
            config.output_dir = Path(data['output_dir'])

        # Timeouts
        config.connect_timeout = float(data.get('connect_timeout', config.connect_timeout))
        config.health_timeout = float(data.get('health_timeout', config.health_timeout))
        config.reconnect_attempts = int(data.get('reconnect_attempts', config.reconnect_attempts))
        config.reconnect_delay = float(data.get('reconnect_delay', config.reconnect_delay))

        # Logging
        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'port': self.port,
            'server_url': self.server_url,
            'cors_origins': list(self.cors_origins),
            'ice_servers': list(self.ice_servers),
            'chunk_size': self.chunk_size,
            'max_buffered_amount': self.max_buffered_amount,
            'buffered_amount_low_threshold': self.buffered_amount_low_threshold,
            'output_dir': str(self.output_dir),
            'connect_timeout': self.connect_timeout,
            'health_timeout': self.health_timeout,
            'reconnect_attempts': self.reconnect_attempts,
            'reconnect_delay': self.reconnect_delay,
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
    for key in ['host', 'port', 'server_url', 'cors_origins', 'ice_servers',
                'chunk_size', 'output_dir', 'connect_timeout',
                'reconnect_attempts', 'log_level']:
        env_val = getattr(env_config, key)
        if env_val != getattr(defaults, key):
            setattr(config, key, env_val)

    return config


# Example config file template
EXAMPLE_CONFIG = """
{
  "host": "0.0.0.0",
  "port": 3001,
  "server_url": "http://192.168.1.100:3001",
  "ice_servers": ["stun:stun.l.google.com:19302"],
  "chunk_size": 16384,
  "connect_timeout": 10.0,
  "output_dir": "./received",
  "log_level": "INFO"
}
"""
