"""Configuration loading and validation."""

from chatsync.config.schema import (
    BootstrapConfig,
    ChatSyncConfig,
    PersistenceConfig,
    PollingConfig,
    ServerConfig,
)
from chatsync.config.loader import apply_env_overrides, load_config, merge_configs

__all__ = [
    "BootstrapConfig",
    "ChatSyncConfig",
    "PersistenceConfig",
    "PollingConfig",
    "ServerConfig",
    "apply_env_overrides",
    "load_config",
    "merge_configs",
]
