"""Pydantic models for all configuration."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    """Where the chat API lives and how to talk to it."""

    api_base: str = "https://dummy-chat-server.tribechat.com/api"
    auth_token: str | None = None
    request_timeout: float = 10.0
    connect_timeout: float = 5.0
    headers: dict[str, str] = Field(default_factory=dict)


class PollingConfig(BaseModel):
    """Delta polling and backoff behaviour."""

    enabled: bool = True
    poll_interval: float = 5.0
    backoff_multiplier: float = 2.0
    max_retries: int = 3
    max_backoff: float = 60.0
    info_interval: float = 30.0


class BootstrapConfig(BaseModel):
    """Retry policy for the initial full load."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0


class PersistenceConfig(BaseModel):
    """Where cache snapshots are stored."""

    enabled: bool = True
    directory: str = "~/.chatsync"
    namespace: str = "chat"


class ChatSyncConfig(BaseModel):
    """Top-level client configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    bootstrap: BootstrapConfig = Field(default_factory=BootstrapConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    local_user_id: str = "you"
