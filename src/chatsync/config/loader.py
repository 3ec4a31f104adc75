"""Configuration loading, merging, and environment overrides."""

from __future__ import annotations

import copy
import logging
import os
from typing import Any, Mapping

import yaml
from pydantic import ValidationError as PydanticValidationError

from chatsync.config.schema import ChatSyncConfig

logger = logging.getLogger(__name__)

ENV_OVERRIDES = {
    "CHATSYNC_API_BASE": ("server", "api_base"),
    "CHATSYNC_AUTH_TOKEN": ("server", "auth_token"),
    "CHATSYNC_STATE_DIR": ("persistence", "directory"),
}


def load_config(path: str | None = None) -> ChatSyncConfig:
    """Read *path* as YAML and validate it into a :class:`ChatSyncConfig`.

    Without a path, or when the file cannot be used, the defaults are
    returned and the reason is logged.
    """
    if path is None:
        logger.debug("No config path provided, using defaults")
        return ChatSyncConfig()

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        logger.warning("Config file not found: %s -- using defaults", path)
        return ChatSyncConfig()
    except yaml.YAMLError as exc:
        logger.error("Failed to parse YAML config %s: %s", path, exc)
        return ChatSyncConfig()

    if not isinstance(data, dict):
        logger.warning("Config file %s did not produce a dict, using defaults", path)
        return ChatSyncConfig()

    try:
        return ChatSyncConfig.model_validate(data)
    except PydanticValidationError as exc:
        logger.error("Config validation failed for %s: %s", path, exc)
        return ChatSyncConfig()


def merge_configs(base: ChatSyncConfig, overrides: dict[str, Any]) -> ChatSyncConfig:
    """Deep-merge an override dict into a base config.

    Returns *base* unchanged if the merged result does not validate.
    """
    merged = _deep_merge(base.model_dump(), overrides)

    try:
        return ChatSyncConfig.model_validate(merged)
    except PydanticValidationError as exc:
        logger.error("Merged config validation failed: %s", exc)
        return base


def apply_env_overrides(
    config: ChatSyncConfig, environ: Mapping[str, str] | None = None
) -> ChatSyncConfig:
    """Apply ``CHATSYNC_*`` environment variables on top of *config*."""
    env = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    for var, (section, key) in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            overrides.setdefault(section, {})[key] = value
            logger.debug("Config override from %s", var)
    if not overrides:
        return config
    return merge_configs(config, overrides)


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge *overrides* into a copy of *base*."""
    result = copy.deepcopy(base)
    for key, value in overrides.items():
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result
