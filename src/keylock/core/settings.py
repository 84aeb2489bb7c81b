"""Lock defaults loaded from the environment or a YAML file."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import BaseModel, Field, ValidationError

from keylock.core.locks import StrategyKind
from keylock.core.token import TokenScope
from keylock.utils.env import get_bool_env, get_int_env, get_str_env


DEFAULT_REDIS_URL = "redis://localhost:6379/0"


class LockSettings(BaseModel):
    redis_url: str = DEFAULT_REDIS_URL
    ttl_ms: int = Field(default=1000, gt=0)
    blocking: bool = True
    blocking_timeout_ms: int = Field(default=1000, ge=0)
    sleep_ms: int = Field(default=100, gt=0)
    token_scope: TokenScope = TokenScope.THREAD
    strategy: StrategyKind = StrategyKind.SCRIPT
    key_prefix: str = ""

    def key(self, name: str) -> str:
        return f"{self.key_prefix}{name}"

    @classmethod
    def _validate(cls, data: Dict[str, Any]) -> "LockSettings":
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ValueError(f"Invalid lock settings: {exc}") from exc

    @classmethod
    def from_env(cls) -> "LockSettings":
        defaults = cls()
        data: Dict[str, Any] = {
            "redis_url": get_str_env("REDIS_URL", default=defaults.redis_url),
            "ttl_ms": get_int_env("KEYLOCK_TTL_MS", default=defaults.ttl_ms),
            "blocking": get_bool_env("KEYLOCK_BLOCKING", default=defaults.blocking),
            "blocking_timeout_ms": get_int_env(
                "KEYLOCK_BLOCKING_TIMEOUT_MS", default=defaults.blocking_timeout_ms
            ),
            "sleep_ms": get_int_env("KEYLOCK_SLEEP_MS", default=defaults.sleep_ms),
            "token_scope": get_str_env("KEYLOCK_TOKEN_SCOPE", default=defaults.token_scope.value),
            "strategy": get_str_env("KEYLOCK_STRATEGY", default=defaults.strategy.value),
            "key_prefix": get_str_env("KEYLOCK_KEY_PREFIX", default=defaults.key_prefix),
        }
        return cls._validate(data)

    @classmethod
    def from_file(cls, path: Path) -> "LockSettings":
        data = yaml.safe_load(path.read_text()) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Invalid lock settings: expected a mapping in {path}")
        # Allow the settings to live under a top-level ``keylock:`` section.
        data = data.get("keylock", data)
        return cls._validate(data)
