"""
Configuration loader.

Design goals:
- No secrets committed to the repo.
- Support `.env` for local development.
- Support YAML for policy tuning and non-secret defaults.
- Validate configuration with pydantic.

Precedence (highest to lowest):
1. OS environment variables (`CALLSHIELD_<FIELD>`)
2. `.env` values
3. YAML config file values (`CALLSHIELD_CONFIG` names the file)
4. Code defaults
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, Field
from pydantic import ConfigDict as PydanticConfigDict

from callshield.core.identity import NumberHasher
from callshield.net.http import HttpClientConfig
from callshield.screening.orchestrator import ScreeningSettings
from callshield.screening.policy import AdvancedBlockingPolicy


class CallShieldSettings(BaseModel):
    model_config = PydanticConfigDict(extra="ignore")

    # General
    log_level: str = "INFO"
    json_logging: bool = False

    # Identity
    hmac_salt: str = "callshield-dev-salt"
    home_calling_code: str = "+91"
    home_region: str = "IN"
    device_id: str = "local-device"

    # Device storage
    device_db_path: Path = Path(".callshield/device.sqlite3")

    # Remote service
    api_base_url: str = "http://127.0.0.1:8000"
    http_timeout_seconds: float = 10.0
    http_max_retries: int = 2
    http_backoff_base_seconds: float = 0.5
    http_backoff_max_seconds: float = 8.0
    http_user_agent: str = "callshield/0.1"

    # Screening
    screening_deadline_seconds: float = Field(default=1.4, gt=0)
    remote_lookup_timeout_seconds: float = Field(default=1.2, gt=0)
    circuit_window_size: int = Field(default=10, ge=1)
    circuit_failure_threshold: float = Field(default=0.5, ge=0, le=1)
    circuit_reopen_after_seconds: float = Field(default=60.0, ge=0)
    is_pro: bool = False
    auto_block_high_confidence: bool = False
    block_hidden_numbers: bool = False
    notify_on_block: bool = True
    notify_on_flag: bool = True
    advanced_blocking: AdvancedBlockingPolicy = Field(default_factory=AdvancedBlockingPolicy)

    # Seed DB refresh
    seed_update_max_attempts: int = Field(default=3, ge=1)

    # Backend
    backend_db_path: Path = Path(".callshield/backend.sqlite3")
    admin_secret: str | None = None
    download_signing_secret: str = "callshield-dev-signing-secret"
    public_base_url: str = "http://127.0.0.1:8000"
    download_url_ttl_seconds: int = Field(default=3600, gt=0)

    def http_config(self) -> HttpClientConfig:
        return HttpClientConfig(
            timeout_seconds=self.http_timeout_seconds,
            max_retries=self.http_max_retries,
            backoff_base_seconds=self.http_backoff_base_seconds,
            backoff_max_seconds=self.http_backoff_max_seconds,
            user_agent=self.http_user_agent,
        )

    def screening_settings(self) -> ScreeningSettings:
        return ScreeningSettings(
            is_pro=self.is_pro,
            auto_block_high_confidence=self.auto_block_high_confidence,
            block_hidden_numbers=self.block_hidden_numbers,
            notify_on_block=self.notify_on_block,
            notify_on_flag=self.notify_on_flag,
            policy=self.advanced_blocking,
        )

    def number_hasher(self) -> NumberHasher:
        return NumberHasher(salt=self.hmac_salt, home_calling_code=self.home_calling_code)

    def device_token_hash(self) -> str:
        return self.number_hasher().hash_token(self.device_id)


_ENV_PREFIX = "CALLSHIELD_"

_ENV_MAP: dict[str, str] = {
    f"{_ENV_PREFIX}{name.upper()}": name for name in CallShieldSettings.model_fields
}

# JSON string: {"preset": "night_guard", "night_guard_start_hour": 23, ...}
_JSON_FIELDS = frozenset({"advanced_blocking"})


def _read_yaml(path: Path) -> dict[str, Any]:
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    return raw if isinstance(raw, dict) else {}


def _read_dotenv(path: Path) -> dict[str, str]:
    # dotenv_values does not mutate os.environ; it just parses the file.
    values = dotenv_values(path)
    out: dict[str, str] = {}
    for k, v in values.items():
        if isinstance(k, str) and isinstance(v, str):
            out[k] = v
    return out


def _overlay_env(target: dict[str, Any], env: dict[str, str]) -> None:
    for env_key, field_name in _ENV_MAP.items():
        if env_key not in env:
            continue
        raw = env[env_key]
        if field_name in _JSON_FIELDS:
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ValueError(f"{env_key} is not valid JSON: {e}") from e
            if not isinstance(parsed, dict):
                raise ValueError(f"{env_key} must be a JSON object")
            target[field_name] = parsed
        elif field_name == "admin_secret" and not raw:
            target[field_name] = None
        else:
            target[field_name] = raw


def load_settings(
    *, yaml_path: Path | None = None, env_path: Path | None = None
) -> CallShieldSettings:
    """
    Load settings from YAML and .env, with OS env overrides.

    Args:
        yaml_path: Optional YAML config path.
        env_path: Optional .env path (default: `.env` if present).
    """

    data: dict[str, Any] = {}

    if env_path is None:
        maybe = Path(".env")
        env_path = maybe if maybe.exists() else None

    dotenv = _read_dotenv(env_path) if env_path is not None and env_path.exists() else {}

    # YAML path resolution:
    # - explicit yaml_path wins
    # - else CALLSHIELD_CONFIG from OS env wins
    # - else CALLSHIELD_CONFIG from .env
    if yaml_path is None:
        cfg = os.environ.get("CALLSHIELD_CONFIG") or dotenv.get("CALLSHIELD_CONFIG")
        if cfg:
            yaml_path = Path(cfg)

    if yaml_path is not None and yaml_path.exists():
        data.update(_read_yaml(yaml_path))

    if dotenv:
        _overlay_env(data, dotenv)

    # OS env overrides .env/YAML
    os_env: dict[str, str] = {k: v for k, v in os.environ.items() if k in _ENV_MAP}
    _overlay_env(data, os_env)

    return CallShieldSettings.model_validate(data)
