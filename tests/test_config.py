from __future__ import annotations

import os
from pathlib import Path

import pytest

from callshield.config import load_settings
from callshield.screening.policy import BlockingPreset


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("CALLSHIELD_"):
            monkeypatch.delenv(key, raising=False)


def test_defaults(tmp_path: Path) -> None:
    settings = load_settings(env_path=tmp_path / "missing.env")
    assert settings.screening_deadline_seconds == 1.4
    assert settings.home_calling_code == "+91"
    assert settings.admin_secret is None
    assert not settings.advanced_blocking.is_active()


def test_precedence_env_over_dotenv_over_yaml(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    cfg = tmp_path / "callshield.yaml"
    cfg.write_text(
        "is_pro: true\n"
        "http_max_retries: 5\n"
        "log_level: WARNING\n"
        "advanced_blocking:\n"
        "  preset: night_guard\n"
        "  night_guard_enabled: true\n"
        "  night_guard_start_hour: 23\n",
        encoding="utf-8",
    )
    env = tmp_path / ".env"
    env.write_text("CALLSHIELD_HTTP_MAX_RETRIES=3\nCALLSHIELD_LOG_LEVEL=DEBUG\n", encoding="utf-8")
    monkeypatch.setenv("CALLSHIELD_LOG_LEVEL", "ERROR")

    settings = load_settings(yaml_path=cfg, env_path=env)

    assert settings.is_pro is True
    assert settings.http_max_retries == 3
    assert settings.log_level == "ERROR"
    assert settings.advanced_blocking.preset is BlockingPreset.NIGHT_GUARD
    assert settings.advanced_blocking.night_guard_start_hour == 23
    assert settings.screening_settings().policy.night_guard_enabled


def test_config_path_from_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    cfg = tmp_path / "other.yaml"
    cfg.write_text("home_calling_code: '+1'\n", encoding="utf-8")
    monkeypatch.setenv("CALLSHIELD_CONFIG", str(cfg))

    settings = load_settings(env_path=tmp_path / "missing.env")

    assert settings.home_calling_code == "+1"
    assert settings.number_hasher().normalize("2025550123") == "+12025550123"


def test_json_policy_and_empty_admin_secret(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CALLSHIELD_ADVANCED_BLOCKING", '{"preset": "contacts_only", "allow_contacts_only": true}')
    monkeypatch.setenv("CALLSHIELD_ADMIN_SECRET", "")

    settings = load_settings(env_path=tmp_path / "missing.env")

    assert settings.advanced_blocking.allow_contacts_only
    assert settings.admin_secret is None


@pytest.mark.parametrize("raw", ["{not json", "[1, 2]"])
def test_malformed_policy_json_is_an_error(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, raw: str
) -> None:
    monkeypatch.setenv("CALLSHIELD_ADVANCED_BLOCKING", raw)

    with pytest.raises(ValueError, match="CALLSHIELD_ADVANCED_BLOCKING"):
        load_settings(env_path=tmp_path / "missing.env")


def test_device_token_hash_is_stable(tmp_path: Path) -> None:
    a = load_settings(env_path=tmp_path / "missing.env")
    b = load_settings(env_path=tmp_path / "missing.env")
    assert a.device_token_hash() == b.device_token_hash()
    assert len(a.device_token_hash()) == 64
