from __future__ import annotations

from pathlib import Path

import pytest

from callshield.screening.decision import DecisionSource, Reject, Silence
from callshield.screening.policy import (
    AdvancedBlockingEvaluator,
    AdvancedBlockingPolicy,
    BlockingPreset,
    CountryFilterMode,
    UnknownCallAction,
    is_in_night_window,
)
from callshield.storage.device import (
    CallHistoryRecord,
    CallHistoryRepository,
    DeviceDatabase,
    NumberListRepository,
)

H = "d" * 64
INDIAN = "+919876543210"
GERMAN = "+4930123456"


def _evaluator(tmp_path: Path, *, hour: int = 12) -> tuple[AdvancedBlockingEvaluator, DeviceDatabase]:
    db = DeviceDatabase(tmp_path / "device.sqlite3")
    evaluator = AdvancedBlockingEvaluator(
        history=CallHistoryRepository(db),
        hour_fn=lambda: hour,
    )
    return evaluator, db


@pytest.mark.parametrize(
    ("hour", "expected"),
    [(22, True), (23, True), (0, True), (6, True), (7, False), (12, False), (21, False)],
)
def test_night_window_crosses_midnight(hour: int, expected: bool) -> None:
    assert is_in_night_window(hour, 22, 7) is expected


def test_night_window_same_day() -> None:
    assert is_in_night_window(13, 12, 14)
    assert not is_in_night_window(14, 12, 14)


def test_default_policy_is_inactive(tmp_path: Path) -> None:
    evaluator, _ = _evaluator(tmp_path)
    policy = AdvancedBlockingPolicy()
    assert not policy.is_active()
    assert (
        evaluator.evaluate(e164=INDIAN, number_hash=H, is_contact=False, policy=policy, is_pro=True)
        is None
    )


def test_night_guard_silences_non_contacts(tmp_path: Path) -> None:
    evaluator, _ = _evaluator(tmp_path, hour=23)
    policy = AdvancedBlockingPolicy.for_preset(BlockingPreset.NIGHT_GUARD)

    decision = evaluator.evaluate(
        e164=INDIAN, number_hash=H, is_contact=False, policy=policy, is_pro=False
    )
    assert decision == Silence(1.0, "night_guard", DecisionSource.ADVANCED_BLOCKING)
    assert (
        evaluator.evaluate(e164=INDIAN, number_hash=H, is_contact=True, policy=policy, is_pro=False)
        is None
    )


def test_night_guard_reject_is_pro_only(tmp_path: Path) -> None:
    evaluator, _ = _evaluator(tmp_path, hour=2)
    policy = AdvancedBlockingPolicy(
        night_guard_enabled=True, night_guard_action=UnknownCallAction.REJECT
    )
    assert evaluator.evaluate(
        e164=INDIAN, number_hash=H, is_contact=False, policy=policy, is_pro=True
    ) == Reject(DecisionSource.ADVANCED_BLOCKING)
    assert isinstance(
        evaluator.evaluate(e164=INDIAN, number_hash=H, is_contact=False, policy=policy, is_pro=False),
        Silence,
    )


def test_contacts_only_rejects_strangers(tmp_path: Path) -> None:
    evaluator, _ = _evaluator(tmp_path)
    policy = AdvancedBlockingPolicy.for_preset(BlockingPreset.CONTACTS_ONLY)
    assert evaluator.evaluate(
        e164=INDIAN, number_hash=H, is_contact=False, policy=policy, is_pro=False
    ) == Reject(DecisionSource.ADVANCED_BLOCKING)
    assert (
        evaluator.evaluate(e164=INDIAN, number_hash=H, is_contact=True, policy=policy, is_pro=False)
        is None
    )


def test_international_lock(tmp_path: Path) -> None:
    evaluator, _ = _evaluator(tmp_path)
    policy = AdvancedBlockingPolicy.for_preset(BlockingPreset.INTERNATIONAL_LOCK)
    assert evaluator.evaluate(
        e164=GERMAN, number_hash=H, is_contact=False, policy=policy, is_pro=False
    ) == Silence(1.0, "international_lock", DecisionSource.ADVANCED_BLOCKING)
    assert (
        evaluator.evaluate(e164=INDIAN, number_hash=H, is_contact=False, policy=policy, is_pro=False)
        is None
    )


def test_country_filter_requires_pro(tmp_path: Path) -> None:
    evaluator, _ = _evaluator(tmp_path)
    policy = AdvancedBlockingPolicy(
        preset=BlockingPreset.CUSTOM,
        country_filter_mode=CountryFilterMode.BLOCK_LISTED,
        country_filter_list=frozenset({"de"}),
    )
    assert (
        evaluator.evaluate(e164=GERMAN, number_hash=H, is_contact=False, policy=policy, is_pro=False)
        is None
    )
    decision = evaluator.evaluate(
        e164=GERMAN, number_hash=H, is_contact=False, policy=policy, is_pro=True
    )
    assert decision == Silence(1.0, "country_blocked", DecisionSource.ADVANCED_BLOCKING)

    allow_only = policy.model_copy(update={"country_filter_mode": CountryFilterMode.ALLOW_ONLY})
    assert (
        evaluator.evaluate(e164=GERMAN, number_hash=H, is_contact=False, policy=allow_only, is_pro=True)
        is None
    )
    assert evaluator.evaluate(
        e164=INDIAN, number_hash=H, is_contact=False, policy=allow_only, is_pro=True
    ) == Silence(1.0, "country_not_allowed", DecisionSource.ADVANCED_BLOCKING)


def test_auto_escalate_rejects_after_threshold_without_writing(tmp_path: Path) -> None:
    evaluator, db = _evaluator(tmp_path)
    history = CallHistoryRepository(db)
    blocklist = NumberListRepository(db, "blocklist")
    policy = AdvancedBlockingPolicy(auto_escalate_enabled=True, auto_escalate_threshold=2)

    def reject(ts: float) -> None:
        history.record(
            CallHistoryRecord(H, "****3210", "rejected", 1.0, None, "PREFIX", ts)
        )

    reject(1.0)
    assert (
        evaluator.evaluate(e164=INDIAN, number_hash=H, is_contact=False, policy=policy, is_pro=False)
        is None
    )
    reject(2.0)
    assert evaluator.evaluate(
        e164=INDIAN, number_hash=H, is_contact=False, policy=policy, is_pro=False
    ) == Reject(DecisionSource.ADVANCED_BLOCKING, blocklist_note="Auto-blocked (2 rejections)")
    # The blocklist write happens after recording, not inside the decision.
    assert not blocklist.contains(H)


def test_policy_parses_from_plain_dict() -> None:
    policy = AdvancedBlockingPolicy.model_validate(
        {"preset": "night_guard", "night_guard_enabled": True, "country_filter_list": ["IN", "US"]}
    )
    assert policy.preset is BlockingPreset.NIGHT_GUARD
    assert policy.country_filter_list == frozenset({"IN", "US"})
    assert policy.is_active()
