"""
Advanced blocking policy: contacts-only mode, night guard, international lock,
country filters and auto-escalation.

Evaluation order (first match wins):
    1. Night guard       non-contacts during the configured hours
    2. Contacts only     reject non-contacts
    3. Silence unknown   silence non-contacts
    4. International     silence numbers outside the home calling code
    5. Country filter    Pro only; allow-only or block-listed regions
    6. Auto-escalate     block a number after N recorded rejections
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime
from typing import Callable, Protocol

from pydantic import BaseModel, Field
from pydantic import ConfigDict as PydanticConfigDict

from callshield.core.identity import region_for_e164
from callshield.logging_config import short_hash
from callshield.screening.decision import CallDecision, DecisionSource, Reject, Silence
from callshield.storage.device import CallHistoryRepository

logger = logging.getLogger(__name__)


class BlockingPreset(str, enum.Enum):
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"
    CONTACTS_ONLY = "contacts_only"
    NIGHT_GUARD = "night_guard"
    INTERNATIONAL_LOCK = "international_lock"
    CUSTOM = "custom"


class UnknownCallAction(str, enum.Enum):
    ALLOW = "allow"
    SILENCE = "silence"
    REJECT = "reject"


class CountryFilterMode(str, enum.Enum):
    OFF = "off"
    ALLOW_ONLY = "allow_only"
    BLOCK_LISTED = "block_listed"


class AdvancedBlockingPolicy(BaseModel):
    model_config = PydanticConfigDict(extra="ignore")

    preset: BlockingPreset = BlockingPreset.BALANCED
    allow_contacts_only: bool = False
    silence_unknown_numbers: bool = False
    night_guard_enabled: bool = False
    night_guard_start_hour: int = Field(default=22, ge=0, le=23)
    night_guard_end_hour: int = Field(default=7, ge=0, le=23)
    night_guard_action: UnknownCallAction = UnknownCallAction.SILENCE
    block_international: bool = False
    country_filter_mode: CountryFilterMode = CountryFilterMode.OFF
    country_filter_list: frozenset[str] = frozenset()
    auto_escalate_enabled: bool = False
    auto_escalate_threshold: int = Field(default=3, ge=1)

    def is_customized(self) -> bool:
        """True if any option beyond the preset itself is active."""

        return (
            self.allow_contacts_only
            or self.silence_unknown_numbers
            or self.night_guard_enabled
            or self.block_international
            or self.country_filter_mode is not CountryFilterMode.OFF
            or self.auto_escalate_enabled
        )

    def is_active(self) -> bool:
        return self.preset is not BlockingPreset.BALANCED or self.is_customized()

    @classmethod
    def for_preset(cls, preset: BlockingPreset) -> AdvancedBlockingPolicy:
        if preset is BlockingPreset.AGGRESSIVE:
            return cls(
                preset=preset,
                silence_unknown_numbers=True,
                auto_escalate_enabled=True,
                auto_escalate_threshold=2,
            )
        if preset is BlockingPreset.CONTACTS_ONLY:
            return cls(preset=preset, allow_contacts_only=True)
        if preset is BlockingPreset.NIGHT_GUARD:
            return cls(preset=preset, night_guard_enabled=True)
        if preset is BlockingPreset.INTERNATIONAL_LOCK:
            return cls(preset=preset, block_international=True)
        return cls(preset=preset)


class ContactsLookup(Protocol):
    def is_in_contacts(self, e164: str) -> bool:  # pragma: no cover - helper protocol
        raise NotImplementedError


class NoContacts:
    """Contacts lookup for environments without a contacts provider."""

    def is_in_contacts(self, e164: str) -> bool:
        return False


def is_in_night_window(hour: int, start: int, end: int) -> bool:
    if start > end:
        # Crosses midnight, e.g. 22 -> 7.
        return hour >= start or hour < end
    return start <= hour < end


def _local_hour() -> int:
    return datetime.now().hour


class AdvancedBlockingEvaluator:
    def __init__(
        self,
        *,
        history: CallHistoryRepository,
        home_calling_code: str = "+91",
        hour_fn: Callable[[], int] = _local_hour,
    ) -> None:
        self._history = history
        self._home_calling_code = home_calling_code
        self._hour_fn = hour_fn

    def evaluate(
        self,
        *,
        e164: str | None,
        number_hash: str | None,
        is_contact: bool,
        policy: AdvancedBlockingPolicy,
        is_pro: bool,
    ) -> CallDecision | None:
        """Return a decision when the policy matches, else None (continue the pipeline)."""

        if not policy.is_active():
            return None

        if policy.night_guard_enabled and not is_contact:
            if is_in_night_window(
                self._hour_fn(), policy.night_guard_start_hour, policy.night_guard_end_hour
            ):
                if is_pro and policy.night_guard_action is UnknownCallAction.REJECT:
                    return Reject(DecisionSource.ADVANCED_BLOCKING)
                return Silence(1.0, "night_guard", DecisionSource.ADVANCED_BLOCKING)

        if policy.allow_contacts_only and not is_contact:
            return Reject(DecisionSource.ADVANCED_BLOCKING)

        if policy.silence_unknown_numbers and not is_contact:
            return Silence(0.5, "silence_unknown", DecisionSource.ADVANCED_BLOCKING)

        if (
            policy.block_international
            and e164 is not None
            and not e164.startswith(self._home_calling_code)
        ):
            return Silence(1.0, "international_lock", DecisionSource.ADVANCED_BLOCKING)

        if (
            is_pro
            and policy.country_filter_mode is not CountryFilterMode.OFF
            and e164 is not None
            and policy.country_filter_list
        ):
            region = region_for_e164(e164)
            listed = {c.upper() for c in policy.country_filter_list}
            if region is not None:
                if policy.country_filter_mode is CountryFilterMode.ALLOW_ONLY and region not in listed:
                    return Silence(1.0, "country_not_allowed", DecisionSource.ADVANCED_BLOCKING)
                if policy.country_filter_mode is CountryFilterMode.BLOCK_LISTED and region in listed:
                    return Silence(1.0, "country_blocked", DecisionSource.ADVANCED_BLOCKING)

        if policy.auto_escalate_enabled and number_hash is not None:
            rejections = self._history.count_rejections(number_hash)
            if rejections >= policy.auto_escalate_threshold:
                logger.info(
                    "auto-escalating %s after %d rejections", short_hash(number_hash), rejections
                )
                return Reject(
                    DecisionSource.ADVANCED_BLOCKING,
                    blocklist_note=f"Auto-blocked ({rejections} rejections)",
                )

        return None
