"""
The screening decision pipeline.

Priority order, first match wins:

    1. Whitelist          Allow(WHITELIST)
    2. Blocklist          Reject(BLOCKLIST)
    3. Prefix rule        longest prefix; block / silence / allow
    4. Hidden number      Reject (Pro) or Silence when blocking hidden numbers, else Allow
    5. Advanced policy    contacts-only, night guard, international lock, ...
    6. Reputation         seed database, then the remote service
    7. Behavioral         escalate an Allow to Flag(BEHAVIORAL)
    8. Default            Allow(DEFAULT)

The deadline and fail-open handling live in `callshield.screening.service`;
this module only decides.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable

from callshield.core.identity import NumberHasher
from callshield.logging_config import short_hash
from callshield.reputation.adapter import ReputationResult, ReputationSource
from callshield.reputation.repository import ReputationRepository
from callshield.reputation.score import (
    CONFIDENCE_BLOCK_THRESHOLD,
    CONFIDENCE_FLAG_THRESHOLD,
    LIKELY_SPAM_THRESHOLD,
    MIN_REPORTERS_TO_ACT,
)
from callshield.screening.behavioral import NO_SIGNALS, BehavioralAnalyzer
from callshield.screening.decision import (
    Allow,
    CallDecision,
    DecisionSource,
    Flag,
    Reject,
    Silence,
)
from callshield.screening.policy import (
    AdvancedBlockingEvaluator,
    AdvancedBlockingPolicy,
    ContactsLookup,
    NoContacts,
)
from callshield.storage.device import NumberListRepository, PrefixRuleRepository

logger = logging.getLogger(__name__)

HIDDEN_SILENCE_SCORE = 0.5


@dataclass(frozen=True, slots=True)
class ScreeningSettings:
    is_pro: bool = False
    auto_block_high_confidence: bool = False
    block_hidden_numbers: bool = False
    notify_on_block: bool = True
    notify_on_flag: bool = True
    policy: AdvancedBlockingPolicy = field(default_factory=AdvancedBlockingPolicy)


class ScreeningOrchestrator:
    def __init__(
        self,
        *,
        hasher: NumberHasher,
        whitelist: NumberListRepository,
        blocklist: NumberListRepository,
        prefix_rules: PrefixRuleRepository,
        reputation: ReputationRepository,
        behavioral: BehavioralAnalyzer,
        advanced: AdvancedBlockingEvaluator,
        contacts: ContactsLookup | None = None,
        settings_provider: Callable[[], ScreeningSettings] = ScreeningSettings,
    ) -> None:
        self._hasher = hasher
        self._whitelist = whitelist
        self._blocklist = blocklist
        self._prefix_rules = prefix_rules
        self._reputation = reputation
        self._behavioral = behavioral
        self._advanced = advanced
        self._contacts: ContactsLookup = contacts or NoContacts()
        self._settings_provider = settings_provider

    async def decide(self, raw_number: str | None) -> CallDecision:
        settings = self._settings_provider()
        hidden = raw_number is None or not raw_number.strip()
        e164 = None if hidden else self._hasher.normalize(raw_number)
        number_hash = None if e164 is None else self._hasher.hash_e164(e164)

        if number_hash is not None:
            if await asyncio.to_thread(self._whitelist.contains, number_hash):
                return Allow(DecisionSource.WHITELIST)
            if await asyncio.to_thread(self._blocklist.contains, number_hash):
                return Reject(DecisionSource.BLOCKLIST)

        if e164 is not None:
            rule = await asyncio.to_thread(self._prefix_rules.find_match, e164)
            if rule is not None:
                if rule.action == "block":
                    return Reject(DecisionSource.PREFIX)
                if rule.action == "silence":
                    return Silence(1.0, None, DecisionSource.PREFIX)
                return Allow(DecisionSource.PREFIX)

        if hidden:
            if not settings.block_hidden_numbers:
                return Allow(DecisionSource.HIDDEN)
            if settings.is_pro:
                return Reject(DecisionSource.HIDDEN)
            return Silence(HIDDEN_SILENCE_SCORE, None, DecisionSource.HIDDEN)

        if settings.policy.is_active():
            advanced = await asyncio.to_thread(
                self._evaluate_policy, e164, number_hash, settings
            )
            if advanced is not None:
                return advanced

        if number_hash is None:
            logger.debug("caller could not be normalized; skipping reputation checks")
            return Allow(DecisionSource.DEFAULT)

        result = await self._reputation.lookup(number_hash)
        decision = self._decide_from_reputation(result, settings)
        if not isinstance(decision, Allow):
            return decision

        signals = await self._behavioral.analyze_async(number_hash)
        if signals is not NO_SIGNALS and signals.has_any_signal:
            logger.info(
                "behavioral escalation for %s: %s", short_hash(number_hash), signals.category
            )
            return Flag(signals.confidence_score, signals.category, DecisionSource.BEHAVIORAL)

        return decision

    def _evaluate_policy(
        self, e164: str | None, number_hash: str | None, settings: ScreeningSettings
    ) -> CallDecision | None:
        is_contact = e164 is not None and self._contacts.is_in_contacts(e164)
        return self._advanced.evaluate(
            e164=e164,
            number_hash=number_hash,
            is_contact=is_contact,
            policy=settings.policy,
            is_pro=settings.is_pro,
        )

    @staticmethod
    def _decide_from_reputation(
        result: ReputationResult, settings: ScreeningSettings
    ) -> CallDecision:
        score = result.confidence_score
        auto_block = settings.is_pro and settings.auto_block_high_confidence

        if result.source is ReputationSource.SEED_DB:
            if auto_block and score >= CONFIDENCE_BLOCK_THRESHOLD:
                return Reject(DecisionSource.SEED_DB)
            return Silence(score, result.category, DecisionSource.SEED_DB)

        if result.source is ReputationSource.REMOTE:
            if result.unique_reporters < MIN_REPORTERS_TO_ACT:
                return Allow(DecisionSource.DEFAULT)
            if auto_block and score >= CONFIDENCE_BLOCK_THRESHOLD:
                return Reject(DecisionSource.REMOTE)
            if score >= LIKELY_SPAM_THRESHOLD:
                return Silence(score, result.category, DecisionSource.REMOTE)
            if score >= CONFIDENCE_FLAG_THRESHOLD:
                return Flag(score, result.category, DecisionSource.REMOTE)

        return Allow(DecisionSource.DEFAULT)
