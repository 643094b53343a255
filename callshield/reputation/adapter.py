"""
Reputation result types and the remote adapter interface.

Adapters must be async and cancellable; the screening deadline may abandon a
lookup at any await point.
"""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from callshield.net.api import ReputationApiClient


class ReputationSource(str, enum.Enum):
    SEED_DB = "SEED_DB"
    REMOTE = "REMOTE"
    NOT_FOUND = "NOT_FOUND"


@dataclass(frozen=True, slots=True)
class ReputationResult:
    """
    Unified reputation for a number hash.

    Fields:
        confidence_score: [0, 1] spam likelihood.
        category: Dominant spam category, if any.
        report_count: Raw reports (0 for seed-database hits).
        unique_reporters: Distinct reporting devices (0 for seed-database hits).
        source: Where the answer came from.
    """

    confidence_score: float
    category: str | None
    report_count: int
    unique_reporters: int
    source: ReputationSource

    @classmethod
    def not_found(cls) -> ReputationResult:
        return cls(
            confidence_score=0.0,
            category=None,
            report_count=0,
            unique_reporters=0,
            source=ReputationSource.NOT_FOUND,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "confidence_score": self.confidence_score,
            "category": self.category,
            "report_count": self.report_count,
            "unique_reporters": self.unique_reporters,
            "source": self.source.value,
        }


class RemoteReputationAdapter(ABC):
    """Base interface for remote reputation lookups."""

    name: str

    @abstractmethod
    async def lookup(self, number_hash: str) -> ReputationResult:
        """
        Look up a number hash remotely.

        Implementations raise on transport or server failure; the repository
        converts failures into NOT_FOUND.
        """

        raise NotImplementedError


class BackendReputationAdapter(RemoteReputationAdapter):
    """Remote adapter backed by the callshield backend `/reputation` endpoint."""

    name = "backend"

    def __init__(self, api: ReputationApiClient, *, device_token_hash: str) -> None:
        self._api = api
        self._device_token_hash = device_token_hash

    async def lookup(self, number_hash: str) -> ReputationResult:
        resp = await self._api.get_reputation(
            number_hash, device_token_hash=self._device_token_hash, max_retries=0
        )
        return ReputationResult(
            confidence_score=resp.confidence_score,
            category=resp.category,
            report_count=resp.report_count,
            unique_reporters=resp.unique_reporters,
            source=ReputationSource.REMOTE,
        )
