"""
Call decisions produced by the screening pipeline.

`CallDecision` is a closed union of four frozen dataclasses:

    Allow    the call rings normally
    Silence  ring suppressed, the call lands in missed calls
    Reject   the call is disconnected
    Flag     the call rings and a risk notification is posted

Consumers match on the concrete class; `assert_never` keeps the matches
exhaustive under a type checker.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, NoReturn, Union


class DecisionSource(str, enum.Enum):
    WHITELIST = "WHITELIST"
    BLOCKLIST = "BLOCKLIST"
    PREFIX = "PREFIX"
    HIDDEN = "HIDDEN"
    ADVANCED_BLOCKING = "ADVANCED_BLOCKING"
    SEED_DB = "SEED_DB"
    REMOTE = "REMOTE"
    BEHAVIORAL = "BEHAVIORAL"
    DEFAULT = "DEFAULT"

    @property
    def display_label(self) -> str:
        return _DISPLAY_LABELS[self]


_DISPLAY_LABELS: dict[DecisionSource, str] = {
    DecisionSource.WHITELIST: "In your whitelist",
    DecisionSource.BLOCKLIST: "In your blocklist",
    DecisionSource.PREFIX: "Matched prefix rule",
    DecisionSource.HIDDEN: "Hidden / private number",
    DecisionSource.ADVANCED_BLOCKING: "Blocked by protection policy",
    DecisionSource.SEED_DB: "Found in local spam database",
    DecisionSource.REMOTE: "Reported by community",
    DecisionSource.BEHAVIORAL: "Suspicious call pattern",
    DecisionSource.DEFAULT: "Unknown",
}


@dataclass(frozen=True, slots=True)
class Allow:
    source: DecisionSource = DecisionSource.DEFAULT


@dataclass(frozen=True, slots=True)
class Silence:
    confidence_score: float
    category: str | None
    source: DecisionSource


@dataclass(frozen=True, slots=True)
class Reject:
    source: DecisionSource
    # Set when the number should also be added to the blocklist once the
    # call has been recorded.
    blocklist_note: str | None = None


@dataclass(frozen=True, slots=True)
class Flag:
    confidence_score: float
    category: str | None
    source: DecisionSource


CallDecision = Union[Allow, Silence, Reject, Flag]


def assert_never(value: NoReturn) -> NoReturn:
    raise AssertionError(f"Unhandled decision: {value!r}")


def outcome_for(decision: CallDecision) -> str:
    """History outcome label for a decision."""

    if isinstance(decision, Allow):
        return "allowed"
    if isinstance(decision, Silence):
        return "silenced"
    if isinstance(decision, Reject):
        return "rejected"
    if isinstance(decision, Flag):
        return "flagged"
    assert_never(decision)


def score_and_category(decision: CallDecision) -> tuple[float, str | None]:
    if isinstance(decision, (Silence, Flag)):
        return decision.confidence_score, decision.category
    if isinstance(decision, Reject):
        return 1.0, None
    if isinstance(decision, Allow):
        return 0.0, None
    assert_never(decision)


def decision_to_dict(decision: CallDecision) -> dict[str, Any]:
    score, category = score_and_category(decision)
    return {
        "outcome": outcome_for(decision),
        "source": decision.source.value,
        "confidence_score": score,
        "category": category,
    }


@dataclass(frozen=True, slots=True)
class CallResponse:
    """What the platform is told to do with the call."""

    disallow_call: bool
    reject_call: bool
    skip_call_log: bool = False


def build_response(decision: CallDecision) -> CallResponse:
    if isinstance(decision, Reject):
        return CallResponse(disallow_call=True, reject_call=True, skip_call_log=True)
    if isinstance(decision, Silence):
        return CallResponse(disallow_call=True, reject_call=False)
    if isinstance(decision, (Allow, Flag)):
        return CallResponse(disallow_call=False, reject_call=False)
    assert_never(decision)


ALLOW_RESPONSE = CallResponse(disallow_call=False, reject_call=False)
