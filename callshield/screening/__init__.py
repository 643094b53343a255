"""On-device call screening for callshield."""

from __future__ import annotations

from .behavioral import BehavioralAnalyzer, BehavioralSignals, RingTimeRegistry
from .decision import (
    Allow,
    CallDecision,
    CallResponse,
    DecisionSource,
    Flag,
    Reject,
    Silence,
    build_response,
    outcome_for,
)
from .orchestrator import ScreeningOrchestrator, ScreeningSettings
from .policy import AdvancedBlockingEvaluator, AdvancedBlockingPolicy, BlockingPreset
from .service import CallRecorder, CallScreeningService, LoggingNotifier, Notifier

__all__ = [
    "BehavioralAnalyzer",
    "BehavioralSignals",
    "RingTimeRegistry",
    "Allow",
    "CallDecision",
    "CallResponse",
    "DecisionSource",
    "Flag",
    "Reject",
    "Silence",
    "build_response",
    "outcome_for",
    "ScreeningOrchestrator",
    "ScreeningSettings",
    "AdvancedBlockingEvaluator",
    "AdvancedBlockingPolicy",
    "BlockingPreset",
    "CallRecorder",
    "CallScreeningService",
    "LoggingNotifier",
    "Notifier",
]
