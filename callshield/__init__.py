"""
callshield - real-time call screening and crowd-sourced number reputation.

This package provides the on-device screening pipeline (local lists, prefix
rules, seed database, remote reputation behind a circuit breaker, behavioral
signals) and the backend reputation engine (report aggregation, abuse
hardening, family rule sync) that the device talks to.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
