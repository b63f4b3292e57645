"""
Telemetry Module
================

Observability for the upsell backend.

Components:
- sentry.py: Error tracking and performance monitoring

Usage:
    from cartupsell.telemetry import init_sentry, capture_exception
"""

from cartupsell.telemetry.sentry import (
    init_sentry,
    set_shop_context,
    capture_exception,
)

__all__ = [
    "init_sentry",
    "set_shop_context",
    "capture_exception",
]
