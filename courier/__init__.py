"""
Courier

Captures free-form chat messages into a note store.

Each inbound message is classified into people / projects / ideas /
needs_review, resolved against a registry of note locations, written there
at most once, recorded in an audit trail, and acknowledged in-thread.

Usage:
    from courier.common import load_config
    from courier.pipeline import build_orchestrator
    from courier.common.schemas import CaptureEvent
"""

__version__ = "0.1.0"
