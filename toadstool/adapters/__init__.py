"""Adapters package - event types shared by the engine and its consumers.

Session notifications and side-channel events emitted while driving
cursor-agent, plus their JSON-ready dict form.
"""
from __future__ import annotations

__all__ = [
    "BridgeEvent",
    "SessionNotification",
    "event_to_dict",
]

from toadstool.adapters.events import (
    BridgeEvent,
    SessionNotification,
    event_to_dict,
)
