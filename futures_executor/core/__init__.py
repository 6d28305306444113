"""
Core module for event-driven architecture.

This module provides the foundational components for the executor:
- EventBus: Publish-subscribe event system
- EventProcessor: Base class for event processors
- EventOrchestrator: Processor lifecycle coordinator
- Models and configuration shared by every component
"""

from .event_bus import Event, EventBus, EventType
from .event_processor import EventOrchestrator, EventProcessor

__all__ = [
    "Event",
    "EventBus",
    "EventType",
    "EventProcessor",
    "EventOrchestrator",
]
