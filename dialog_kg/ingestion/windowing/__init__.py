"""
Conversation Windowing

Modules:
    tracker: Trigger decision, window selection and cursor persistence
"""

from dialog_kg.ingestion.windowing.tracker import (
    WindowTracker,
    advance,
    select_window,
    should_analyze,
)

__all__ = ["WindowTracker", "advance", "select_window", "should_analyze"]
