"""
Utility Functions

Modules:
    text: Name/text normalization and fuzzy scoring
    telemetry: Run-scoped LLM call telemetry
"""

from dialog_kg.utils.telemetry import (
    CallCollector,
    current_stage,
    record_call,
    telemetry_collector,
    telemetry_stage,
)
from dialog_kg.utils.text import (
    escape_sql_string,
    name_similarity,
    normalize_name,
    normalize_text,
    strip_diacritics,
    text_similarity,
)

__all__ = [
    "CallCollector",
    "current_stage",
    "record_call",
    "telemetry_collector",
    "telemetry_stage",
    "escape_sql_string",
    "name_similarity",
    "normalize_name",
    "normalize_text",
    "strip_diacritics",
    "text_similarity",
]
