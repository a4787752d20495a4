"""
Proposition Extraction

Modules:
    extractor: Schema-constrained LLM extraction of propositions from a window
"""

from dialog_kg.ingestion.extraction.extractor import PropositionExtractor

__all__ = ["PropositionExtractor"]
