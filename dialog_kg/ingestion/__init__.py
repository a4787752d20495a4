"""
Ingestion Pipeline

Turns conversation windows into persisted, entity-resolved propositions.

Phases:
    Windowing (no LLM):
        - Decide when a context is due and which messages to read

    Extraction (one LLM call per window):
        - Schema-constrained propositions with typed mentions

    Resolution (cheap first, LLM last):
        - Known entities, exact, heuristic, embedding, verification, bakeoff

    Revision and Assembly:
        - NEW / DUPLICATE / REINFORCED / MERGED against existing propositions
        - Entities first, then propositions, with rollback

Modules:
    pipeline: PropositionPipeline orchestrator
    windowing/: Analysis cursor and window selection
    extraction/: LLM proposition extraction
    resolution/: Escalating entity resolution
    revision/: Proposition revision and update policy
    assembly/: Store writes
"""

from dialog_kg.ingestion.assembly import Assembler
from dialog_kg.ingestion.pipeline import PropositionPipeline, WindowContext

__all__ = ["Assembler", "PropositionPipeline", "WindowContext"]
