"""
Proposition Revision

Modules:
    reviser: NEW / DUPLICATE / REINFORCED / MERGED classification and update policy
"""

from dialog_kg.ingestion.revision.reviser import (
    PropositionReviser,
    RevisionPolicy,
    merge_mentions,
)

__all__ = ["PropositionReviser", "RevisionPolicy", "merge_mentions"]
