"""
Assembly

Modules:
    assembler: Writes a run's entities, then its propositions, with rollback
"""

from dialog_kg.ingestion.assembly.assembler import Assembler

__all__ = ["Assembler"]
