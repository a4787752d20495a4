"""
LanceDB Storage

Vector-indexed proposition and entity stores.
"""

from dialog_kg.storage.lancedb.connection import LanceDBConnection
from dialog_kg.storage.lancedb.stores import LanceDBEntityStore, LanceDBPropositionStore

__all__ = ["LanceDBConnection", "LanceDBEntityStore", "LanceDBPropositionStore"]
