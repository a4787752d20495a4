"""
Public API Layer

Modules:
    knowledge_base: ConversationKnowledgeBase - main entry point
    worker: AnalysisWorker - background queue with per-context serialization

Design Principles:
    - on_exchange() never blocks the chat turn and never raises
    - Lazy initialization - don't connect until needed
    - Async context manager support for resource cleanup
"""

from dialog_kg.api.knowledge_base import ConversationKnowledgeBase
from dialog_kg.api.worker import AnalysisJob, AnalysisWorker

__all__ = ["ConversationKnowledgeBase", "AnalysisJob", "AnalysisWorker"]
