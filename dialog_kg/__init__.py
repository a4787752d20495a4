"""
DialogKG - Incremental Knowledge Extraction from Conversations

Turns chat transcripts into de-duplicated, entity-resolved propositions
stored with vector-similarity lookup, without blocking the chat reply.

Example:
    >>> from dialog_kg import ConversationKnowledgeBase, DomainSchema
    >>> kb = ConversationKnowledgeBase("./kb", schema=DomainSchema.of("Composer", "Work"))
    >>> kb.on_exchange("alice", conversation)   # never blocks, never raises
    >>> await kb.drain()
    >>> for p in await kb.find_similar("violin concerto"):
    ...     print(p.text)

Main Classes:
    ConversationKnowledgeBase: Entry point for chat-turn handlers
    PropositionPipeline: extract -> resolve -> revise -> persist for one window
    KGConfig: Configuration management
"""

__version__ = "0.1.0"


# Public API - lazy imports to avoid loading optional dependencies
def __getattr__(name: str):
    """Lazy import public API components."""

    if name == "ConversationKnowledgeBase":
        from dialog_kg.api.knowledge_base import ConversationKnowledgeBase
        return ConversationKnowledgeBase

    if name == "AnalysisWorker":
        from dialog_kg.api.worker import AnalysisWorker
        return AnalysisWorker

    if name == "PropositionPipeline":
        from dialog_kg.ingestion.pipeline import PropositionPipeline
        return PropositionPipeline

    if name == "KGConfig":
        from dialog_kg.config.settings import KGConfig
        return KGConfig

    # Types
    if name in (
        "Proposition",
        "EntityMention",
        "NamedEntity",
        "KnownEntity",
        "DomainSchema",
        "Conversation",
        "Message",
        "PipelineResult",
    ):
        from dialog_kg import types
        return getattr(types, name)

    raise AttributeError(f"module 'dialog_kg' has no attribute {name!r}")


__all__ = [
    # Main classes
    "ConversationKnowledgeBase",
    "AnalysisWorker",
    "PropositionPipeline",
    "KGConfig",

    # Types
    "Proposition",
    "EntityMention",
    "NamedEntity",
    "KnownEntity",
    "DomainSchema",
    "Conversation",
    "Message",
    "PipelineResult",

    # Version
    "__version__",
]
