"""
Provider Interfaces and Implementations

Modules:
    base: LLMProvider and EmbeddingProvider abstract interfaces
    llm.openai: LangChain ChatOpenAI-backed LLM provider
    embedding.openai: LangChain OpenAIEmbeddings-backed embedding provider

Concrete providers are imported lazily so langchain-openai stays optional.
"""

from dialog_kg.providers.base import EmbeddingProvider, LLMProvider

__all__ = ["EmbeddingProvider", "LLMProvider"]
