"""Tests for the OpenAI providers with the LangChain clients patched out."""

import pytest

from dialog_kg.providers.embedding import openai as embedding_module
from dialog_kg.providers.embedding.openai import OpenAIEmbeddingProvider
from dialog_kg.providers.llm import openai as llm_module
from dialog_kg.providers.llm.openai import OpenAILLMProvider
from dialog_kg.types import VerificationDecision
from dialog_kg.utils.telemetry import CallCollector, telemetry_collector, telemetry_stage


class FakeStructuredClient:
    def __init__(self, result):
        self.result = result
        self.messages = None

    async def ainvoke(self, messages):
        self.messages = messages
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class FakeChat:
    def __init__(self, result):
        self.structured = FakeStructuredClient(result)
        self.schemas = []

    def with_structured_output(self, schema):
        self.schemas.append(schema)
        return self.structured


def _patch_chat(monkeypatch, result) -> FakeChat:
    chat = FakeChat(result)
    monkeypatch.setattr(llm_module, "_get_chat_openai", lambda **kwargs: chat)
    return chat


class TestOpenAILLMProvider:
    @pytest.mark.asyncio
    async def test_structured_call_is_recorded_under_stage(self, monkeypatch):
        chat = _patch_chat(monkeypatch, VerificationDecision(is_match=True))
        provider = OpenAILLMProvider(model="gpt-4.1-mini")
        collector = CallCollector()

        with telemetry_collector(collector), telemetry_stage("resolution.verification"):
            decision = await provider.generate_structured(
                "Is Brahms Johannes Brahms?", VerificationDecision, system="Be strict"
            )

        assert decision.is_match is True
        assert [m.content for m in chat.structured.messages] == ["Be strict", "Is Brahms Johannes Brahms?"]
        record = collector.records[0]
        assert record.stage == "resolution.verification"
        assert record.model == "gpt-4.1-mini"
        assert record.metadata["schema"] == "VerificationDecision"
        assert record.succeeded

    @pytest.mark.asyncio
    async def test_structured_client_built_once_per_schema(self, monkeypatch):
        chat = _patch_chat(monkeypatch, VerificationDecision(is_match=False))
        provider = OpenAILLMProvider()

        await provider.generate_structured("a", VerificationDecision)
        await provider.generate_structured("b", VerificationDecision)

        assert chat.schemas == [VerificationDecision]

    @pytest.mark.asyncio
    async def test_failure_recorded_and_raised(self, monkeypatch):
        _patch_chat(monkeypatch, RuntimeError("rate limited"))
        collector = CallCollector()

        with telemetry_collector(collector), pytest.raises(RuntimeError):
            await OpenAILLMProvider().generate_structured("x", VerificationDecision)

        assert collector.summary().by_stage[0].failures == 1

    @pytest.mark.asyncio
    async def test_wrong_type_raises(self, monkeypatch):
        _patch_chat(monkeypatch, {"is_match": True})
        with pytest.raises(ValueError, match="expected VerificationDecision"):
            await OpenAILLMProvider().generate_structured("x", VerificationDecision)


class FakeEmbeddings:
    def __init__(self):
        self.batches = []

    def embed_documents(self, texts):
        self.batches.append(list(texts))
        return [[float(len(t))] for t in texts]

    def embed_query(self, text):
        return [1.0]


class TestOpenAIEmbeddingProvider:
    def test_dimensions_by_model(self):
        assert OpenAIEmbeddingProvider().dimensions == 1536
        assert OpenAIEmbeddingProvider(model="text-embedding-3-large").dimensions == 3072
        assert OpenAIEmbeddingProvider(dimensions=512).dimensions == 512

    def test_fixed_size_model_rejects_dimensions(self):
        with pytest.raises(ValueError, match="does not support"):
            OpenAIEmbeddingProvider(model="text-embedding-ada-002", dimensions=512)

    def test_client_receives_settings(self, monkeypatch):
        captured = {}

        def fake_client(**kwargs):
            captured.update(kwargs)
            return FakeEmbeddings()

        monkeypatch.setattr(embedding_module, "_get_openai_embeddings", fake_client)
        OpenAIEmbeddingProvider(dimensions=256, batch_size=8, timeout=5.0)._get_client()

        assert captured == {
            "model": "text-embedding-3-small",
            "chunk_size": 8,
            "dimensions": 256,
            "timeout": 5.0,
        }

    @pytest.mark.asyncio
    async def test_embed_batches_and_records(self, monkeypatch):
        client = FakeEmbeddings()
        monkeypatch.setattr(embedding_module, "_get_openai_embeddings", lambda **kwargs: client)
        provider = OpenAIEmbeddingProvider(batch_size=2)
        collector = CallCollector()

        with telemetry_collector(collector), telemetry_stage("storage.embedding"):
            vectors = await provider.embed(["ab", "", "abcd"])

        assert vectors == [[2.0], [1.0], [4.0]]
        assert client.batches == [["ab", " "], ["abcd"]]
        assert collector.summary().calls_for("storage.embedding") == 2
        assert await provider.embed([]) == []
        assert await provider.embed_single("x") == [1.0]
