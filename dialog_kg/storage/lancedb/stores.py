"""
LanceDB Stores

Proposition and entity stores backed by LanceDB tables with a cosine vector
index each, dimensioned to the embedding model in use.

Tables:
    - propositions: id, context_id, text, mentions (JSON), entity_ids (JSON),
      confidence, decay, reasoning, grounding (JSON), created, revised,
      status, has_vector, vector
    - entities: id, name, entity_type, labels (JSON), description,
      aliases (JSON), created_at, has_vector, vector

Mentions are stored inline with their proposition, so their lifetime is the
proposition's lifetime. Entities are referenced from mentions by id.

Upserts use merge_insert on "id". Rows whose text could not be embedded get a
zero vector and has_vector = false, and are excluded from vector search.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import pyarrow as pa

from dialog_kg.providers.base import EmbeddingProvider
from dialog_kg.storage.base import EntityStore, PropositionStore, check_persistable
from dialog_kg.storage.lancedb.connection import LanceDBConnection
from dialog_kg.types import (
    EntityMention,
    NamedEntity,
    Proposition,
    PropositionStatus,
)
from dialog_kg.utils.text import escape_sql_string

logger = logging.getLogger(__name__)

PROPOSITIONS_TABLE = "propositions"
ENTITIES_TABLE = "entities"


def proposition_schema(dimensions: int) -> pa.Schema:
    return pa.schema([
        pa.field("id", pa.string(), nullable=False),
        pa.field("context_id", pa.string()),
        pa.field("text", pa.string()),
        pa.field("mentions", pa.string()),
        pa.field("entity_ids", pa.string()),
        pa.field("confidence", pa.float64()),
        pa.field("decay", pa.float64()),
        pa.field("reasoning", pa.string()),
        pa.field("grounding", pa.string()),
        pa.field("created", pa.string()),
        pa.field("revised", pa.string()),
        pa.field("status", pa.string()),
        pa.field("has_vector", pa.bool_()),
        pa.field("vector", pa.list_(pa.float32(), dimensions)),
    ])


def entity_schema(dimensions: int) -> pa.Schema:
    return pa.schema([
        pa.field("id", pa.string(), nullable=False),
        pa.field("name", pa.string()),
        pa.field("entity_type", pa.string()),
        pa.field("labels", pa.string()),
        pa.field("description", pa.string()),
        pa.field("aliases", pa.string()),
        pa.field("created_at", pa.string()),
        pa.field("has_vector", pa.bool_()),
        pa.field("vector", pa.list_(pa.float32(), dimensions)),
    ])


def _id_list(ids: list[str]) -> str:
    return ", ".join(f"'{escape_sql_string(i)}'" for i in ids)


def _similarity(row: dict[str, Any]) -> float:
    # Cosine distance = 1 - similarity
    return 1 - float(row["_distance"])


class _LanceStore:
    """Vector bookkeeping shared by both stores."""

    def __init__(
        self,
        connection: LanceDBConnection,
        embedding_provider: EmbeddingProvider,
    ) -> None:
        self.connection = connection
        self.embeddings = embedding_provider
        self.dimensions = embedding_provider.dimensions

    async def initialize(self) -> None:
        await self.connection.initialize()

    async def close(self) -> None:
        await self.connection.close()

    def _vector_or_zero(self, vector: list[float] | None) -> tuple[bool, list[float]]:
        if vector is None or len(vector) != self.dimensions:
            if vector is not None:
                logger.warning(
                    f"Embedding has {len(vector)} dimensions, expected {self.dimensions}; "
                    "storing without vector"
                )
            return False, [0.0] * self.dimensions
        return True, vector

    def _select(self, table_name: str, predicate: str) -> list[dict[str, Any]]:
        """Rows matching a SQL predicate, filtered inside LanceDB. Blocking."""
        table = self.connection.open_table(table_name)
        if table is None:
            return []
        matched = table.count_rows(predicate)
        if not matched:
            return []
        return table.search().where(predicate).limit(matched).to_arrow().to_pylist()


class LanceDBPropositionStore(_LanceStore, PropositionStore):
    """
    Proposition store on LanceDB.

    Args:
        path: LanceDB directory, or an existing LanceDBConnection
        embedding_provider: Embeds proposition text on save and queries on search
    """

    def __init__(
        self,
        path: str | Path | LanceDBConnection,
        embedding_provider: EmbeddingProvider,
    ) -> None:
        connection = path if isinstance(path, LanceDBConnection) else LanceDBConnection(path)
        super().__init__(connection, embedding_provider)
        self._schema = proposition_schema(self.dimensions)

    # -------------------------------------------------------------------------
    # Row conversion
    # -------------------------------------------------------------------------

    def _to_row(self, p: Proposition) -> dict[str, Any]:
        has_vector, vector = self._vector_or_zero(p.embedding)
        return {
            "id": p.id,
            "context_id": p.context_id,
            "text": p.text,
            "mentions": json.dumps([m.model_dump(mode="json") for m in p.mentions]),
            "entity_ids": json.dumps(sorted(p.resolved_entity_ids())),
            "confidence": p.confidence,
            "decay": p.decay,
            "reasoning": p.reasoning or "",
            "grounding": json.dumps(p.grounding),
            "created": p.created.isoformat(),
            "revised": p.revised.isoformat(),
            "status": p.status.value,
            "has_vector": has_vector,
            "vector": vector,
        }

    @staticmethod
    def _from_row(row: dict[str, Any]) -> Proposition:
        return Proposition(
            id=row["id"],
            context_id=row["context_id"],
            text=row["text"],
            mentions=[EntityMention.model_validate(m) for m in json.loads(row["mentions"])],
            confidence=row["confidence"],
            decay=row["decay"],
            reasoning=row["reasoning"] or None,
            grounding=json.loads(row["grounding"]),
            created=datetime.fromisoformat(row["created"]),
            revised=datetime.fromisoformat(row["revised"]),
            status=PropositionStatus(row["status"]),
            embedding=list(row["vector"]) if row["has_vector"] else None,
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def save(self, proposition: Proposition) -> Proposition:
        return (await self.save_all([proposition]))[0]

    async def save_all(self, propositions: list[Proposition]) -> list[Proposition]:
        if not propositions:
            return []
        for p in propositions:
            check_persistable(p)

        stored = [p.model_copy(deep=True) for p in propositions]
        missing = [p for p in stored if p.embedding is None]
        if missing:
            try:
                vectors = await self.embeddings.embed([p.text for p in missing])
                for p, vector in zip(missing, vectors):
                    p.embedding = vector
            except Exception as e:
                logger.warning(f"Embedding failed for {len(missing)} propositions: {e}")

        rows = [self._to_row(p) for p in stored]

        def _upsert() -> None:
            table = self.connection.open_or_create(PROPOSITIONS_TABLE, self._schema)
            data = pa.Table.from_pylist(rows, schema=self._schema)
            (
                table.merge_insert("id")
                .when_matched_update_all()
                .when_not_matched_insert_all()
                .execute(data)
            )

        await asyncio.to_thread(_upsert)
        return stored

    async def delete(self, proposition_ids: list[str]) -> int:
        if not proposition_ids:
            return 0
        return await self._delete_where(f"id IN ({_id_list(proposition_ids)})")

    async def clear(self, context_id: str | None = None) -> int:
        if context_id is not None:
            return await self._delete_where(f"context_id = '{escape_sql_string(context_id)}'")

        def _drop() -> int:
            table = self.connection.open_table(PROPOSITIONS_TABLE)
            if table is None:
                return 0
            removed = table.count_rows()
            self.connection.drop_table(PROPOSITIONS_TABLE)
            return removed

        return await asyncio.to_thread(_drop)

    async def _delete_where(self, predicate: str) -> int:
        def _delete() -> int:
            table = self.connection.open_table(PROPOSITIONS_TABLE)
            if table is None:
                return 0
            removed = table.count_rows(predicate)
            if removed:
                table.delete(predicate)
            return removed

        return await asyncio.to_thread(_delete)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, proposition_id: str) -> Proposition | None:
        rows = await self._where(f"id = '{escape_sql_string(proposition_id)}'")
        return self._from_row(rows[0]) if rows else None

    async def find_all(self, context_id: str | None = None) -> list[Proposition]:
        if context_id is not None:
            rows = await self._where(f"context_id = '{escape_sql_string(context_id)}'")
            return [self._from_row(row) for row in rows]

        def _scan() -> list[Proposition]:
            table = self.connection.open_table(PROPOSITIONS_TABLE)
            if table is None:
                return []
            return [self._from_row(row) for row in table.to_arrow().to_pylist()]

        return await asyncio.to_thread(_scan)

    async def find_by_status(
        self,
        status: PropositionStatus,
        context_id: str | None = None,
    ) -> list[Proposition]:
        clauses = [f"status = '{status.value}'"]
        if context_id is not None:
            clauses.append(f"context_id = '{escape_sql_string(context_id)}'")
        rows = await self._where(" AND ".join(clauses))
        return [self._from_row(row) for row in rows]

    async def find_by_entity(
        self,
        entity_id: str,
        context_id: str | None = None,
    ) -> list[Proposition]:
        # entity_ids holds a JSON list; LIKE narrows, the exact check below decides
        clauses = [f"entity_ids LIKE '%{escape_sql_string(json.dumps(entity_id))}%'"]
        if context_id is not None:
            clauses.append(f"context_id = '{escape_sql_string(context_id)}'")
        rows = await self._where(" AND ".join(clauses))
        return [
            self._from_row(row) for row in rows
            if entity_id in json.loads(row["entity_ids"])
        ]

    async def _where(self, predicate: str) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._select, PROPOSITIONS_TABLE, predicate)

    async def count(self, context_id: str | None = None) -> int:
        def _count() -> int:
            table = self.connection.open_table(PROPOSITIONS_TABLE)
            if table is None:
                return 0
            if context_id is None:
                return table.count_rows()
            return table.count_rows(f"context_id = '{escape_sql_string(context_id)}'")

        return await asyncio.to_thread(_count)

    async def find_similar(
        self,
        query: str,
        top_k: int = 10,
        threshold: float = 0.0,
        *,
        context_id: str | None = None,
        status: PropositionStatus | None = None,
    ) -> list[tuple[Proposition, float]]:
        try:
            query_vector = await self.embeddings.embed_single(query)
        except Exception as e:
            logger.warning(f"Could not embed similarity query '{query[:60]}': {e}")
            return []

        clauses = ["has_vector = true"]
        if context_id is not None:
            clauses.append(f"context_id = '{escape_sql_string(context_id)}'")
        if status is not None:
            clauses.append(f"status = '{status.value}'")

        def _search() -> list[tuple[Proposition, float]]:
            table = self.connection.open_table(PROPOSITIONS_TABLE)
            if table is None:
                return []
            rows = (
                table.search(query_vector)
                .distance_type("cosine")
                .where(" AND ".join(clauses), prefilter=True)
                .limit(top_k)
                .to_arrow()
                .to_pylist()
            )
            output = []
            for row in rows:
                similarity = _similarity(row)
                if similarity >= threshold:
                    output.append((self._from_row(row), similarity))
            return output

        return await asyncio.to_thread(_search)


class LanceDBEntityStore(_LanceStore, EntityStore):
    """
    Entity store on LanceDB.

    Name lookups scan the table; the entity set of a conversational knowledge
    base stays small enough for that.
    """

    def __init__(
        self,
        path: str | Path | LanceDBConnection,
        embedding_provider: EmbeddingProvider,
    ) -> None:
        connection = path if isinstance(path, LanceDBConnection) else LanceDBConnection(path)
        super().__init__(connection, embedding_provider)
        self._schema = entity_schema(self.dimensions)

    def _to_row(self, e: NamedEntity) -> dict[str, Any]:
        has_vector, vector = self._vector_or_zero(e.embedding)
        return {
            "id": e.id,
            "name": e.name,
            "entity_type": e.entity_type,
            "labels": json.dumps(e.labels),
            "description": e.description,
            "aliases": json.dumps(e.aliases),
            "created_at": e.created_at.isoformat(),
            "has_vector": has_vector,
            "vector": vector,
        }

    @staticmethod
    def _from_row(row: dict[str, Any]) -> NamedEntity:
        return NamedEntity(
            id=row["id"],
            name=row["name"],
            entity_type=row["entity_type"],
            labels=json.loads(row["labels"]),
            description=row["description"],
            aliases=json.loads(row["aliases"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            embedding=list(row["vector"]) if row["has_vector"] else None,
        )

    async def save_all(self, entities: list[NamedEntity]) -> list[NamedEntity]:
        if not entities:
            return []
        stored = [e.model_copy(deep=True) for e in entities]
        missing = [e for e in stored if e.embedding is None]
        if missing:
            try:
                vectors = await self.embeddings.embed([e.embedding_text() for e in missing])
                for e, vector in zip(missing, vectors):
                    e.embedding = vector
            except Exception as exc:
                logger.warning(f"Embedding failed for {len(missing)} entities: {exc}")

        rows = [self._to_row(e) for e in stored]

        def _upsert() -> None:
            table = self.connection.open_or_create(ENTITIES_TABLE, self._schema)
            data = pa.Table.from_pylist(rows, schema=self._schema)
            (
                table.merge_insert("id")
                .when_matched_update_all()
                .when_not_matched_insert_all()
                .execute(data)
            )

        await asyncio.to_thread(_upsert)
        return stored

    async def get(self, entity_id: str) -> NamedEntity | None:
        found = await self.get_many([entity_id])
        return found[0] if found else None

    async def get_many(self, entity_ids: list[str]) -> list[NamedEntity]:
        if not entity_ids:
            return []

        rows = await asyncio.to_thread(
            self._select, ENTITIES_TABLE, f"id IN ({_id_list(entity_ids)})"
        )
        return [self._from_row(row) for row in rows]

    async def find_all(self, entity_type: str | None = None) -> list[NamedEntity]:
        def _scan() -> list[NamedEntity]:
            table = self.connection.open_table(ENTITIES_TABLE)
            if table is None:
                return []
            return [self._from_row(row) for row in table.to_arrow().to_pylist()]

        entities = await asyncio.to_thread(_scan)
        if entity_type is None:
            return entities
        return [e for e in entities if e.has_type(entity_type)]

    async def count(self) -> int:
        def _count() -> int:
            table = self.connection.open_table(ENTITIES_TABLE)
            return table.count_rows() if table is not None else 0

        return await asyncio.to_thread(_count)

    async def find_similar(
        self,
        text: str,
        top_k: int = 10,
        threshold: float = 0.0,
        *,
        entity_type: str | None = None,
    ) -> list[tuple[NamedEntity, float]]:
        query_vector = await self.embeddings.embed_single(text)
        # Over-fetch when filtering by type, since labels are checked after search
        limit = top_k * 4 if entity_type else top_k

        def _search() -> list[tuple[NamedEntity, float]]:
            table = self.connection.open_table(ENTITIES_TABLE)
            if table is None:
                return []
            rows = (
                table.search(query_vector)
                .distance_type("cosine")
                .where("has_vector = true", prefilter=True)
                .limit(limit)
                .to_arrow()
                .to_pylist()
            )
            output = []
            for row in rows:
                similarity = _similarity(row)
                if similarity < threshold:
                    continue
                entity = self._from_row(row)
                if entity_type is None or entity.has_type(entity_type):
                    output.append((entity, similarity))
            return output[:top_k]

        return await asyncio.to_thread(_search)

    async def delete(self, entity_ids: list[str]) -> int:
        if not entity_ids:
            return 0
        predicate = f"id IN ({_id_list(entity_ids)})"

        def _delete() -> int:
            table = self.connection.open_table(ENTITIES_TABLE)
            if table is None:
                return 0
            removed = table.count_rows(predicate)
            if removed:
                table.delete(predicate)
            return removed

        return await asyncio.to_thread(_delete)

    async def clear(self) -> int:
        def _drop() -> int:
            table = self.connection.open_table(ENTITIES_TABLE)
            if table is None:
                return 0
            removed = table.count_rows()
            self.connection.drop_table(ENTITIES_TABLE)
            return removed

        return await asyncio.to_thread(_drop)
