"""
Entity Types

Named entities are owned by the entity store and referenced by id from
proposition mentions (many-to-one, no ownership).

Storage Models:
    - NamedEntity: Persisted entity with optional embedding

Caller-supplied Models:
    - KnownEntity: Entity injected as a resolver override ("the current user")
    - EntityTypeDefinition / DomainSchema: Allowed entity types and predicates
    - SchemaAdherence: Strict vs relaxed schema enforcement
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field

USER_TYPE = "User"

# Spans that always refer to the speaker
SELF_REFERENCES = ("i", "me", "my", "myself", "mine")


class NamedEntity(BaseModel):
    """
    A persisted entity.

    Attributes:
        id: Unique identifier
        name: Canonical name ("Johannes Brahms")
        entity_type: Schema label ("Composer")
        labels: Additional labels beyond the primary type
        description: Short description used for embeddings and bakeoff prompts
        aliases: Alternative names seen for this entity
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    entity_type: str
    labels: list[str] = Field(default_factory=list)
    description: str = ""
    aliases: list[str] = Field(default_factory=list)
    embedding: list[float] | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def all_names(self) -> list[str]:
        return [self.name, *self.aliases]

    def has_type(self, type_label: str) -> bool:
        wanted = type_label.lower()
        return self.entity_type.lower() == wanted or any(
            label.lower() == wanted for label in self.labels
        )

    def embedding_text(self) -> str:
        """Text embedded for vector search: '{name}: {description}'"""
        if not self.description:
            return self.name
        return f"{self.name}: {self.description}"


class KnownEntity(BaseModel):
    """
    An entity the caller already knows about, with the spans that refer to it.

    Mentions whose span matches one of `spans` resolve to `entity.id` directly,
    bypassing the escalation chain.
    """

    entity: NamedEntity
    spans: list[str] = Field(default_factory=list)
    role_hint: str = ""

    @classmethod
    def current_user(cls, user: NamedEntity) -> "KnownEntity":
        """Known entity for the person talking to the assistant."""
        return cls(
            entity=user,
            spans=[*SELF_REFERENCES, user.name, *user.aliases],
            role_hint="The user in the conversation. 'I', 'me' and 'my' refer to them.",
        )

    def matches(self, span: str) -> bool:
        wanted = span.strip().lower()
        return any(s.strip().lower() == wanted for s in self.spans)


class SchemaAdherence(str, Enum):
    """How strictly extraction is held to the schema's entity types."""

    STRICT = "strict"
    RELAXED = "relaxed"


class EntityTypeDefinition(BaseModel):
    name: str
    description: str = ""


class DomainSchema(BaseModel):
    """
    Entity types (and optional preferred predicates) the pipeline may use.

    Example:
        >>> schema = DomainSchema.of("Composer", "Work")
        >>> schema.canonical_type("composer")
        'Composer'
    """

    entity_types: list[EntityTypeDefinition] = Field(default_factory=list)
    predicates: list[str] = Field(default_factory=list)

    @classmethod
    def of(cls, *names: str, predicates: list[str] | None = None) -> "DomainSchema":
        return cls(
            entity_types=[EntityTypeDefinition(name=n) for n in names],
            predicates=predicates or [],
        )

    @property
    def type_names(self) -> list[str]:
        return [t.name for t in self.entity_types]

    def canonical_type(self, label: str) -> str | None:
        """Return the schema's spelling of `label`, or None if not in schema."""
        wanted = label.strip().lower()
        for t in self.entity_types:
            if t.name.lower() == wanted:
                return t.name
        return None

    def allows(self, label: str) -> bool:
        return self.canonical_type(label) is not None

    def describe(self) -> str:
        lines = []
        for t in self.entity_types:
            lines.append(f"- **{t.name}**" + (f": {t.description}" if t.description else ""))
        if self.predicates:
            lines.append("")
            lines.append("Preferred relationships: " + ", ".join(self.predicates))
        return "\n".join(lines)
