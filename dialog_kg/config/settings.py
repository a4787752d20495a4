"""
KGConfig - Configuration Management

Sensible defaults with full override capability.

Example:
    >>> # Use defaults (reads from environment)
    >>> kb = ConversationKnowledgeBase("./kb")

    >>> # Explicit configuration
    >>> config = KGConfig(window_size=20, trigger_interval=6)
    >>> kb = ConversationKnowledgeBase("./kb", config=config)

    >>> # From config file
    >>> config = KGConfig.from_file("./dialog_kg.toml")

Environment Variables:
    DIALOG_KG_LLM_PROVIDER - LLM provider name
    DIALOG_KG_LLM_MODEL - Model for extraction and revision
    DIALOG_KG_LLM_MODEL_FAST - Model for verification and bakeoff
    DIALOG_KG_EMBEDDING_PROVIDER - Embedding provider name
    DIALOG_KG_EMBEDDING_MODEL - Embedding model name
    DIALOG_KG_EMBEDDING_DIMENSIONS - Shortened embedding size (text-embedding-3 only)
    DIALOG_KG_WINDOW_SIZE - Messages per extraction window
    DIALOG_KG_OVERLAP_SIZE - Messages carried over from the previous window
    DIALOG_KG_TRIGGER_INTERVAL - New messages before auto-analysis (0 = manual only)
    DIALOG_KG_ANALYSIS_CONCURRENCY - Background worker consumers
    DIALOG_KG_HEURISTIC_ONLY - Disable LLM resolution stages ("1"/"true")
    DIALOG_KG_LLM_TIMEOUT_SECONDS - Bound on each LLM call
    OPENAI_API_KEY - OpenAI API key (standard name)
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, cast

logger = logging.getLogger(__name__)

try:
    import tomllib
except ImportError:  # Python 3.10
    import tomli as tomllib


def _load_toml(path: Path) -> dict[str, Any]:
    with open(path, "rb") as f:
        return cast(dict[str, Any], tomllib.load(f))


DEFAULT_WINDOW_SIZE = 10
DEFAULT_OVERLAP_SIZE = 2
DEFAULT_TRIGGER_INTERVAL = 10

_TRUE_VALUES = {"1", "true", "yes", "on"}


class KGConfig:
    """Configuration for DialogKG."""

    # === LLM Configuration ===

    llm_provider: str = "openai"
    """LLM provider: "openai" """

    llm_model: str = "gpt-4.1"
    """Model for extraction and revision"""

    llm_model_fast: str = "gpt-4.1-mini"
    """Model for quick operations (verification, bakeoff)"""

    # === Embedding Configuration ===

    embedding_provider: str = "openai"
    """Embedding provider: "openai" """

    embedding_model: str = "text-embedding-3-small"
    """Embedding model name"""

    embedding_dimensions: int | None = None
    """Shortened vector size for text-embedding-3 models; None keeps the model's native size"""

    embedding_batch_size: int = 256
    """Texts per embedding request"""

    # === API Keys ===

    openai_api_key: str | None = None

    # === Windowing ===

    window_size: int = DEFAULT_WINDOW_SIZE
    """Most recent messages included in each extraction window"""

    overlap_size: int = DEFAULT_OVERLAP_SIZE
    """Messages from before the cursor included for boundary context"""

    trigger_interval: int = DEFAULT_TRIGGER_INTERVAL
    """New messages required before auto-analysis; 0 disables auto-analysis"""

    # === Extraction ===

    schema_adherence: str = "strict"
    """"strict" drops propositions with off-schema types, "relaxed" keeps them"""

    # === Entity Resolution ===

    heuristic_threshold: float = 90.0
    """Minimum rapidfuzz score (0-100) for a fuzzy name match"""

    embedding_auto_accept_threshold: float = 0.95
    """Cosine similarity above which the nearest entity is accepted without LLM"""

    embedding_candidate_threshold: float = 0.70
    """Cosine similarity above which an entity is a candidate for LLM stages"""

    embedding_margin: float = 0.05
    """Required lead of the best embedding match over the runner-up for auto-accept"""

    resolver_top_k: int = 10
    """Candidates fetched per vector search"""

    heuristic_only: bool = False
    """Skip LLM verification and bakeoff entirely"""

    bakeoff_prompt_mode: str = "compact"
    """"full" includes entity descriptions in bakeoff prompts, "compact" names only"""

    resolution_concurrency: int = 8
    """Max concurrent mention resolutions per run"""

    # === Revision ===

    revision_candidate_limit: int = 8
    """Existing propositions compared against each new one"""

    revision_similarity_threshold: float = 0.75
    """Minimum text similarity for an existing proposition to be a revision candidate"""

    reinforcement_boost: float = 0.1
    """Fraction of remaining headroom (1 - confidence) added on reinforcement"""

    # === Timeouts ===

    llm_timeout_seconds: float = 60.0
    """Bound on each LLM call"""

    store_timeout_seconds: float = 30.0
    """Bound on each store read or write"""

    # === Background Worker ===

    analysis_concurrency: int = 2
    """Consumer tasks in the background worker (parallel contexts)"""

    analysis_queue_size: int = 100
    """Pending jobs before new ones are dropped"""

    def __init__(self, **kwargs: Any) -> None:
        """
        Initialize configuration.

        Environment values replace the class defaults, then `kwargs`
        replace both.

        Raises:
            ValueError: On an unknown option or an invalid mode
        """
        self._load_from_env()

        for key, value in kwargs.items():
            if not hasattr(self, key):
                raise ValueError(f"Unknown configuration option: {key}")
            setattr(self, key, value)

        self._normalize()

    def _load_from_env(self) -> None:
        """Apply OPENAI_API_KEY and the DIALOG_KG_* variables that are set."""
        self.openai_api_key = os.getenv("OPENAI_API_KEY")
        for variable, (attribute, parse) in _ENV_VARS.items():
            raw = os.getenv(variable)
            if raw:
                setattr(self, attribute, parse(raw))

    def _normalize(self) -> None:
        """Replace out-of-range window settings with defaults; reject unknown modes."""
        if self.window_size <= 0:
            logger.warning(
                f"window_size={self.window_size} is not positive, using {DEFAULT_WINDOW_SIZE}"
            )
            self.window_size = DEFAULT_WINDOW_SIZE
        if self.overlap_size < 0:
            logger.warning(
                f"overlap_size={self.overlap_size} is negative, using {DEFAULT_OVERLAP_SIZE}"
            )
            self.overlap_size = DEFAULT_OVERLAP_SIZE
        if self.trigger_interval < 0:
            logger.warning(
                f"trigger_interval={self.trigger_interval} is negative, "
                f"using {DEFAULT_TRIGGER_INTERVAL}"
            )
            self.trigger_interval = DEFAULT_TRIGGER_INTERVAL
        if self.bakeoff_prompt_mode not in ("full", "compact"):
            raise ValueError(
                f"bakeoff_prompt_mode must be 'full' or 'compact', got {self.bakeoff_prompt_mode!r}"
            )
        if self.schema_adherence not in ("strict", "relaxed"):
            raise ValueError(
                f"schema_adherence must be 'strict' or 'relaxed', got {self.schema_adherence!r}"
            )

    @classmethod
    def from_file(cls, path: str | Path) -> "KGConfig":
        """
        Load configuration from a TOML file laid out like `to_file` output.

        Example TOML:
            [llm]
            model = "gpt-4.1"

            [window]
            size = 12
            trigger_interval = 6

            [resolution]
            bakeoff_prompt_mode = "full"

            [api_keys]
            openai = "sk-..."

        Top-level keys are taken as attribute names. File values take
        precedence over the environment.

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: On a key that maps to no option
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        data = _load_toml(path)
        options: dict[str, Any] = {}

        for name, value in data.items():
            if not isinstance(value, dict):
                options[name] = value
                continue
            if name == "api_keys":
                for provider, key in value.items():
                    options[f"{provider}_api_key"] = key
                continue
            fields = _SECTIONS.get(name)
            if fields is None:
                raise ValueError(f"Unknown configuration section: [{name}]")
            for key, item in value.items():
                if key not in fields:
                    raise ValueError(f"Unknown configuration option: {name}.{key}")
                options[fields[key]] = item

        return cls(**options)

    @classmethod
    def from_env(cls) -> "KGConfig":
        """Load configuration from environment variables only."""
        return cls()

    def to_file(self, path: str | Path) -> None:
        """
        Write every option except API keys as TOML; unset options are omitted.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        lines = ["# DialogKG configuration", ""]
        for section, fields in _SECTIONS.items():
            lines.append(f"[{section}]")
            for key, attribute in fields.items():
                value = getattr(self, attribute)
                if value is not None:
                    lines.append(f"{key} = {_toml_value(value)}")
            lines.append("")
        lines.append("# Set OPENAI_API_KEY in the environment or an [api_keys] section")
        lines.append("")

        path.write_text("\n".join(lines))

    def with_overrides(self, **kwargs: Any) -> "KGConfig":
        """Return a copy with `kwargs` applied; the environment is not re-read."""
        new_config = KGConfig.__new__(KGConfig)
        new_config.__dict__.update(self.__dict__)
        for key, value in kwargs.items():
            if not hasattr(new_config, key):
                raise ValueError(f"Unknown configuration option: {key}")
            setattr(new_config, key, value)
        new_config._normalize()
        return new_config


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in _TRUE_VALUES


def _toml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return json.dumps(value)
    return str(value)


# TOML section -> {key in section: KGConfig attribute}
_SECTIONS: dict[str, dict[str, str]] = {
    "llm": {
        "provider": "llm_provider",
        "model": "llm_model",
        "model_fast": "llm_model_fast",
    },
    "embedding": {
        "provider": "embedding_provider",
        "model": "embedding_model",
        "dimensions": "embedding_dimensions",
        "batch_size": "embedding_batch_size",
    },
    "window": {
        "size": "window_size",
        "overlap_size": "overlap_size",
        "trigger_interval": "trigger_interval",
    },
    "extraction": {"schema_adherence": "schema_adherence"},
    "resolution": {
        name: name
        for name in (
            "heuristic_threshold",
            "embedding_auto_accept_threshold",
            "embedding_candidate_threshold",
            "embedding_margin",
            "resolver_top_k",
            "heuristic_only",
            "bakeoff_prompt_mode",
            "resolution_concurrency",
        )
    },
    "revision": {
        name: name
        for name in (
            "revision_candidate_limit",
            "revision_similarity_threshold",
            "reinforcement_boost",
        )
    },
    "timeouts": {
        "llm_timeout_seconds": "llm_timeout_seconds",
        "store_timeout_seconds": "store_timeout_seconds",
    },
    "worker": {
        "concurrency": "analysis_concurrency",
        "queue_size": "analysis_queue_size",
    },
}

_ENV_VARS: dict[str, tuple[str, Callable[[str], Any]]] = {
    "DIALOG_KG_LLM_PROVIDER": ("llm_provider", str),
    "DIALOG_KG_LLM_MODEL": ("llm_model", str),
    "DIALOG_KG_LLM_MODEL_FAST": ("llm_model_fast", str),
    "DIALOG_KG_EMBEDDING_PROVIDER": ("embedding_provider", str),
    "DIALOG_KG_EMBEDDING_MODEL": ("embedding_model", str),
    "DIALOG_KG_EMBEDDING_DIMENSIONS": ("embedding_dimensions", int),
    "DIALOG_KG_WINDOW_SIZE": ("window_size", int),
    "DIALOG_KG_OVERLAP_SIZE": ("overlap_size", int),
    "DIALOG_KG_TRIGGER_INTERVAL": ("trigger_interval", int),
    "DIALOG_KG_HEURISTIC_ONLY": ("heuristic_only", _parse_bool),
    "DIALOG_KG_LLM_TIMEOUT_SECONDS": ("llm_timeout_seconds", float),
    "DIALOG_KG_ANALYSIS_CONCURRENCY": ("analysis_concurrency", int),
}
