"""
Pipeline Error Taxonomy

Each failure class maps to one recovery policy:
    - ExtractionFailure: abort the run, nothing persisted
    - ResolutionFailure: leave that one mention unresolved, continue
    - RevisionFailure: treat the proposition as NEW
    - StoreFailure: mark the run failed, no inline retry

None of these escape PropositionPipeline.process_window().
"""


class DialogKGError(Exception):
    """Base class for all pipeline errors."""


class ExtractionFailure(DialogKGError):
    """LLM extraction call errored, timed out, or returned unusable output."""


class ResolutionFailure(DialogKGError):
    """The resolver chain errored for a single mention."""

    def __init__(self, span: str, cause: BaseException | None = None) -> None:
        self.span = span
        self.cause = cause
        super().__init__(f"Resolution failed for '{span}': {cause}")


class RevisionFailure(DialogKGError):
    """Comparison against existing propositions could not be completed."""


class StoreFailure(DialogKGError):
    """A proposition or entity store write failed."""
