"""
Window Tracker

Decides when a conversation has accumulated enough new messages to analyze,
and which slice of it to hand to extraction.

The decision logic is pure: `should_analyze`, `advance` and `select_window`
take an explicit AnalysisState and return values without side effects.
WindowTracker wraps them with load/save through an AnalysisStateStore.

Trigger rule:
    current_count - last_analyzed >= trigger_interval
    trigger_interval <= 0 means manual analysis only.

Window rule:
    The most recent `window_size` unanalyzed messages, plus up to
    `overlap_size` messages from before the cursor for boundary context.
    Overlap may re-mention extracted facts; the reviser deduplicates them.

Example:
    >>> state = AnalysisState(context_id="alice", last_analyzed_message_count=10,
    ...                       trigger_interval=5)
    >>> should_analyze(state, 14)
    False
    >>> should_analyze(state, 15)
    True
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from dialog_kg.storage.base import AnalysisStateStore
from dialog_kg.types import AnalysisState, Conversation, ConversationWindow

logger = logging.getLogger(__name__)


def should_analyze(state: AnalysisState, current_message_count: int) -> bool:
    """True when enough new messages have arrived since the cursor."""
    if state.trigger_interval <= 0:
        return False
    return current_message_count - state.last_analyzed_message_count >= state.trigger_interval


def advance(state: AnalysisState, message_count: int) -> AnalysisState:
    """Return a state whose cursor is max(current cursor, message_count)."""
    if message_count <= state.last_analyzed_message_count:
        return state
    return state.model_copy(update={
        "last_analyzed_message_count": message_count,
        "updated_at": datetime.now(timezone.utc),
    })


def select_window(conversation: Conversation, state: AnalysisState) -> ConversationWindow:
    """Slice the unanalyzed tail of `conversation` plus overlap."""
    end = len(conversation.messages)
    new_start = min(end, max(state.last_analyzed_message_count, end - state.window_size))
    start = max(0, new_start - state.overlap_size)
    return ConversationWindow(
        conversation_id=conversation.id,
        start=start,
        new_start=new_start,
        end=end,
        messages=list(conversation.messages[start:end]),
    )


class WindowTracker:
    """
    Per-context cursor management over an AnalysisStateStore.

    Callers must serialize calls for the same context (AnalysisWorker does);
    the tracker itself holds no locks.

    Usage:
        tracker = WindowTracker(store, window_size=10, overlap_size=2, trigger_interval=10)
        if await tracker.should_analyze("alice", len(conversation)):
            window = await tracker.claim("alice", conversation)
    """

    def __init__(
        self,
        store: AnalysisStateStore,
        *,
        window_size: int = 10,
        overlap_size: int = 2,
        trigger_interval: int = 10,
    ) -> None:
        self.store = store
        self.window_size = window_size
        self.overlap_size = overlap_size
        self.trigger_interval = trigger_interval
        # Highest cursor seen per context; dropped on reset
        self._cursors: dict[str, int] = {}

    def _remember(self, context_id: str, cursor: int) -> None:
        self._cursors[context_id] = max(self._cursors.get(context_id, 0), cursor)

    async def get_state(self, context_id: str) -> AnalysisState:
        """Stored state with the tracker's current window settings applied."""
        state = await self.store.load(context_id)
        settings = {
            "window_size": self.window_size,
            "overlap_size": self.overlap_size,
            "trigger_interval": self.trigger_interval,
        }
        if state is None:
            state = AnalysisState(context_id=context_id, **settings)
        else:
            state = state.model_copy(update=settings)
        self._remember(context_id, state.last_analyzed_message_count)
        return state

    async def should_analyze(self, context_id: str, current_message_count: int) -> bool:
        return should_analyze(await self.get_state(context_id), current_message_count)

    def cached_should_analyze(self, context_id: str, current_message_count: int) -> bool | None:
        """
        Trigger check against the cursor this tracker last saw, without I/O.

        Returns None for a context whose state has not been loaded yet. The
        cursor only moves forward until reset, so a False stays False until
        more messages arrive; a True still has to be confirmed by claim().
        """
        if self.trigger_interval <= 0:
            return False
        cursor = self._cursors.get(context_id)
        if cursor is None:
            return None
        return current_message_count - cursor >= self.trigger_interval

    def mark_pending(self, context_id: str, message_count: int) -> None:
        """Count a queued analysis up to `message_count` as already claimed."""
        self._remember(context_id, message_count)

    async def record_analyzed(self, context_id: str, message_count: int) -> AnalysisState:
        """Advance the cursor (never backwards) and persist it."""
        state = await self.get_state(context_id)
        updated = advance(state, message_count)
        if updated is not state:
            await self.store.save(updated)
            self._remember(context_id, updated.last_analyzed_message_count)
        return updated

    async def claim(
        self,
        context_id: str,
        conversation: Conversation,
        *,
        force: bool = False,
    ) -> ConversationWindow | None:
        """
        Re-check the trigger, select the window and advance the cursor.

        The cursor moves before extraction runs, so a failed run is not
        retried for the same messages; the next trigger picks up from there.

        Args:
            context_id: Context to claim for
            conversation: Full conversation so far
            force: Manual trigger; skip the interval check

        Returns:
            The window to analyze, or None if nothing is due
        """
        state = await self.get_state(context_id)
        count = len(conversation.messages)

        if not force and not should_analyze(state, count):
            logger.debug(
                f"Skipping {context_id}: {count - state.last_analyzed_message_count} new "
                f"messages, interval {state.trigger_interval}"
            )
            return None

        window = select_window(conversation, state)
        if window.is_empty:
            logger.debug(f"Nothing new to analyze for {context_id} at {count} messages")
            return None

        await self.store.save(advance(state, count))
        self._remember(context_id, count)
        logger.info(
            f"Claimed window {window.chunk_id} for {context_id} "
            f"({window.end - window.new_start} new, {window.overlap} overlap)"
        )
        return window

    async def reset(self, context_id: str | None = None) -> None:
        """Forget cursors (used by administrative clear)."""
        await self.store.clear(context_id)
        if context_id is None:
            self._cursors.clear()
        else:
            self._cursors.pop(context_id, None)
