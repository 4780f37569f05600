"""Conversation memory store -- per-session message log with compaction.

Two layers:
  Cache: in-process dict of session_id -> ordered messages. All reads used
  for prompt assembly hit this only.
  Replication: every append is copied to the durable backend in a
  background task. Failures are logged and reported to an optional
  observer; they never fail or block the append.

Compaction runs in the background after an append crosses the thresholds
in Settings. The oldest messages (all but memory_keep_recent) are replaced
by one "[Memory Summary]" system message. At most one compaction runs per
session at a time.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable
from typing import Any

from lens.agent.models import SUMMARY_PREFIX, CompactedMemory, Message, Role
from lens.agent.protocols import Backend, Summarizer
from lens.config import Settings

logger = logging.getLogger(__name__)

ReplicationObserver = Callable[[str, Message, BaseException], None]

# ------------------------------------------------------------------
# Summarization prompts
# ------------------------------------------------------------------

_FOCUS = """\
- Key topics discussed
- Important information exchanged
- User's requests and agent's responses
- Any actions taken"""

SUMMARY_PROMPT = """\
Summarize the following conversation concisely. Focus on:
{focus}

Keep it under {words} words."""

MERGE_SUMMARY_PROMPT = """\
Summarize the following conversation concisely.

IMPORTANT: There is a previous {prefix} in the messages below. You MUST:
1. Include all key information from the previous summary
2. Add new information from the subsequent messages
3. Combine them into ONE comprehensive summary

Focus on:
- Previous context and history (from the old summary)
{focus}

Keep the combined summary under {words} words."""


# ------------------------------------------------------------------
# Token Estimator
# ------------------------------------------------------------------


class TokenEstimator:
    """Rough token count used only to decide when to compact.

    Text costs ceil(len / chars_per_token); each image part costs a
    fixed amount.
    """

    def __init__(self, chars_per_token: float = 2.5, image_cost: int = 85) -> None:
        self._chars_per_token = chars_per_token
        self._image_cost = image_cost

    def estimate_text(self, text: str) -> int:
        return math.ceil(len(text) / self._chars_per_token)

    def estimate_message(self, message: Message) -> int:
        if isinstance(message.content, str):
            return self.estimate_text(message.content)
        total = 0
        for part in message.content:
            if part.type == "text" and part.text:
                total += self.estimate_text(part.text)
            elif part.type == "image_url":
                total += self._image_cost
        return total

    def estimate_messages(self, messages: list[Message]) -> int:
        return sum(self.estimate_message(m) for m in messages)


# ------------------------------------------------------------------
# Memory Store
# ------------------------------------------------------------------


class MemoryStore:
    """Keyed message store owned by one agent instance."""

    def __init__(
        self,
        settings: Settings,
        summarizer: Summarizer,
        backend: Backend | None = None,
        on_replication_error: ReplicationObserver | None = None,
    ) -> None:
        self._settings = settings
        self._summarizer = summarizer
        self._backend = backend
        self._on_replication_error = on_replication_error
        self.estimator = TokenEstimator(settings.chars_per_token, settings.image_token_cost)

        self._cache: dict[str, list[Message]] = {}
        self._compacted: dict[str, list[CompactedMemory]] = {}
        self._compacted_upto: dict[str, int] = {}  # originals compacted so far
        self._compacting: dict[str, asyncio.Task] = {}
        self._pending: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_cached(self, session_id: str) -> list[Message]:
        """Cached messages only. Never touches the backend."""
        return list(self._cache.get(session_id, []))

    async def read_or_fetch(self, session_id: str) -> list[Message]:
        """Cached messages, fetching from the backend on a cache miss."""
        if session_id in self._cache:
            return list(self._cache[session_id])
        if self._backend is None:
            return []
        try:
            messages = await self._backend.get_messages(session_id)
        except Exception:
            logger.exception("Failed to fetch messages for session %s", session_id)
            return []
        self._cache[session_id] = list(messages)
        return list(messages)

    def get_compacted(self, session_id: str) -> list[CompactedMemory]:
        return list(self._compacted.get(session_id, []))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(self, session_id: str, role: Role, content: Any) -> Message:
        """Append to the cache, then replicate and maybe compact in the background."""
        message = Message(role=role, content=content)
        self._cache.setdefault(session_id, []).append(message)

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "No running event loop; skipping replication and compaction for session %s",
                session_id,
            )
            return message

        if self._backend is not None:
            self._spawn(self._replicate(session_id, message), f"replicate-{session_id}")

        if session_id not in self._compacting and self.should_compact(session_id):
            self._start_compaction(session_id)

        return message

    def replace(self, session_id: str, messages: list[Message]) -> None:
        """Replace the cached log (e.g. when loading a saved session)."""
        self._cache[session_id] = list(messages)

    def clear(self, session_id: str) -> None:
        """Forget the cached log and compaction records for a session."""
        self._cache.pop(session_id, None)
        self._compacted.pop(session_id, None)
        self._compacted_upto.pop(session_id, None)

    async def wait_for_pending(self) -> None:
        """Wait for in-flight replication and compaction tasks."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def should_compact(self, session_id: str) -> bool:
        messages = self._cache.get(session_id, [])
        count = len(messages)
        if count > self._settings.memory_max_messages:
            return True
        if count > self._settings.memory_compact_threshold:
            return (
                self.estimator.estimate_messages(messages)
                > self._settings.memory_max_tokens_estimate
            )
        return False

    async def compact(self, session_id: str) -> CompactedMemory | None:
        """Summarize all but the most recent messages of a session.

        Joins the in-flight compaction if one is already running. Returns
        the new record, or None when nothing was compacted.
        """
        running = self._compacting.get(session_id)
        if running is not None:
            await asyncio.wait({running})
            return None
        task = self._start_compaction(session_id)
        if task is None:
            return None
        return await task

    def _start_compaction(self, session_id: str) -> asyncio.Task | None:
        keep = self._settings.memory_keep_recent
        snapshot = self._cache.get(session_id, [])
        older = snapshot[:-keep] if len(snapshot) > keep else []
        if not older:
            return None
        task = self._spawn(self._compact(session_id, older), f"compact-{session_id}")
        self._compacting[session_id] = task
        task.add_done_callback(lambda _t: self._compacting.pop(session_id, None))
        return task

    async def _compact(self, session_id: str, older: list[Message]) -> CompactedMemory | None:
        """Replace `older` (a prefix of the cached log) with one summary message.

        On failure the cached log is left as it was for a retry on the
        next append.
        """
        originals = sum(1 for m in older if not m.is_summary)
        start_time = time.monotonic()
        logger.info("Compacting %d messages for session %s", len(older), session_id)

        try:
            summary = await self._summarize(older)
        except Exception:
            logger.exception("Memory compaction failed for session %s", session_id)
            return None

        current = self._cache.get(session_id)
        if (
            current is None
            or len(current) < len(older)
            or any(a is not b for a, b in zip(current, older))
        ):
            logger.warning(
                "Session %s changed during compaction, discarding summary", session_id
            )
            return None

        summary_message = Message(role="system", content=f"{SUMMARY_PREFIX}\n{summary}")
        # Messages appended while summarizing are already in current[len(older):]
        self._cache[session_id] = [summary_message, *current[len(older):]]

        from_index = self._compacted_upto.get(session_id, 0)
        record = CompactedMemory(
            summary=summary,
            message_count=originals,
            from_index=from_index,
            to_index=from_index + originals,
        )
        self._compacted_upto[session_id] = record.to_index
        self._compacted.setdefault(session_id, []).append(record)

        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(
            "Compacted session %s: %d messages -> summary + %d (%d chars, %d ms, compaction #%d)",
            session_id,
            len(older),
            len(self._cache[session_id]) - 1,
            len(summary),
            duration_ms,
            len(self._compacted[session_id]),
        )
        return record

    async def _summarize(self, messages: list[Message]) -> str:
        has_previous = any(m.is_summary for m in messages)
        if has_previous:
            system = MERGE_SUMMARY_PROMPT.format(
                prefix=SUMMARY_PREFIX, focus=_FOCUS, words=self._settings.summary_merge_words
            )
        else:
            system = SUMMARY_PROMPT.format(focus=_FOCUS, words=self._settings.summary_words)

        transcript = "\n\n".join(f"{m.role}: {m.text()}" for m in messages)
        summary = await self._summarizer.summarize(
            [Message(role="system", content=system), Message(role="user", content=transcript)]
        )
        if not summary or not summary.strip():
            raise ValueError("Summarizer returned an empty summary")
        return summary.strip()

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def _spawn(self, coro: Any, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _replicate(self, session_id: str, message: Message) -> None:
        try:
            await self._backend.save_message(session_id, message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Failed to sync message to backend for session %s: %s", session_id, e)
            if self._on_replication_error is not None:
                try:
                    self._on_replication_error(session_id, message, e)
                except Exception:
                    logger.exception("Replication error observer failed")
