"""Supervisor agent -- the turn loop that drives the model and its tools.

Each execute() call:
  1. Lazily loads tenant config and makes sure the session exists
  2. Expands a /skill invocation and records the user message
  3. Per turn: builds the prompt, streams the model through the
     ToolCallExtractor, records the full response, then either finishes
     (no tool calls) or runs the tool calls concurrently and loops
  4. Stops at completion, abort(), max_turns, or the first turn-level error

Results are yielded as StreamEvents. Exactly one terminal event (done or
error) ends every execute() stream.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections.abc import AsyncGenerator
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any

from lens.agent.memory import MemoryStore
from lens.agent.models import (
    CompactedMemory,
    LLMTrace,
    Message,
    SessionContext,
    Skill,
    StreamEvent,
    StreamEventType,
    TenantConfig,
    ToolCall,
    ToolResult,
)
from lens.agent.parser import ToolCallExtractor
from lens.agent.protocols import Backend, ModelStream, PromptBuilder, TraceSink
from lens.agent.skills import SkillParser
from lens.agent.tools import ToolExecutor
from lens.config import Settings

logger = logging.getLogger(__name__)

# Substrings of a create_session error that mean the session already exists
_SESSION_EXISTS_MARKERS = ("409", "already exists", "duplicate")


def deduplicate_tool_calls(calls: list[ToolCall]) -> list[ToolCall]:
    """Drop structurally identical calls, keeping first-seen order."""
    seen: set[str] = set()
    unique: list[ToolCall] = []
    for call in calls:
        key = call.dedup_key()
        if key not in seen:
            seen.add(key)
            unique.append(call)
    return unique


def format_tool_result(call: ToolCall, result: ToolResult) -> str:
    """Render a tool result as the system message the model reads next turn."""
    body = json.dumps(result.to_payload(), indent=2, ensure_ascii=False, default=str)
    return f"[Tool Result for {call.name}]\n{body}"


def _terminal_error(message: str, code: str) -> StreamEvent:
    return StreamEvent(type=StreamEventType.ERROR, error=message, code=code)


@dataclass
class _TurnState:
    """What one model stream produced."""

    chunks: list[str] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    aborted: bool = False

    @property
    def response(self) -> str:
        return "".join(self.chunks)


class SupervisorAgent:
    """Runs the bounded model/tool loop for one tenant.

    Only one execute() may be in flight per instance. Consume the event
    stream to the end (or aclose() it) before starting another.
    """

    def __init__(
        self,
        settings: Settings,
        model: ModelStream,
        prompt_builder: PromptBuilder,
        memory: MemoryStore,
        tools: ToolExecutor,
        backend: Backend | None = None,
        tenant_config: TenantConfig | None = None,
        trace_sink: TraceSink | None = None,
    ) -> None:
        self._settings = settings
        self._model = model
        self._prompt_builder = prompt_builder
        self._memory = memory
        self._tools = tools
        self._backend = backend
        self._tenant = tenant_config
        self._trace_sink = trace_sink
        self._skills = SkillParser()

        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._cancel: asyncio.Event | None = None
        self._created_sessions: set[str] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Load tenant config once. Later calls are no-ops."""
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            if self._tenant is None:
                self._tenant = (
                    await self._backend.get_config() if self._backend is not None else TenantConfig()
                )
            self._skills.set_skills(self._tenant.skills)
            self._tools.set_tenant_config(self._tenant)
            self._initialized = True
            logger.info(
                "Agent initialized: %d skills, %d tenant tools, %d manual executors (config %s)",
                len(self._tenant.skills),
                len(self._tenant.tools),
                len(self._tools.manual_tools),
                self._tenant.version,
            )

    async def close(self) -> None:
        """Wait for background memory work and release the HTTP client."""
        await self._memory.wait_for_pending()
        await self._tools.close()

    def abort(self) -> None:
        """Cancel the in-flight execute(), if any."""
        if self._cancel is not None:
            logger.info("Abort requested")
            self._cancel.set()

    @property
    def is_executing(self) -> bool:
        return self._cancel is not None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def memory(self) -> MemoryStore:
        return self._memory

    @property
    def tenant_config(self) -> TenantConfig | None:
        return self._tenant

    def get_messages(self, session_id: str) -> list[Message]:
        return self._memory.read_cached(session_id)

    def get_compacted_memories(self, session_id: str) -> list[CompactedMemory]:
        return self._memory.get_compacted(session_id)

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    async def execute(
        self,
        context: SessionContext,
        query: str,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Run the agent for one user query, yielding lifecycle events."""
        if self._cancel is not None:
            logger.warning("execute() called while already executing, rejecting")
            yield _terminal_error("Agent is already executing", "busy")
            return

        cancel = asyncio.Event()
        self._cancel = cancel
        session_id = context.session_id
        max_turns = self._settings.max_turns

        try:
            await self.init()
            await self._ensure_session(context)

            active_skill: Skill | None = None
            final_query = query
            match = self._skills.parse(query)
            if match is not None:
                active_skill = match.skill
                final_query = match.modified_query
                logger.info("Using skill %s", active_skill.name)

            self._memory.append(session_id, "user", final_query)

            for turn in range(1, max_turns + 1):
                if cancel.is_set():
                    yield _terminal_error("Execution aborted by user", "aborted")
                    return

                messages = await self._prompt_builder.build_prompt(context, active_skill)

                state = _TurnState()
                async with aclosing(self._stream_turn(context, messages, cancel, state)) as events:
                    async for event in events:
                        yield event

                # An abort before the first fragment leaves nothing to record
                if state.chunks or not state.aborted:
                    self._memory.append(session_id, "assistant", state.response)

                if state.aborted:
                    yield _terminal_error("Execution aborted by user", "aborted")
                    return

                logger.info("Turn %d: %d tool call(s)", turn, len(state.tool_calls))

                if not state.tool_calls:
                    yield StreamEvent(type=StreamEventType.DONE)
                    return

                unique = deduplicate_tool_calls(state.tool_calls)
                if len(unique) != len(state.tool_calls):
                    logger.info(
                        "Deduplicated tool calls: %d -> %d", len(state.tool_calls), len(unique)
                    )

                if cancel.is_set():
                    yield _terminal_error("Execution aborted by user", "aborted")
                    return

                results = await asyncio.gather(*(self._tools.execute(call) for call in unique))

                # Recorded and emitted in detection order, not completion order
                for call, result in zip(unique, results):
                    self._memory.append(session_id, "system", format_tool_result(call, result))
                    yield StreamEvent(
                        type=StreamEventType.TOOL_RESULT,
                        tool_call=call,
                        tool_result=result,
                    )

            logger.warning("Turn loop reached max_turns=%d for session %s", max_turns, session_id)
            yield _terminal_error("Max turns reached", "max_turns")

        except Exception as e:
            logger.exception("Execution error for session %s", session_id)
            yield _terminal_error(str(e) or type(e).__name__, "error")
        finally:
            self._cancel = None

    async def _stream_turn(
        self,
        context: SessionContext,
        messages: list[Message],
        cancel: asyncio.Event,
        state: _TurnState,
    ) -> AsyncGenerator[StreamEvent, None]:
        """Stream one model response, filling `state` as fragments arrive.

        Text is forwarded until the first tool call of the turn; after
        that the rest of the turn's text is suppressed.
        """
        model = self._settings.model
        extractor = ToolCallExtractor()
        has_tool_calls = False
        start_time = time.monotonic()

        stream = self._model.stream(messages, model)
        iterator = aiter(stream)
        cancelled = asyncio.ensure_future(cancel.wait())
        pending: asyncio.Future | None = None
        try:
            while True:
                # A stalled stream must not delay abort()
                pending = asyncio.ensure_future(anext(iterator))
                await asyncio.wait({pending, cancelled}, return_when=asyncio.FIRST_COMPLETED)
                if not pending.done():
                    state.aborted = True
                    break
                try:
                    fragment = pending.result()
                except StopAsyncIteration:
                    break
                if cancel.is_set():
                    state.aborted = True
                    break
                if not fragment:
                    continue

                state.chunks.append(fragment)
                parsed = extractor.add_fragment(fragment)

                if parsed.text and not has_tool_calls:
                    yield StreamEvent(type=StreamEventType.TEXT_DELTA, content=parsed.text)

                if parsed.tool_calls:
                    has_tool_calls = True
                    for call in parsed.tool_calls:
                        state.tool_calls.append(call)
                        yield StreamEvent(type=StreamEventType.TOOL_CALL, tool_call=call)
        except Exception as e:
            await self._emit_trace(
                context, messages, state.response, start_time, status="ERROR", error=str(e)
            )
            raise
        finally:
            cancelled.cancel()
            if pending is not None and not pending.done():
                pending.cancel()
                await asyncio.wait({pending})
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        remaining = extractor.flush()
        if state.aborted:
            await self._emit_trace(
                context, messages, state.response, start_time, status="ERROR", error="aborted"
            )
            return

        if remaining and not has_tool_calls:
            yield StreamEvent(type=StreamEventType.TEXT_DELTA, content=remaining)

        await self._emit_trace(context, messages, state.response, start_time, status="SUCCESS")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _emit_trace(
        self,
        context: SessionContext,
        messages: list[Message],
        output: str,
        start_time: float,
        status: str,
        error: str | None = None,
    ) -> None:
        """Report a model call to the trace sink, else the backend. Never raises."""
        trace = LLMTrace(
            session_id=context.session_id,
            user_id=context.user_id,
            input=messages,
            output=output,
            model=self._settings.model,
            provider=self._settings.provider,
            status=status,  # type: ignore[arg-type]
            latency_ms=int((time.monotonic() - start_time) * 1000),
            error=error,
        )
        try:
            if self._trace_sink is not None:
                outcome: Any = self._trace_sink(trace)
                if inspect.isawaitable(outcome):
                    await outcome
            elif self._backend is not None:
                await self._backend.save_trace(trace)
        except Exception:
            logger.exception("Failed to save trace for session %s", context.session_id)

    async def _ensure_session(self, context: SessionContext) -> None:
        """Create the backend session once per session id. Never raises."""
        session_id = context.session_id
        if self._backend is None or session_id in self._created_sessions:
            return

        try:
            await self._backend.create_session(session_id, context.user_id)
            self._created_sessions.add(session_id)
            logger.info("Session created: %s", session_id)
            return
        except Exception as e:
            message = str(e)
            if any(marker in message for marker in _SESSION_EXISTS_MARKERS):
                logger.info("Session %s already exists", session_id)
                self._created_sessions.add(session_id)
                return
            logger.warning("Session create failed for %s: %s", session_id, message)

        try:
            await self._backend.get_session(session_id)
            self._created_sessions.add(session_id)
        except Exception:
            logger.error("Session %s does not exist and could not be created", session_id)
