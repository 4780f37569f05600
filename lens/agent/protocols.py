"""Interfaces of the collaborators the agent drives.

None of these are implemented here: the host application wires in its
own model transport, prompt builder, backend client, summarizer and
widget action handler.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol

from lens.agent.models import LLMTrace, Message, SessionContext, Skill, TenantConfig


class ModelStream(Protocol):
    """Streams incremental text fragments for one model call.

    The returned iterator ends at end-of-stream. If it also exposes
    aclose(), the agent calls it when it stops consuming early. A read
    still pending when the agent is aborted is cancelled.
    """

    def stream(self, messages: list[Message], model: str) -> AsyncIterator[str]: ...


class PromptBuilder(Protocol):
    """Assembles the message list for the next model call.

    Pure read of memory and tenant state; must not mutate either.
    """

    async def build_prompt(
        self,
        context: SessionContext,
        active_skill: Skill | None = None,
    ) -> list[Message]: ...


class Backend(Protocol):
    """Durable backend: sessions, messages, traces and platform tool endpoints."""

    async def get_config(self) -> TenantConfig: ...

    async def create_session(self, session_id: str, user_id: str = "") -> Any: ...

    async def get_session(self, session_id: str) -> Any: ...

    async def save_message(self, session_id: str, message: Message) -> None: ...

    async def get_messages(self, session_id: str) -> list[Message]: ...

    async def save_trace(self, trace: LLMTrace) -> None: ...

    async def search_knowledge(self, query: str, top_k: int = 5) -> Any: ...

    async def search_products(self, query: str, top_k: int = 10) -> Any: ...

    async def generate_ai_page(
        self,
        title: str,
        books: list[dict[str, Any]],
        template: str | None = None,
        user_query: str | None = None,
    ) -> Any: ...


class Summarizer(Protocol):
    """Produces summary text from a [system instructions, user transcript] pair."""

    async def summarize(self, messages: list[Message]) -> str: ...


class ActionHandler(Protocol):
    """Performs DOM/widget actions on the host page."""

    async def perform_action(self, name: str, params: dict[str, Any]) -> Any: ...


class TraceSink(Protocol):
    """Caller-supplied receiver for model call traces."""

    async def __call__(self, trace: LLMTrace) -> None: ...
