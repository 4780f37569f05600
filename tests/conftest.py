"""Shared fixtures and in-memory fakes for the agent collaborators."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from lens.agent.memory import MemoryStore
from lens.agent.models import LLMTrace, Message, SessionContext, Skill, TenantConfig
from lens.agent.supervisor import SupervisorAgent
from lens.agent.tools import ToolExecutor
from lens.config import Settings

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeModel:
    """Replays scripted responses, one list of fragments per model call.

    `on_fragment(call_index, fragment_index)` runs before each fragment is
    delivered, which lets tests abort mid-stream deterministically.
    """

    def __init__(self, turns: list[list[str]]) -> None:
        self._turns = list(turns)
        self.calls: list[list[Message]] = []
        self.delivered: list[str] = []
        self.on_fragment: Callable[[int, int], None] | None = None
        self.fail_with: Exception | None = None

    async def stream(self, messages: list[Message], model: str) -> AsyncIterator[str]:
        call_index = len(self.calls)
        self.calls.append(list(messages))
        if self.fail_with is not None:
            raise self.fail_with
        fragments = self._turns[call_index] if call_index < len(self._turns) else ["ok"]
        for i, fragment in enumerate(fragments):
            if self.on_fragment is not None:
                self.on_fragment(call_index, i)
            await asyncio.sleep(0)
            self.delivered.append(fragment)
            yield fragment


class FakePromptBuilder:
    """Returns the cached session log as the prompt."""

    def __init__(self, memory: MemoryStore) -> None:
        self._memory = memory
        self.skills: list[Skill | None] = []

    async def build_prompt(self, context: SessionContext, active_skill: Skill | None = None) -> list[Message]:
        self.skills.append(active_skill)
        return [Message(role="system", content="You are a shop assistant."), *self._memory.read_cached(context.session_id)]


class FakeSummarizer:
    def __init__(self, text: str = "User asked about books; agent searched products.") -> None:
        self.text = text
        self.calls: list[list[Message]] = []
        self.fail_with: Exception | None = None
        self.gate: asyncio.Event | None = None

    async def summarize(self, messages: list[Message]) -> str:
        self.calls.append(messages)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return self.text


class FakeBackend:
    """Records every call; individual methods can be made to fail."""

    def __init__(self, config: TenantConfig | None = None) -> None:
        self.config = config or TenantConfig()
        self.saved: list[tuple[str, Message]] = []
        self.traces: list[LLMTrace] = []
        self.sessions: list[str] = []
        self.stored: dict[str, list[Message]] = {}
        self.fail: set[str] = set()
        self.config_loads = 0
        self.knowledge: Any = [{"title": "Returns", "content": "30 days"}]
        self.products: Any = {"results": []}
        self.page: Any = {"pageUrl": "https://pages.example/p1", "pageId": "p1"}

    def _check(self, op: str) -> None:
        if op in self.fail:
            raise RuntimeError(f"{op} unavailable")

    async def get_config(self) -> TenantConfig:
        self._check("get_config")
        self.config_loads += 1
        return self.config

    async def create_session(self, session_id: str, user_id: str = "") -> Any:
        self._check("create_session")
        self.sessions.append(session_id)
        return {"id": session_id}

    async def get_session(self, session_id: str) -> Any:
        self._check("get_session")
        return {"id": session_id}

    async def save_message(self, session_id: str, message: Message) -> None:
        self._check("save_message")
        self.saved.append((session_id, message))

    async def get_messages(self, session_id: str) -> list[Message]:
        self._check("get_messages")
        return list(self.stored.get(session_id, []))

    async def save_trace(self, trace: LLMTrace) -> None:
        self._check("save_trace")
        self.traces.append(trace)

    async def search_knowledge(self, query: str, top_k: int = 5) -> Any:
        self._check("search_knowledge")
        return self.knowledge

    async def search_products(self, query: str, top_k: int = 10) -> Any:
        self._check("search_products")
        return self.products

    async def generate_ai_page(self, title, books, template=None, user_query=None) -> Any:
        self._check("generate_ai_page")
        return self.page


class FakeActionHandler:
    def __init__(self) -> None:
        self.actions: list[tuple[str, dict]] = []

    async def perform_action(self, name: str, params: dict) -> Any:
        self.actions.append((name, params))
        return {"success": True, "action": name}


def tool_block(name: str, params: str = "{}") -> str:
    return f"<tool>\nname: {name}\nparameters: {params}\n</tool>"


async def collect(stream) -> list:
    """Drain an execute() stream into a list of events."""
    return [event async for event in stream]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(max_turns=3, customer_backoff_base=1.0)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def summarizer() -> FakeSummarizer:
    return FakeSummarizer()


@pytest.fixture
def actions() -> FakeActionHandler:
    return FakeActionHandler()


@pytest.fixture
def memory(settings, summarizer, backend) -> MemoryStore:
    return MemoryStore(settings, summarizer, backend)


@pytest.fixture
def context() -> SessionContext:
    return SessionContext(session_id="sess-1", user_id="user-1")


@pytest.fixture
def make_agent(settings, memory, backend, actions):
    """Factory building a SupervisorAgent around a scripted FakeModel."""

    def _make(
        turns: list[list[str]],
        *,
        agent_settings: Settings | None = None,
        manual_tools: dict | None = None,
        tenant_config: TenantConfig | None = None,
        trace_sink=None,
    ) -> tuple[SupervisorAgent, FakeModel]:
        s = agent_settings or settings
        model = FakeModel(turns)
        tools = ToolExecutor(s, backend=backend, action_handler=actions, manual_tools=manual_tools)
        agent = SupervisorAgent(
            s,
            model=model,
            prompt_builder=FakePromptBuilder(memory),
            memory=memory,
            tools=tools,
            backend=backend,
            tenant_config=tenant_config,
            trace_sink=trace_sink,
        )
        return agent, model

    return _make


