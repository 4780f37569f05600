"""Tool execution with a three-tier priority policy.

Resolution order, evaluated per call:
  1. Manual executors registered by the caller under the tool's name
  2. Tenant tools in CUSTOMER mode with an endpoint (POSTed via httpx)
  3. Built-in PLATFORM tools (knowledge/product search, page generation,
     DOM actions), then tenant custom tools handed to the action handler

ToolExecutor.execute() never raises: every failure becomes a
ToolResult(success=False, error=...).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from lens.agent.models import ExecutionMode, TenantConfig, ToolCall, ToolExecutionConfig, ToolResult
from lens.agent.protocols import ActionHandler, Backend
from lens.config import Settings

logger = logging.getLogger(__name__)

ToolExecutorFunction = Callable[[dict[str, Any]], Awaitable[Any]]

WEB_ACTIONS = (
    "click",
    "doubleClick",
    "scroll",
    "scrollToElement",
    "highlight",
    "drag",
    "deepCrawl",
    "navigate",
)

PAGE_TEMPLATES = (
    "neon-gradient-style",
    "magazine-style",
    "social-feed-style",
    "comic-pop-style",
    "love-letter-style",
)
DEFAULT_PAGE_TEMPLATE = "social-feed-style"

# Parameters each DOM action cannot run without
_REQUIRED_ACTION_PARAMS = {
    "scrollToElement": "selector",
    "highlight": "selector",
    "navigate": "url",
}


@dataclass
class ManualTool:
    """A caller-supplied executor plus optional metadata for prompt building."""

    execute: ToolExecutorFunction
    description: str | None = None
    when_to_use: str | None = None
    schema: dict[str, dict[str, Any]] = field(default_factory=dict)
    output: str | None = None


# ---------------------------------------------------------------------------
# Built-in PLATFORM tools
# ---------------------------------------------------------------------------


def _normalize_product(r: dict[str, Any]) -> dict[str, Any]:
    """Map backend product fields onto a stable camelCase shape."""
    return {
        "prodId": r.get("prod_id") or r.get("prodId"),
        "orgProdId": r.get("org_prod_id") or r.get("orgProdId"),
        "productName": r.get("prod_title_main") or r.get("productName"),
        "subtitle": r.get("prod_title_next") or r.get("subtitle") or "",
        "author": r.get("main_author") or r.get("author") or "",
        "publisher": r.get("publisher_name") or r.get("publisher") or "",
        "salePrice": r.get("sale_price") or r.get("salePrice"),
        "listPrice": r.get("list_price") or r.get("listPrice"),
        "discount": r.get("sale_disc") or r.get("discount"),
        "category": r.get("cat4xsx_cat_nm") or r.get("category") or "",
        "isbn": r.get("main_isbn") or r.get("isbn") or "",
        "description": r.get("prod_pf") or r.get("description") or "",
        "score": r.get("search_rank") or r.get("score") or 0,
    }


async def knowledge_search(backend: Backend, query: str = "", topK: int = 5, **_: Any) -> ToolResult:
    try:
        results = await backend.search_knowledge(query, topK)
    except Exception as e:
        logger.exception("knowledge_search failed")
        return ToolResult.fail(str(e) or "Search failed")
    return ToolResult(success=True, result=results)


async def product_search(backend: Backend, query: str = "", topK: int = 10, **_: Any) -> ToolResult:
    try:
        response = await backend.search_products(query, topK)
    except Exception as e:
        logger.exception("product_search failed")
        return ToolResult.fail(str(e) or "Unknown error")

    raw = (response or {}).get("results") or []
    if not raw:
        return ToolResult(
            success=True,
            result={"message": "No products found matching your query.", "results": []},
        )

    products = [_normalize_product(r) for r in raw]
    page_url = response.get("pageUrl")
    message = (
        f"Found {len(products)} products. View your personalized recommendations: {page_url}"
        if page_url
        else f"Found {len(products)} products."
    )
    return ToolResult(
        success=True,
        result={
            "message": message,
            "results": products,
            "pageUrl": page_url,
            "reasoning": response.get("reasoning") or "",
        },
    )


async def ai_page_generate(
    backend: Backend,
    title: str = "",
    books: list[dict[str, Any]] | None = None,
    template: str = DEFAULT_PAGE_TEMPLATE,
    userQuery: str | None = None,
    **_: Any,
) -> ToolResult:
    if not books:
        return ToolResult.fail("No books provided for page generation")
    if template not in PAGE_TEMPLATES:
        logger.info("Unknown page template %r, using %s", template, DEFAULT_PAGE_TEMPLATE)
        template = DEFAULT_PAGE_TEMPLATE

    try:
        response = await backend.generate_ai_page(title, books, template, userQuery)
    except Exception as e:
        logger.exception("ai_page_generate failed")
        return ToolResult.fail(str(e) or "Unknown error")

    if not response or not response.get("pageUrl"):
        return ToolResult.fail("Failed to generate page - no URL returned")
    return ToolResult(
        success=True,
        result={
            "pageUrl": response["pageUrl"],
            "pageId": response.get("pageId"),
            "message": f"Generated page: {response['pageUrl']}",
        },
    )


# ---------------------------------------------------------------------------
# ToolExecutor
# ---------------------------------------------------------------------------


class ToolExecutor:
    """Resolves a ToolCall to one of the three tiers and runs it."""

    def __init__(
        self,
        settings: Settings,
        backend: Backend | None = None,
        action_handler: ActionHandler | None = None,
        manual_tools: dict[str, ToolExecutorFunction | ManualTool] | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._backend = backend
        self._action_handler = action_handler
        self._manual: dict[str, ManualTool] = {}
        self._tenant: TenantConfig | None = None
        self._http = http
        self._owns_http = http is None
        for name, tool in (manual_tools or {}).items():
            self.register(name, tool)

    def register(self, name: str, tool: ToolExecutorFunction | ManualTool) -> None:
        """Register a manual executor (tier 1) under a tool name."""
        self._manual[name] = tool if isinstance(tool, ManualTool) else ManualTool(execute=tool)

    def set_tenant_config(self, config: TenantConfig | None) -> None:
        self._tenant = config

    @property
    def manual_tools(self) -> dict[str, ManualTool]:
        return dict(self._manual)

    @property
    def builtin_names(self) -> tuple[str, ...]:
        return ("knowledge_search", "product_search", "ai_page_generate", *WEB_ACTIONS)

    async def close(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def execute(self, call: ToolCall) -> ToolResult:
        """Run one tool call. Never raises."""
        name, params = call.name, call.parameters
        logger.info("Executing tool %s", name)

        # Tier 1: manual executor
        manual = self._manual.get(name)
        if manual is not None:
            try:
                return ToolResult.coerce(await manual.execute(params))
            except Exception as e:
                logger.exception("Manual executor error for %s", name)
                return ToolResult.fail(str(e) or "Manual tool executor failed")

        # Tier 2: tenant CUSTOMER endpoint
        registered = self._tenant.find_tool(name) if self._tenant else None
        execution = registered.execution if registered else None
        if (
            execution is not None
            and execution.is_enabled
            and execution.execution_mode == ExecutionMode.CUSTOMER
            and execution.customer_endpoint
        ):
            return await self._execute_customer(name, params, execution)

        # Tier 3: built-in PLATFORM tools
        try:
            return await self._execute_builtin(name, params, registered is not None)
        except Exception as e:
            logger.exception("Built-in tool error for %s", name)
            return ToolResult.fail(f"Tool error: {e}")

    # ------------------------------------------------------------------
    # Tier 2
    # ------------------------------------------------------------------

    async def _execute_customer(
        self,
        name: str,
        params: dict[str, Any],
        execution: ToolExecutionConfig,
    ) -> ToolResult:
        """POST {toolName, parameters} to the tenant endpoint with retry.

        Attempt n (0-based) that fails waits 2**n * customer_backoff_base
        seconds before the next one, up to max_retries extra attempts.
        """
        endpoint = execution.customer_endpoint
        max_retries = (
            execution.max_retries
            if execution.max_retries is not None
            else self._settings.customer_tool_max_retries
        )
        timeout_ms = execution.timeout_ms or self._settings.customer_tool_timeout_ms
        timeout = httpx.Timeout(timeout_ms / 1000)
        http = self._get_http()
        last_error = "Unknown error"

        for attempt in range(max_retries + 1):
            try:
                response = await http.post(
                    endpoint,
                    json={"toolName": name, "parameters": params},
                    timeout=timeout,
                )
                if not 200 <= response.status_code < 300:
                    raise RuntimeError(f"HTTP {response.status_code}: {response.text[:500]}")
                result = ToolResult.coerce(response.json())
                logger.info("CUSTOMER tool %s: %s", name, "success" if result.success else "failed")
                return result
            except httpx.TimeoutException:
                last_error = f"Request timed out after {timeout_ms}ms"
            except Exception as e:
                last_error = str(e) or type(e).__name__

            logger.warning(
                "CUSTOMER tool %s error (attempt %d/%d): %s",
                name,
                attempt + 1,
                max_retries + 1,
                last_error,
            )
            if attempt < max_retries:
                await asyncio.sleep(2**attempt * self._settings.customer_backoff_base)

        return ToolResult.fail(
            f"CUSTOMER tool failed after {max_retries + 1} attempts: {last_error}"
        )

    def _get_http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                headers={"content-type": "application/json"},
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            )
        return self._http

    # ------------------------------------------------------------------
    # Tier 3
    # ------------------------------------------------------------------

    async def _execute_builtin(
        self,
        name: str,
        params: dict[str, Any],
        is_registered: bool,
    ) -> ToolResult:
        if name in ("knowledge_search", "product_search", "ai_page_generate"):
            if self._backend is None:
                return ToolResult.fail(f"Tool {name} requires a backend, none configured")
            handler = {
                "knowledge_search": knowledge_search,
                "product_search": product_search,
                "ai_page_generate": ai_page_generate,
            }[name]
            return await handler(self._backend, **params)

        if name in WEB_ACTIONS:
            return await self._perform_web_action(name, params)

        if is_registered and self._action_handler is not None:
            logger.info("Delegating custom tool %s to action handler", name)
            return ToolResult.coerce(await self._action_handler.perform_action(name, params))

        return ToolResult.fail(
            f"Unknown tool: {name}. Available tools: {', '.join(self.builtin_names)}"
        )

    async def _perform_web_action(self, action: str, params: dict[str, Any]) -> ToolResult:
        required = _REQUIRED_ACTION_PARAMS.get(action)
        if required and not params.get(required):
            return ToolResult.fail(f"{required} is required")
        if self._action_handler is None:
            return ToolResult.fail(f"No action handler configured for {action}")
        try:
            result = await self._action_handler.perform_action(action, params)
        except Exception as e:
            logger.exception("Web action %s failed", action)
            return ToolResult.fail(str(e) or "Action failed")
        return ToolResult.coerce(result)
