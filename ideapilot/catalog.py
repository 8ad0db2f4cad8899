"""Tool definitions, the static registry and the per-mode catalog builder."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from ideapilot.contracts import wrap_tool
from ideapilot.schemas import SessionState
from ideapilot.state import SessionStore
from ideapilot.utils import RuntimeContext

log = logging.getLogger(__name__)


class NoParams(BaseModel):
    pass


@dataclass
class ToolContext:
    """What a tool body may touch: the live state and the session's store."""
    state: SessionState
    store: SessionStore
    runtime: RuntimeContext
    tool_call_id: str = ""
    changed: bool = False
    notices: list[str] = field(default_factory=list)  # appended to history after the turn

    def apply(self, patch: dict[str, Any]) -> SessionState:
        """Merge *patch* into the session state and persist it immediately."""
        self.state = self.store.apply(patch, base=self.state)
        self.changed = True
        return self.state

    def replace(self, state: SessionState) -> SessionState:
        self.state = self.store.commit(state)
        self.changed = True
        return self.state

    def now(self) -> str:
        return self.runtime.clock()


ToolBody = Callable[[BaseModel, ToolContext], Awaitable[Any]]


@dataclass
class Tool:
    name: str
    description: str
    params: type[BaseModel]
    body: ToolBody
    _wrapped: Callable[..., Awaitable[dict[str, Any]]] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        async def run(args: dict[str, Any], ctx: ToolContext) -> Any:
            return await self.body(self.params.model_validate(args or {}), ctx)

        self._wrapped = wrap_tool(self.name, run)

    async def execute(self, args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
        """Validate *args* and run the body; always returns an envelope."""
        return await self._wrapped(args, ctx)

    def schema(self) -> dict[str, Any]:
        """JSON schema handed to the language model."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.params.model_json_schema(),
        }


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

REGISTRY: dict[str, Tool] = {}


def register(name: str, description: str, params: type[BaseModel] = NoParams) -> Callable[[ToolBody], ToolBody]:
    """Decorator adding an async tool body to :data:`REGISTRY`."""
    def decorator(body: ToolBody) -> ToolBody:
        if name in REGISTRY:
            raise ValueError(f"Tool {name!r} registered twice")
        REGISTRY[name] = Tool(name=name, description=description, params=params, body=body)
        return body
    return decorator


# ---------------------------------------------------------------------------
# Mode lookup table
# ---------------------------------------------------------------------------

CROSS_MODE_TOOLS: tuple[str, ...] = (
    "getWeatherInformation",
    "getLocalTime",
    "fetchWebPage",
    "scheduleTask",
    "getScheduledTasks",
    "cancelScheduledTask",
    "getAgentState",
    "getModeInfo",
    "setMode",
    "suggestActions",
    "runResearch",
    "storeIdeaInformation",
    "storeConversationInsights",
    "updateFactorScore",
    "getAssessmentState",
    "selectIdea",
    "deleteIdea",
)

MODE_TOOLS: dict[str, tuple[str, ...]] = {
    "onboarding": ("saveSettings", "completeOnboarding", "checkExistingConfig", "getOnboardingStatus"),
    "integration": (
        "recordTestResult",
        "documentTool",
        "generateTestReport",
        "completeIntegrationTesting",
        "testErrorTool",
    ),
    "plan": (),
    "act": ("testErrorTool",),
}

CONFIRMATION_REQUIRED: frozenset[str] = frozenset({"getWeatherInformation", "deleteIdea"})


def tool_names_for_mode(mode: str) -> tuple[str, ...]:
    return CROSS_MODE_TOOLS + MODE_TOOLS.get(mode, ())


def build_catalog(mode: str, registry: dict[str, Tool] | None = None) -> dict[str, Tool]:
    """Return the tools the model may call in *mode*, in a stable order."""
    registry = REGISTRY if registry is None else registry
    catalog: dict[str, Tool] = {}
    for name in tool_names_for_mode(mode):
        tool = registry.get(name)
        if tool is None:
            log.warning("Tool %s listed for %s mode is not registered", name, mode)
            continue
        catalog[name] = tool
    return catalog


def requires_confirmation(name: str) -> bool:
    return name in CONFIRMATION_REQUIRED
