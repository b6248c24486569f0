# /app/services/tool_service.py

import importlib
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from app.models.tool import ToolExecutionContext, ToolResult
from app.utils.metrics import tool_execution_counter

# This service is the registry and single call site for stage actions. Tools
# are looked up by name, built-ins are imported lazily on first use, and
# execute() turns every failure mode into a ToolResult instead of raising.

logger = logging.getLogger(__name__)

ToolExecutor = Callable[[Dict[str, Any], ToolExecutionContext], Awaitable[ToolResult]]


@dataclass
class RegisteredTool:
    name: str
    executor: ToolExecutor
    description: str = ""
    built_in: bool = False


@dataclass
class ToolDependencies:
    """Collaborators a built-in tool may need, supplied by the composition root."""
    store: Any = None
    catalog: Any = None
    extra: Dict[str, Any] = field(default_factory=dict)


# tool name -> "module:factory". The factory receives ToolDependencies and returns an executor.
BUILT_IN_TOOLS: Dict[str, str] = {
    "flow.handoff": "app.services.tools.flow_handoff:create_tool",
    "welcome.route": "app.services.tools.welcome_route:create_tool",
    "lookup.registry": "app.services.tools.registry_lookup:create_tool",
}


class ToolService:
    def __init__(self, dependencies: Optional[ToolDependencies] = None, built_ins: Optional[Dict[str, str]] = None):
        self.dependencies = dependencies or ToolDependencies()
        self._built_ins = dict(BUILT_IN_TOOLS if built_ins is None else built_ins)
        self._tools: Dict[str, RegisteredTool] = {}
        logger.info(f"ToolService initialized with {len(self._built_ins)} built-in tools.")

    def register(self, name: str, executor: ToolExecutor, description: str = "") -> None:
        """Register (or replace) a tool at runtime."""
        if name in self._tools:
            logger.warning(f"Replacing registered tool '{name}'")
        self._tools[name] = RegisteredTool(name=name, executor=executor, description=description)

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def _load_built_in(self, name: str) -> Optional[RegisteredTool]:
        target = self._built_ins.get(name)
        if not target:
            return None
        module_path, _, factory_name = target.partition(":")
        module = importlib.import_module(module_path)
        factory = getattr(module, factory_name)
        executor = factory(self.dependencies)
        tool = RegisteredTool(
            name=name,
            executor=executor,
            description=(module.__doc__ or "").strip().splitlines()[0] if module.__doc__ else "",
            built_in=True,
        )
        self._tools[name] = tool
        logger.info(f"Loaded built-in tool '{name}' from {module_path}")
        return tool

    def has_tool(self, name: str) -> bool:
        return name in self._tools or name in self._built_ins

    def tool_names(self) -> set:
        return set(self._tools) | set(self._built_ins)

    def registered_tools(self) -> List[Dict[str, Any]]:
        listing = []
        for name in sorted(self.tool_names()):
            tool = self._tools.get(name)
            listing.append({
                "name": name,
                "description": tool.description if tool else "",
                "built_in": tool.built_in if tool else True,
                "loaded": tool is not None,
            })
        return listing

    async def execute(self, name: str, payload: Dict[str, Any], context: ToolExecutionContext) -> ToolResult:
        """
        Run a tool by name. Never raises: unknown tools, executor exceptions and
        malformed results all come back as failed ToolResults.
        """
        try:
            tool = self._tools.get(name) or self._load_built_in(name)
        except (ImportError, AttributeError) as e:
            logger.error(f"Failed to load built-in tool '{name}': {e}", exc_info=True)
            tool_execution_counter.labels(tool=name, status="load_error").inc()
            return ToolResult.fail(f"Tool could not be loaded: {name}", "TOOL_LOAD_FAILED")

        if tool is None:
            logger.warning(f"Tool '{name}' is not registered (conversation {context.conversation_id})")
            tool_execution_counter.labels(tool=name, status="not_found").inc()
            return ToolResult.fail(f"Tool not found: {name}", "TOOL_NOT_FOUND")

        try:
            result = await tool.executor(dict(payload), context)
        except Exception as e:
            logger.error(f"Tool '{name}' raised during execution: {e}", exc_info=True)
            tool_execution_counter.labels(tool=name, status="exception").inc()
            return ToolResult.fail(f"Tool execution exception: {e}", "TOOL_EXCEPTION")

        if not isinstance(result, ToolResult):
            try:
                result = ToolResult.model_validate(result)
            except ValidationError as e:
                logger.error(f"Tool '{name}' returned an invalid result: {e}")
                tool_execution_counter.labels(tool=name, status="invalid_result").inc()
                return ToolResult.fail(f"Tool returned an invalid result: {name}", "INVALID_TOOL_RESULT")

        tool_execution_counter.labels(tool=name, status="success" if result.success else "failure").inc()
        return result
