from tools.registry import ToolRegistry
from tools.profile_tools import register_profile_tools
from tools.plan_tools import register_plan_tools


def build_registry() -> ToolRegistry:
    registry = ToolRegistry()
    register_profile_tools(registry)
    register_plan_tools(registry)
    return registry


tool_registry = build_registry()

__all__ = ["tool_registry", "build_registry", "ToolRegistry"]
