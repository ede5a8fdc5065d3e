"""Core services for codeloop."""

from .config import (
    DEFAULT_CONFIG_DIR,
    CodeLoopConfig,
    ConfigContext,
    ConfigManager,
    ConfigurationError,
)
from .snapshots import FileChange, FileSnapshot, SnapshotManager
from .tool_registry import (
    ToolDispatcher,
    ToolRegistry,
    ToolRegistryError,
    ToolResult,
    Toolkit,
    ToolkitAlreadyRegisteredError,
    build_default_registry,
)
from .agent_loop import (
    AgentBusyError,
    AgentLoopContext,
    AgentLoopError,
    AgentLoopResult,
    SessionMetrics,
    run_agent_loop,
)

__all__ = [
    "AgentBusyError",
    "AgentLoopContext",
    "AgentLoopError",
    "AgentLoopResult",
    "CodeLoopConfig",
    "ConfigContext",
    "ConfigManager",
    "ConfigurationError",
    "DEFAULT_CONFIG_DIR",
    "FileChange",
    "FileSnapshot",
    "SessionMetrics",
    "SnapshotManager",
    "ToolDispatcher",
    "ToolRegistry",
    "ToolRegistryError",
    "ToolResult",
    "Toolkit",
    "ToolkitAlreadyRegisteredError",
    "build_default_registry",
    "run_agent_loop",
]
