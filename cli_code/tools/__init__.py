from .registry import ToolRegistry
from .shell import ShellExecutor
from .processes import ProcessManager
__all__ = ["ToolRegistry", "ShellExecutor", "ProcessManager"]
