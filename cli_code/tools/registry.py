"""Tool registry: dict-based dispatch from a tool call to its handler."""

from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import AgentError, ToolError
from ..logger import get_logger
from ..models import FunctionCall, UNKNOWN_TOOL, parse_function_call
from .file_ops import FileOps
from .launcher import Launcher
from .processes import ProcessManager
from .shell import ShellExecutor

_log = get_logger(__name__)

# Argument spellings accepted from the model, first match wins.
_COMMAND = ("command", "cmd")
_PATH = ("filePath", "path", "file", "directory")
_TERM = ("searchTerm", "term", "search")
_PROCESS_ID = ("processId", "id")
_URL = ("url",)


def _arg(args: Dict[str, Any], keys: Tuple[str, ...]) -> Any:
    for key in keys:
        value = args.get(key)
        if value:
            return value
    return None


class _ToolEntry:
    """Single tool registration: handler + description + metadata."""
    __slots__ = ("handler", "description", "writes")

    def __init__(self, handler: Callable[[Dict[str, Any]], Any],
                 description: str, writes: bool = False):
        self.handler = handler
        self.description = description
        self.writes = writes


class ToolRegistry:
    def __init__(self, cwd: str, blocked_commands: Optional[List[str]] = None,
                 command_timeout: int = 15):
        self.files = FileOps(cwd)
        self.shell = ShellExecutor(cwd, blocked_commands, command_timeout)
        self.processes = ProcessManager(cwd)
        self.launcher = Launcher(cwd)
        self._tools: Dict[str, _ToolEntry] = {}
        self._register_tools()

    def _register_tools(self):
        f = self.files
        p = self.processes
        T = _ToolEntry

        self._tools["run_command"] = T(
            handler=lambda a: self.shell.execute(_arg(a, _COMMAND)),
            description="Run a shell command and return its output",
            writes=True,
        )
        self._tools["check_current_directory"] = T(
            handler=lambda a: f.check_current_directory(),
            description="Show the working directory",
        )
        self._tools["list_files"] = T(
            handler=lambda a: f.list_files(_arg(a, _PATH)),
            description="List the entries of a directory",
        )
        self._tools["read_file"] = T(
            handler=lambda a: f.read_file(_arg(a, _PATH)),
            description="Read a text file",
        )
        self._tools["write_file"] = T(
            handler=lambda a: f.write_file(_arg(a, _PATH), a.get("content")),
            description="Create or overwrite a file",
            writes=True,
        )
        self._tools["grep_search"] = T(
            handler=lambda a: f.grep_search(_arg(a, _TERM), _arg(a, _PATH)),
            description="Search files recursively for a term",
        )
        self._tools["run_background_command"] = T(
            handler=lambda a: p.start(_arg(a, _COMMAND), _arg(a, _PROCESS_ID)),
            description="Start a long-running command under an id",
            writes=True,
        )
        self._tools["stop_process"] = T(
            handler=lambda a: p.stop(_arg(a, _PROCESS_ID)),
            description="Stop a background command by id",
            writes=True,
        )
        self._tools["is_process_running"] = T(
            handler=lambda a: p.is_running(_arg(a, _PROCESS_ID)),
            description="Check whether a background command is alive",
        )
        self._tools["open_file"] = T(
            handler=lambda a: self.launcher.open_file(_arg(a, _PATH)),
            description="Open a file with the default application",
        )
        self._tools["open_browser"] = T(
            handler=lambda a: self.launcher.open_browser(_arg(a, _URL)),
            description="Open a URL in the web browser",
        )

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def describe(self) -> List[Tuple[str, str, bool]]:
        return [(name, e.description, e.writes) for name, e in self._tools.items()]

    def run(self, call: Any) -> Any:
        """Execute one tool call. Raises ``ToolError`` on any failure."""
        call: FunctionCall = parse_function_call(call)
        name = call.name or UNKNOWN_TOOL
        entry = self._tools.get(name)
        if entry is None:
            raise ToolError(name, f"Unknown tool: {name}")

        _log.info("Running tool %s", name)
        try:
            return entry.handler(call.args)
        except (AgentError, ValueError, OSError) as e:
            _log.warning("Tool %s failed: %s", name, e)
            raise ToolError(name, str(e)) from e

    def shutdown(self):
        self.processes.stop_all()
