"""Structured error types for cli-code."""

from enum import Enum
from typing import Optional


class AgentError(Exception):
    """Base error for all cli-code operations."""
    pass


class ChatErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    AUTH_ERROR = "auth_error"
    NETWORK_ERROR = "network_error"
    API_ERROR = "api_error"
    UNKNOWN = "unknown"


class ChatError(AgentError):
    """A turn failed. Classified once at the streaming boundary."""

    def __init__(self, kind: ChatErrorKind, message: str, status: Optional[int] = None):
        self.kind = ChatErrorKind(kind)
        self.status = status
        self.message = message
        super().__init__(message)

    @classmethod
    def from_status(cls, status: int, message: str = "") -> "ChatError":
        if status == 429:
            kind = ChatErrorKind.RATE_LIMIT
        elif status in (401, 403):
            kind = ChatErrorKind.AUTH_ERROR
        elif status >= 500:
            kind = ChatErrorKind.API_ERROR
        else:
            kind = ChatErrorKind.UNKNOWN
        return cls(kind, message or f"HTTP error! status: {status}", status=status)


class ToolError(AgentError):
    """Error raised during tool execution."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(f"Tool execution failed for {tool_name}: {message}")


class ToolCallFormatError(AgentError):
    """A tool-call payload matched none of the known provider shapes."""


class CommandRoutingError(AgentError):
    """Slash commands are not conversation content."""

    def __init__(self, text: str):
        self.text = text
        super().__init__(f"Not a chat message: {text.split()[0] if text.split() else text}")


class ShellBlockedError(AgentError):
    """Raised when a shell command is blocked by safety guards."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Blocked: {reason}")


class ShellTimeoutError(AgentError):
    """Raised when a shell command exceeds its timeout."""

    def __init__(self, timeout: int):
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s")


class ShellCommandError(AgentError):
    """Raised when a shell command exits non-zero."""

    def __init__(self, returncode: int, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip() or f"exit code {returncode}"
        super().__init__(f"Command execution failed: {detail}")
