"""Conversation data model: messages, metadata, tool calls and sessions.

Everything here serializes to the camelCase JSON used by the chat endpoint
and by session files. Provider-specific tool-call payloads are converted to
one canonical ``FunctionCall`` at the boundary by ``parse_function_call``.
"""

import json
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from .errors import ToolCallFormatError

__all__ = [
    "ROLES", "PROVIDERS", "FunctionCall", "parse_function_call",
    "UsageMetadata", "MessageMetadata", "Message", "ToolCallStatus",
    "Plan", "ChatRequest", "Session",
]

ROLES = ("user", "assistant", "system")
PROVIDERS = ("anthropic", "gemini", "openai")
UNKNOWN_TOOL = "unknown_tool"


# ── Tool calls ─────────────────────────────────────


@dataclass
class FunctionCall:
    """Canonical tool call: a name plus an argument mapping.

    ``provider`` remembers which payload shape the call arrived in so that
    ``to_dict`` can hand the server back exactly the shape it produced.
    """
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    provider: str = "anthropic"
    thought_signature: Optional[str] = None
    index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.provider == "gemini":
            data: Dict[str, Any] = {"functionCall": {"name": self.name, "args": self.args}}
            if self.id:
                data["id"] = self.id
            if self.thought_signature:
                data["thoughtSignature"] = self.thought_signature
            return data
        if self.provider == "openai":
            data = {"type": "function", "function": {"name": self.name, "arguments": self._arguments()}}
            if self.id:
                data["id"] = self.id
            if self.index is not None:
                data["index"] = self.index
            return data
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.args}

    def _arguments(self) -> str:
        # arguments that never parsed go back as they came
        if set(self.args) == {"_raw"} and isinstance(self.args["_raw"], str):
            return self.args["_raw"]
        return json.dumps(self.args, ensure_ascii=False)


def _coerce_args(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        if not value.strip():
            return {}
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return {"_raw": value}
    if isinstance(value, dict):
        return dict(value)
    return {"_raw": value}


def parse_function_call(raw: Any) -> FunctionCall:
    """Convert one provider payload into a ``FunctionCall``.

    Recognized shapes:
      - Anthropic ``{"type": "tool_use", "id", "name", "input"}``
      - Gemini ``{"functionCall": {"name", "args"}}`` or ``{"name", "args"}``
      - OpenAI ``{"function": {"name", "arguments"}}``; ``arguments`` may be
        a JSON string or a mapping
    """
    if isinstance(raw, FunctionCall):
        return raw
    if not isinstance(raw, dict):
        raise ToolCallFormatError(f"Tool call must be an object, got {type(raw).__name__}")

    call_id = raw.get("id") or None

    nested = raw.get("functionCall")
    if isinstance(nested, dict):
        return FunctionCall(
            name=raw.get("name") or nested.get("name") or UNKNOWN_TOOL,
            args=_coerce_args(nested.get("args")),
            id=call_id,
            provider="gemini",
            thought_signature=raw.get("thoughtSignature"),
        )

    function = raw.get("function")
    if isinstance(function, dict):
        return FunctionCall(
            name=raw.get("name") or function.get("name") or UNKNOWN_TOOL,
            args=_coerce_args(function.get("arguments")),
            id=call_id,
            provider="openai",
            index=raw.get("index"),
        )

    if "input" in raw or (raw.get("type") == "tool_use" and "name" in raw):
        return FunctionCall(
            name=raw.get("name") or UNKNOWN_TOOL,
            args=_coerce_args(raw.get("input")),
            id=call_id,
            provider="anthropic",
        )

    if "args" in raw or "name" in raw:
        return FunctionCall(
            name=raw.get("name") or UNKNOWN_TOOL,
            args=_coerce_args(raw.get("args")),
            id=call_id,
            provider="gemini",
            thought_signature=raw.get("thoughtSignature"),
        )

    raise ToolCallFormatError(f"Unrecognized tool call payload: {sorted(raw)}")


# ── Messages ───────────────────────────────────────


@dataclass(frozen=True)
class UsageMetadata:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> Dict[str, int]:
        return {"inputTokens": self.input_tokens, "outputTokens": self.output_tokens}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["UsageMetadata"]:
        if not isinstance(data, dict):
            return None
        return cls(
            input_tokens=int(data.get("inputTokens", data.get("input_tokens", 0)) or 0),
            output_tokens=int(data.get("outputTokens", data.get("output_tokens", 0)) or 0),
        )


@dataclass(frozen=True)
class MessageMetadata:
    thinking_content: Optional[str] = None
    thinking_signature: Optional[str] = None
    tool_calls: Tuple[FunctionCall, ...] = ()
    finish_reason: Optional[str] = None
    usage_metadata: Optional[UsageMetadata] = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"toolCalls": [tc.to_dict() for tc in self.tool_calls]}
        if self.thinking_content is not None:
            data["thinkingContent"] = self.thinking_content
        if self.thinking_signature is not None:
            data["thinkingSignature"] = self.thinking_signature
        if self.finish_reason is not None:
            data["finishReason"] = self.finish_reason
        if self.usage_metadata is not None:
            data["usageMetadata"] = self.usage_metadata.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Any) -> Optional["MessageMetadata"]:
        if not isinstance(data, dict):
            return None
        return cls(
            thinking_content=data.get("thinkingContent"),
            thinking_signature=data.get("thinkingSignature"),
            tool_calls=tuple(parse_function_call(tc) for tc in data.get("toolCalls") or []),
            finish_reason=data.get("finishReason"),
            usage_metadata=UsageMetadata.from_dict(data.get("usageMetadata")),
        )


@dataclass(frozen=True)
class Message:
    content: str
    role: str = "user"
    metadata: Optional[MessageMetadata] = None
    ignore_in_display: bool = False
    ignore_in_llm: bool = False
    is_error: bool = False

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role: {self.role}")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"content": self.content, "role": self.role}
        if self.metadata is not None:
            data["metadata"] = self.metadata.to_dict()
        if self.ignore_in_display:
            data["ignoreInDisplay"] = True
        if self.ignore_in_llm:
            data["ignoreInLLM"] = True
        if self.is_error:
            data["isError"] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            content=data.get("content") or "",
            role=data.get("role", "user"),
            metadata=MessageMetadata.from_dict(data.get("metadata")),
            ignore_in_display=bool(data.get("ignoreInDisplay", False)),
            ignore_in_llm=bool(data.get("ignoreInLLM", False)),
            is_error=bool(data.get("isError", False)),
        )


@dataclass(frozen=True)
class ToolCallStatus:
    id: str
    name: str
    status: str  # pending | success | error
    timestamp: float
    error_message: Optional[str] = None

    def updated(self, status: str, timestamp: float,
                error_message: Optional[str] = None) -> "ToolCallStatus":
        return replace(self, status=status, timestamp=timestamp, error_message=error_message)


# ── Requests and sessions ──────────────────────────


@dataclass
class Plan:
    mode: str = "lite"
    add_ons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"mode": self.mode, "addOns": list(self.add_ons)}

    @classmethod
    def from_dict(cls, data: Any) -> "Plan":
        if not isinstance(data, dict):
            return cls()
        add_ons = data.get("addOns", data.get("add-ons", [])) or []
        return cls(mode=str(data.get("mode", "lite")), add_ons=[str(a) for a in add_ons])


@dataclass
class ChatRequest:
    messages: Tuple[Message, ...]
    provider: str
    model: str
    sdk: Optional[str] = None
    plan: Plan = field(default_factory=Plan)
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        """Body of ``{"chat": ...}``. The full log is sent every turn."""
        payload: Dict[str, Any] = {
            "messages": [m.to_dict() for m in self.messages if not m.ignore_in_llm],
            "sdk": self.sdk,
            "provider": self.provider,
            "model": self.model,
            "plan": self.plan.to_dict(),
        }
        optional = {
            "apiKey": self.api_key,
            "base_url": self.base_url,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        return payload


@dataclass
class Session:
    date: str
    messages: Tuple[Message, ...] = ()
    directory: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "messages": [m.to_dict() for m in self.messages],
            "directory": self.directory,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            date=str(data.get("date", "")),
            messages=tuple(Message.from_dict(m) for m in data.get("messages") or []),
            directory=str(data.get("directory", "")),
        )
