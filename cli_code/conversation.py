"""Conversation orchestration: send, stream, run tools, resubmit.

Only one turn is in flight at a time. Starting a turn cancels the previous
one, and callbacks from a cancelled or superseded turn are dropped. A turn
that ends with a tool call either runs it immediately (auto-accept) or parks
it in ``pending_tool_call`` until ``confirm_pending`` is called. Every
accepted or rejected call produces exactly one follow-up turn.
"""

import json
import os
import threading
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Tuple

from .chat import CancelToken, ChatClient, StreamCallbacks, StreamSnapshot
from .config import Config
from .errors import ChatError, CommandRoutingError
from .logger import get_logger
from .models import (
    ChatRequest, FunctionCall, Message, MessageMetadata, UsageMetadata, parse_function_call,
)
from .sessions import BackgroundWriter, SessionStore, session_id_for_directory
from .tool_calls import ToolCallHistory
from .tools import ToolRegistry

_log = get_logger(__name__)

ATTACHMENT_PREFIX = "\n\n\nI have attached files for your reference: "
REJECTED_MESSAGE = "Tool call was rejected by the user."
NO_MODEL_MESSAGE = "No model selected. Use /model to choose one."

Runner = Callable[[Callable[[], None]], Optional[threading.Thread]]


class ToolDecision(str, Enum):
    ACCEPT = "accept"
    ACCEPT_ALL = "accept_all"
    REJECT = "reject"


def thread_runner(fn: Callable[[], None]) -> threading.Thread:
    worker = threading.Thread(target=fn, name="chat-turn", daemon=True)
    worker.start()
    return worker


def with_attachments(text: str, attachments: Sequence[str]) -> str:
    if not attachments:
        return text
    return f"{text}{ATTACHMENT_PREFIX}{', '.join(attachments)}."


class _Turn:
    __slots__ = ("token", "follow_up")

    def __init__(self):
        self.token = CancelToken()
        self.follow_up: Optional[Tuple[FunctionCall, Optional[str]]] = None


class _TurnCallbacks(StreamCallbacks):
    """Route stream observations to the conversation while the turn is current."""

    def __init__(self, conversation: "Conversation", turn: _Turn):
        self._conv = conversation
        self._turn = turn

    def on_thinking(self, thinking):
        self._conv._apply(self._turn, thinking=thinking)

    def on_content(self, content):
        self._conv._apply(self._turn, content=content)

    def on_tool_calls(self, tool_calls):
        self._conv._apply(self._turn, current_tool_call=tool_calls[0] if tool_calls else None)

    def on_final(self, content, metadata):
        self._conv._on_final(self._turn, content, metadata)

    def on_done(self, snapshot):
        self._conv._on_done(self._turn, snapshot)


class Conversation:
    def __init__(self, client: ChatClient, tools: ToolRegistry,
                 store: Optional[SessionStore] = None, config: Optional[Config] = None,
                 directory: Optional[str] = None, writer: Optional[BackgroundWriter] = None,
                 runner: Runner = thread_runner,
                 listener: Optional[Callable[["Conversation"], None]] = None):
        self.client = client
        self.tools = tools
        self.config = config or client.config
        self.store = store or SessionStore()
        self.writer = writer or BackgroundWriter()
        self.directory = directory or os.getcwd()
        self.runner = runner
        self.listener = listener

        self.messages: Tuple[Message, ...] = ()
        self.thinking = ""
        self.content = ""
        self.is_processing = False
        self.current_tool_call: Optional[FunctionCall] = None
        self.pending_tool_call: Optional[FunctionCall] = None
        self.usage: Optional[UsageMetadata] = None
        self.history = ToolCallHistory()
        self.session_id = session_id_for_directory(self.directory)

        self._pending_signature: Optional[str] = None
        self._turn: Optional[_Turn] = None
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)
        self._active = 0
        self._generation = 0

    # ── State helpers ──

    def _notify(self):
        if self.listener is not None:
            self.listener(self)

    def _is_current(self, turn: _Turn) -> bool:
        with self._lock:
            return self._turn is turn and not turn.token.cancelled

    def _apply(self, turn: _Turn, **changes: Any) -> bool:
        with self._lock:
            if self._turn is not turn or turn.token.cancelled:
                return False
            for name, value in changes.items():
                setattr(self, name, value)
        self._notify()
        return True

    def _append(self, *messages: Message,
                when: Optional[Callable[[], bool]] = None) -> Optional[Tuple[Message, ...]]:
        """Append ``messages`` and persist. ``when`` is checked under the lock; ``None`` if it fails."""
        with self._lock:
            if when is not None and not when():
                return None
            self.messages = self.messages + messages
            log = self.messages
        self._persist(log)
        self._notify()
        return log

    def _persist(self, log: Tuple[Message, ...]):
        self.writer.submit(self.store.save, log, self.directory, self.session_id)

    def _same_generation(self, generation: int) -> Callable[[], bool]:
        return lambda: self._generation == generation

    # ── Sending ──

    def submit_user_message(self, text: str, attachments: Sequence[str] = ()):
        if text.lstrip().startswith("/"):
            raise CommandRoutingError(text)
        if not text.strip() and not attachments:
            return
        log = self._append(Message(with_attachments(text, attachments), role="user"))
        self.submit_turn(log)

    def submit_turn(self, log: Optional[Sequence[Message]] = None):
        """Start a new turn on ``log`` (default: the current log)."""
        self._start_turn(log, None)

    def _start_turn(self, log: Optional[Sequence[Message]], generation: Optional[int]):
        # generation set: only start if nothing was cancelled since it was taken
        fresh = self._same_generation(generation) if generation is not None else None
        model = self.config.selected_model
        if model is None:
            self._append(_error_message(NO_MODEL_MESSAGE), when=fresh)
            return

        turn = _Turn()
        with self._lock:
            if fresh is not None and not fresh():
                _log.info("Not resubmitting: conversation was cancelled")
                return
            self._generation += 1
            if self._turn is not None:
                self._turn.token.cancel()
            self._turn = turn
            messages = tuple(log) if log is not None else self.messages
            self.thinking = ""
            self.content = ""
            self.current_tool_call = None
            self.is_processing = True
            self._active += 1
        self._notify()

        request = ChatRequest(
            messages=messages,
            provider=model.provider,
            model=model.model,
            sdk=model.sdk,
            plan=self.config.plan,
        )
        self.runner(lambda: self._run_turn(turn, request))

    def _run_turn(self, turn: _Turn, request: ChatRequest):
        try:
            self._drive(turn, request)
        finally:
            with self._idle:
                self._active -= 1
                self._idle.notify_all()

    def _drive(self, turn: _Turn, request: ChatRequest):
        try:
            self.client.send(request, _TurnCallbacks(self, turn), turn.token)
        except ChatError as e:
            self._fail_turn(turn, e.message)
            return
        except Exception as e:
            _log.exception("Unexpected error during turn")
            self._fail_turn(turn, str(e) or type(e).__name__)
            return

        if turn.follow_up is None:
            return
        with self._lock:
            if not self._is_current(turn):
                return
            generation = self._generation
        call, signature = turn.follow_up
        self._handle_tool_call(parse_function_call(call), signature, generation)

    def _fail_turn(self, turn: _Turn, message: str):
        def settle() -> bool:
            if not self._is_current(turn):
                return False
            self.is_processing = False
            self.thinking = ""
            self.content = ""
            return True

        if self._append(_error_message(message), when=settle) is not None:
            _log.error("Turn failed: %s", message)

    def _on_final(self, turn: _Turn, content: str, metadata: MessageMetadata):
        def current() -> bool:
            if not self._is_current(turn):
                return False
            if metadata.usage_metadata is not None:
                self.usage = metadata.usage_metadata
            return True

        if self._append(Message(content, role="assistant", metadata=metadata), when=current) is None:
            return
        if metadata.tool_calls:
            turn.follow_up = (metadata.tool_calls[0], metadata.thinking_signature)

    def _on_done(self, turn: _Turn, snapshot: StreamSnapshot):
        self._apply(turn, is_processing=False, thinking="", content="")

    # ── Tool calls ──

    def handle_tool_call(self, call: Any, thinking_signature: Optional[str] = None):
        with self._lock:
            generation = self._generation
        self._handle_tool_call(parse_function_call(call), thinking_signature, generation)

    def _handle_tool_call(self, call: FunctionCall, thinking_signature: Optional[str],
                          generation: int):
        if self.config.accept_all_tool_calls:
            self._execute_tool(call, thinking_signature, generation)
            return
        with self._lock:
            if self._generation != generation:
                return
            self.pending_tool_call = call
            self._pending_signature = thinking_signature
        self._notify()

    def confirm_pending(self, decision: ToolDecision) -> bool:
        """Resolve the parked tool call. ``False`` if nothing was pending."""
        decision = ToolDecision(decision)
        with self._lock:
            call, signature = self.pending_tool_call, self._pending_signature
            self.pending_tool_call = None
            self._pending_signature = None
            generation = self._generation
        if call is None:
            return False

        if decision is ToolDecision.REJECT:
            log = self._append(Message(REJECTED_MESSAGE, role="user", ignore_in_display=True),
                               when=self._same_generation(generation))
            if log is not None:
                self._start_turn(log, generation)
            return True
        if decision is ToolDecision.ACCEPT_ALL:
            self.config.update(accept_all_tool_calls=True)
        self._execute_tool(call, signature, generation)
        return True

    def _execute_tool(self, call: FunctionCall, thinking_signature: Optional[str],
                      generation: int):
        with self._lock:
            self.current_tool_call = call
        self.history.record_status(call, "pending")
        self._notify()

        metadata = MessageMetadata(tool_calls=(call,), thinking_signature=thinking_signature)
        try:
            result = self.tools.run(call)
        except Exception as e:
            self.history.record_status(call, "error", str(e))
            message = Message(f"Tool execution failed: {e}", role="user",
                              metadata=metadata, ignore_in_display=True)
        else:
            self.history.record_status(call, "success")
            message = Message(_serialize_result(result), role="user",
                              metadata=metadata, ignore_in_display=True)
        finally:
            with self._lock:
                if self._generation == generation:
                    self.current_tool_call = None

        log = self._append(message, when=self._same_generation(generation))
        if log is None:
            _log.info("Dropped result of %s: cancelled while running", call.name)
            return
        self._start_turn(log, generation)

    # ── Lifecycle ──

    def cancel_turn(self):
        with self._lock:
            turn, self._turn = self._turn, None
            self._generation += 1
            self.is_processing = False
            self.thinking = ""
            self.content = ""
            self.current_tool_call = None
            self.pending_tool_call = None
            self._pending_signature = None
        if turn is not None:
            turn.token.cancel()
        self._notify()

    def start_new_session(self) -> str:
        with self._lock:
            self.session_id = session_id_for_directory(self.directory)
        return self.session_id

    def reset(self):
        self.cancel_turn()
        with self._lock:
            self.messages = ()
            self.usage = None
        self.history.clear()
        self._notify()

    def load_session(self, session_id: str) -> bool:
        session = self.store.load(session_id)
        if session is None:
            return False
        self.cancel_turn()
        with self._lock:
            self.messages = tuple(session.messages)
            self.session_id = session_id
            if session.directory:
                self.directory = session.directory
        self._notify()
        return True

    def visible_messages(self) -> List[Message]:
        with self._lock:
            return [m for m in self.messages if not m.ignore_in_display]

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until no turn (including tool follow-ups) is running. ``False`` on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._active == 0, timeout)

    def close(self):
        self.cancel_turn()
        self.writer.flush(timeout=5)
        self.writer.shutdown()


def _error_message(message: str) -> Message:
    return Message(f"Error: {message}", role="system", ignore_in_llm=True, is_error=True)


def _serialize_result(result: Any) -> str:
    return json.dumps(result, indent=2, ensure_ascii=False, default=str)
