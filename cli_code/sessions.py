"""Session persistence: one JSON document per session id, written off-thread."""

import base64
import json
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

from .config import SESSIONS_DIR
from .logger import get_logger
from .models import Message, Session

_log = get_logger(__name__)

EXPORTS_DIR = SESSIONS_DIR.parent / "exports"


def new_session_id(now: Optional[datetime] = None) -> str:
    """UTC timestamp id, e.g. ``2025-01-31T09-15-02``."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")


def session_id_for_directory(directory: str, now: Optional[datetime] = None) -> str:
    """Timestamp id suffixed with a short tag derived from ``directory``."""
    tag = base64.urlsafe_b64encode(directory.encode("utf-8")).decode("ascii")[:8]
    return f"{new_session_id(now)}-{tag}"


class SessionStore:
    """Session files under ``sessions_dir`` named ``<session_id>.json``."""

    def __init__(self, sessions_dir: Optional[Path] = None):
        self.sessions_dir = Path(sessions_dir) if sessions_dir else SESSIONS_DIR

    def _ensure_dir(self):
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    def save(self, messages: Sequence[Message], directory: str,
             session_id: Optional[str] = None) -> str:
        """Write the whole log for ``session_id``. Returns the id used."""
        self._ensure_dir()
        session_id = session_id or new_session_id()
        session = Session(date=session_id, messages=tuple(messages), directory=directory)
        with open(self._path(session_id), "w", encoding="utf-8") as f:
            json.dump(session.to_dict(), f, ensure_ascii=False, indent=2)
        return session_id

    def load(self, session_id: str) -> Optional[Session]:
        path = self._path(session_id)
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return Session.from_dict(data)
        except (OSError, ValueError, AttributeError) as e:
            _log.error("Error loading session %s: %s", session_id, e)
            return None

    def list(self) -> List[Session]:
        """All readable sessions, newest first."""
        self._ensure_dir()
        sessions = []
        for path in self.sessions_dir.glob("*.json"):
            session = self.load(path.stem)
            if session is not None:
                sessions.append(session)
        return sorted(sessions, key=lambda s: s.date, reverse=True)

    def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as e:
            _log.error("Error deleting session %s: %s", session_id, e)
            return False
        return True

    def export_markdown(self, session_id: str, output_path: Optional[str] = None) -> Optional[str]:
        """Render a session as Markdown.

        Args:
            session_id: Session to export
            output_path: Optional output path (default: exports/<session_id>.md)

        Returns:
            Output filepath if successful, None otherwise
        """
        session = self.load(session_id)
        if session is None:
            return None

        if not output_path:
            EXPORTS_DIR.mkdir(parents=True, exist_ok=True)
            output_path = str(EXPORTS_DIR / f"{session_id}.md")

        lines = [
            f"# Session {session.date}",
            "",
            f"- **Directory**: {session.directory or 'unknown'}",
            f"- **Messages**: {len(session.messages)}",
            "",
            "---",
            "",
        ]
        for i, msg in enumerate(session.messages, 1):
            if msg.ignore_in_display:
                continue
            lines.append(f"### Message {i}: {msg.role.capitalize()}")
            lines.append("")
            if msg.metadata and msg.metadata.tool_calls:
                lines.append("**Tool Calls:**")
                lines.append("")
                for tc in msg.metadata.tool_calls:
                    args = json.dumps(tc.args, ensure_ascii=False)
                    lines.append(f"- `{tc.name}`: {args[:100]}")
                lines.append("")
            if msg.content:
                lines.append(msg.content)
                lines.append("")

        try:
            with open(output_path, "w", encoding="utf-8") as f:
                f.write("\n".join(lines))
        except OSError as e:
            _log.error("Error exporting session %s: %s", session_id, e)
            return None
        return output_path


class BackgroundWriter:
    """Single worker that runs persistence jobs in submission order.

    A failed job is logged and dropped; it never reaches the caller.
    """

    def __init__(self):
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="session-writer")
        self._pending: List[Future] = []

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        future = self._executor.submit(self._run, fn, *args, **kwargs)
        self._pending = [f for f in self._pending if not f.done()]
        self._pending.append(future)
        return future

    @staticmethod
    def _run(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            _log.error("Background write failed: %s", e)
            return None

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued writes. ``False`` if some are still running."""
        pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self):
        self._executor.shutdown(wait=True)
