"""Background processes started by the model, tracked by caller-chosen id."""

import shlex
import subprocess
import threading
from pathlib import Path
from typing import Dict

from ..errors import AgentError
from ..logger import get_logger

_log = get_logger(__name__)

STOP_TIMEOUT = 5


class ProcessError(AgentError):
    pass


class ProcessManager:
    def __init__(self, cwd: str):
        self.cwd = Path(cwd).resolve()
        self._processes: Dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def start(self, command: str, process_id: str) -> str:
        if not command or not isinstance(command, str):
            raise ProcessError("Invalid command: Command must be a non-empty string")
        if not process_id or not isinstance(process_id, str):
            raise ProcessError("Invalid process ID: Process ID must be a non-empty string")
        try:
            proc = subprocess.Popen(
                shlex.split(command),
                cwd=str(self.cwd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            raise ProcessError(f"Failed to start background process: {e}")
        with self._lock:
            previous = self._processes.get(process_id)
            self._processes[process_id] = proc
        if previous is not None and previous.poll() is None:
            _log.warning("Process id %s reused while still running (pid %d)", process_id, previous.pid)
        _log.info("Started %s as %s (pid %d)", command, process_id, proc.pid)
        return f"Process started with ID: {process_id}"

    def stop(self, process_id: str) -> str:
        with self._lock:
            proc = self._processes.pop(process_id, None)
        if proc is None:
            raise ProcessError(f"No process found with ID: {process_id}")
        proc.terminate()
        try:
            proc.wait(timeout=STOP_TIMEOUT)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
        return f"Process {process_id} stopped successfully"

    def is_running(self, process_id: str) -> str:
        if not process_id or not isinstance(process_id, str):
            raise ProcessError("Invalid process ID: Process ID must be a non-empty string")
        with self._lock:
            proc = self._processes.get(process_id)
        running = proc is not None and proc.poll() is None
        return f"Process {process_id} is {'running' if running else 'not running'}"

    def stop_all(self):
        with self._lock:
            ids = list(self._processes)
        for process_id in ids:
            try:
                self.stop(process_id)
            except ProcessError:
                continue
