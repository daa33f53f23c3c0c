"""File tools: list, read, write and grep relative to the working directory."""

import subprocess
from pathlib import Path

from ..errors import AgentError
from ..logger import get_logger

_log = get_logger(__name__)

GREP_TIMEOUT = 20


class FileOperationError(AgentError):
    pass


class FileOps:
    SKIP_DIRS = {
        ".git", ".svn", ".hg", ".venv", "venv",
        "node_modules", "__pycache__", ".mypy_cache",
        ".pytest_cache", ".tox", "dist", "build",
    }

    def __init__(self, cwd: str):
        self.cwd = Path(cwd).resolve()

    def _resolve(self, path: str) -> Path:
        if not path or not isinstance(path, str):
            raise FileOperationError("Invalid file path: Path must be a non-empty string")
        p = Path(path.strip()).expanduser()
        if not p.is_absolute():
            p = self.cwd / p
        return p

    def check_current_directory(self) -> str:
        return f"Current directory: {self.cwd}"

    def list_files(self, path: str) -> str:
        dp = self._resolve(path)
        if not dp.exists():
            raise FileOperationError(f"Not found: {path}")
        if not dp.is_dir():
            raise FileOperationError(f"Not a directory: {path}")
        names = sorted(entry.name for entry in dp.iterdir())
        return f"Files in {dp}: {','.join(names)}"

    def read_file(self, path: str) -> str:
        fp = self._resolve(path)
        if not fp.exists():
            raise FileOperationError(f"File not found: {path}")
        if not fp.is_file():
            raise FileOperationError(f"Not a file: {path}")
        try:
            content = fp.read_text(encoding="utf-8")
        except UnicodeDecodeError:
            raise FileOperationError(f"Cannot read binary file: {path}")
        return f"File {fp} read successfully: {content}"

    def write_file(self, path: str, content) -> str:
        if content is None:
            raise FileOperationError("Invalid content: Content cannot be null or undefined")
        fp = self._resolve(path)
        fp.parent.mkdir(parents=True, exist_ok=True)
        fp.write_text(str(content), encoding="utf-8")
        _log.info("Wrote %s (%d chars)", fp, len(str(content)))
        return f"File {fp} written successfully"

    def grep_search(self, term: str, path: str) -> str:
        if not term or not isinstance(term, str):
            raise FileOperationError("Invalid search term: Search term must be a non-empty string")
        fp = self._resolve(path)
        cmd = ["grep", "-rnI", "--color=never"]
        for d in sorted(self.SKIP_DIRS):
            cmd.extend(["--exclude-dir", d])
        cmd.extend(["--", term, str(fp)])

        try:
            result = subprocess.run(cmd, capture_output=True, text=True,
                                    timeout=GREP_TIMEOUT, cwd=str(self.cwd))
        except subprocess.TimeoutExpired:
            raise FileOperationError(f"Grep search timed out after {GREP_TIMEOUT}s")

        if result.returncode == 1:
            return f"No matches for: {term}"
        if result.returncode != 0:
            raise FileOperationError(f"Failed to grep search: {result.stderr.strip()}")
        return f"Grep search result: {result.stdout}"
