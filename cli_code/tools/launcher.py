"""Open files and URLs with the desktop's default application."""

from pathlib import Path

import click

from ..errors import AgentError
from ..logger import get_logger

_log = get_logger(__name__)


class LaunchError(AgentError):
    pass


class Launcher:
    def __init__(self, cwd: str):
        self.cwd = Path(cwd).resolve()

    def open_file(self, file_path) -> str:
        if not isinstance(file_path, str) or not file_path.strip():
            raise LaunchError("Invalid file path: Path must be a non-empty string")
        target = self.cwd / Path(file_path).expanduser()
        _log.info("Opening %s", target)
        code = click.launch(str(target))
        if code != 0:
            raise LaunchError(f"Failed to open file: launcher exited with {code}")
        return f"File {file_path} opened successfully"

    def open_browser(self, url) -> str:
        if not isinstance(url, str) or not url.strip():
            raise LaunchError("Invalid URL: URL must be a non-empty string")
        _log.info("Opening browser at %s", url)
        code = click.launch(url)
        if code != 0:
            raise LaunchError(f"Failed to open browser: launcher exited with {code}")
        return "Browser opened successfully"
