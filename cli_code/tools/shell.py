"""Shell command execution with safety guards."""

import os
import re
import subprocess
from pathlib import Path
from typing import List, Optional

from ..errors import ShellBlockedError, ShellCommandError, ShellTimeoutError
from ..logger import get_logger

_log = get_logger(__name__)

MAX_STDOUT = 8000
MAX_STDERR = 4000


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    half = limit // 2
    return text[:half] + "\n...(truncated)...\n" + text[-half:]


class ShellExecutor:
    """Run model-requested commands in ``cwd``, refusing destructive ones."""

    DANGEROUS_PATTERNS = [
        r"\brm\b\s+-(?:[^\s;|&]*r[^\s;|&]*f|[^\s;|&]*f[^\s;|&]*r)",
        r"\b(?:mkfs(?:\.\w+)?|fdisk|wipefs)\b",
        r"\bdd\b[^\n;|&]*\bif\s*=",
        r"\bchmod\b\s+(?:-\S+\s+)?0?777\b",
        r":\s*\(\s*\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:",
        r"(?:>|>>)\s*/dev/sd[a-z]\d*",
        r"\b(?:curl|wget)\b[^\n;|&]*\|\s*(?:sh|bash|zsh)\b",
    ]

    _SUBSTITUTION_RE = re.compile(r"\$\(([^()]*)\)|`([^`]*)`")

    def __init__(self, cwd: str, blocked_commands: Optional[List[str]] = None, timeout: int = 15):
        self.cwd = Path(cwd).resolve()
        self.timeout = timeout
        self.blocked = [b for b in (blocked_commands or []) if b.strip()]
        self._dangerous_regexes = [re.compile(p, re.IGNORECASE) for p in self.DANGEROUS_PATTERNS]

    @staticmethod
    def _canonicalize(command: str) -> str:
        """Lowercase and strip quoting noise (``r''m``, ``${IFS}``)."""
        normalized = command.lower().replace("\\\n", " ")
        normalized = re.sub(r"\$\{?\s*ifs\s*\}?", " ", normalized)
        normalized = re.sub(r"['\"\\]", "", normalized)
        return re.sub(r"\s+", " ", normalized).strip()

    def _fragments(self, command: str) -> List[str]:
        fragments = [command]
        for match in self._SUBSTITUTION_RE.finditer(command):
            inner = (match.group(1) or match.group(2) or "").strip()
            if inner:
                fragments.append(inner)
        return fragments

    def block_reason(self, command: str) -> Optional[str]:
        for fragment in self._fragments(command):
            canonical = self._canonicalize(fragment)
            compact = canonical.replace(" ", "")
            for blocked in self.blocked:
                rule = self._canonicalize(blocked)
                if rule in canonical or rule.replace(" ", "") in compact:
                    return f"matches blocked command '{blocked}'"
            for pattern in self._dangerous_regexes:
                if pattern.search(fragment) or pattern.search(canonical):
                    return f"matches dangerous pattern '{pattern.pattern}'"
        return None

    def execute(self, command: str) -> str:
        if not command or not isinstance(command, str):
            raise ValueError("Invalid command: Command must be a non-empty string")

        reason = self.block_reason(command)
        if reason:
            _log.warning("Command blocked: %s", reason)
            raise ShellBlockedError(reason)

        _log.info("Executing command: %s", command[:100])
        try:
            result = subprocess.run(
                ["bash", "-c", command],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                cwd=str(self.cwd),
                env={**os.environ, "TERM": "dumb"},
            )
        except subprocess.TimeoutExpired:
            raise ShellTimeoutError(self.timeout)

        if result.returncode != 0:
            raise ShellCommandError(result.returncode, _truncate(result.stderr, MAX_STDERR))
        stdout = _truncate(result.stdout, MAX_STDOUT)
        stderr = _truncate(result.stderr, MAX_STDERR)
        return f"stdout: {stdout}\n  stderr: {stderr}"
