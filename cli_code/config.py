"""
Configuration: credentials, endpoints and tool preferences.

Loading order:
  1. ``.env`` files (``~/.cli-code/.env``, then ``./.env``) via python-dotenv
  2. ``~/.cli-code/config.yml`` (or an explicit path)
  3. ``CLI_CODE_*`` environment overrides
"""

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from .logger import get_logger
from .models import Plan

_log = get_logger(__name__)

CONFIG_DIR = Path.home() / ".cli-code"
CONFIG_FILE = CONFIG_DIR / "config.yml"
SESSIONS_DIR = CONFIG_DIR / "sessions"
HISTORY_FILE = CONFIG_DIR / "history.txt"

DEFAULT_WORKER_URL = "http://localhost:8787"
DEFAULT_BACKEND_URL = "http://localhost:8000"
PLAN_MODES = {"lite", "full"}


# ── Configuration metadata and validation ──


@dataclass
class ConfigFieldSpec:
    """Configuration field specification with validation rules."""
    key: str
    field_name: str
    description: str
    value_type: str  # "str", "int", "bool"
    default: Any
    validator: Optional[Callable[[Any], tuple[bool, Any, str]]] = None  # (valid, coerced_value, error_msg)


def _validate_int_range(value: Any, min_val: int, max_val: int) -> tuple[bool, int, str]:
    """Validate integer within range."""
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return False, 0, "Must be an integer"
    if parsed < min_val or parsed > max_val:
        return False, max(min_val, min(max_val, parsed)), f"Must be between {min_val} and {max_val}"
    return True, parsed, ""


def _validate_enum(value: Any, valid_values: set) -> tuple[bool, str, str]:
    """Validate value is in allowed set."""
    val_str = str(value).strip().lower()
    if val_str not in valid_values:
        return False, "", f"Must be one of: {', '.join(sorted(valid_values))}"
    return True, val_str, ""


def _validate_bool(value: Any) -> tuple[bool, bool, str]:
    """Validate boolean value."""
    if isinstance(value, bool):
        return True, value, ""
    if isinstance(value, str):
        val_lower = value.strip().lower()
        if val_lower in ("1", "true", "yes", "on"):
            return True, True, ""
        if val_lower in ("0", "false", "no", "off"):
            return True, False, ""
    return False, False, "Must be true/false, yes/no, on/off, or 1/0"


def _validate_url(value: Any) -> tuple[bool, str, str]:
    url = str(value or "").strip().rstrip("/")
    if not url.startswith(("http://", "https://")):
        return False, "", "Must start with http:// or https://"
    return True, url, ""


CONFIG_FIELDS: Dict[str, ConfigFieldSpec] = {
    "accept-all-tool-calls": ConfigFieldSpec(
        key="accept-all-tool-calls",
        field_name="accept_all_tool_calls",
        description="Run tool calls without asking for confirmation",
        value_type="bool",
        default=False,
        validator=_validate_bool,
    ),
    "command-timeout": ConfigFieldSpec(
        key="command-timeout",
        field_name="command_timeout",
        description="Shell command timeout in seconds",
        value_type="int",
        default=15,
        validator=lambda v: _validate_int_range(v, 1, 300),
    ),
    "verbose": ConfigFieldSpec(
        key="verbose",
        field_name="verbose",
        description="Enable verbose log output",
        value_type="bool",
        default=False,
        validator=_validate_bool,
    ),
    "worker-url": ConfigFieldSpec(
        key="worker-url",
        field_name="worker_url",
        description="Chat streaming endpoint base URL",
        value_type="str",
        default=DEFAULT_WORKER_URL,
        validator=_validate_url,
    ),
    "backend-url": ConfigFieldSpec(
        key="backend-url",
        field_name="backend_url",
        description="Authentication backend base URL",
        value_type="str",
        default=DEFAULT_BACKEND_URL,
        validator=_validate_url,
    ),
}


def validate_config_value(key: str, value: Any) -> tuple[bool, Any, str]:
    """
    Validate a configuration value.

    Returns:
        (is_valid, coerced_value, error_message)
    """
    if key not in CONFIG_FIELDS:
        return False, value, f"Unknown configuration key: {key}"

    spec = CONFIG_FIELDS[key]
    if spec.validator:
        return spec.validator(value)
    if spec.value_type == "int":
        try:
            return True, int(value), ""
        except (TypeError, ValueError):
            return False, spec.default, "Must be an integer"
    if spec.value_type == "bool":
        return _validate_bool(value)
    return True, str(value), ""


@dataclass
class ModelSelection:
    provider: str
    model: str
    sdk: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"provider": self.provider, "model": self.model, "sdk": self.sdk}

    @classmethod
    def from_dict(cls, data: Any) -> Optional["ModelSelection"]:
        if not isinstance(data, dict) or not data.get("model"):
            return None
        return cls(
            provider=str(data.get("provider", "other")),
            model=str(data["model"]),
            sdk=data.get("sdk"),
        )


@dataclass
class Config:
    access_token: Optional[str] = None
    access_token_expiry: Optional[int] = None
    refresh_token: Optional[str] = None
    user: Dict[str, Any] = field(default_factory=dict)
    accept_all_tool_calls: bool = False
    api_keys: Dict[str, str] = field(default_factory=dict)
    selected_model: Optional[ModelSelection] = None
    plan: Plan = field(default_factory=Plan)
    worker_url: str = DEFAULT_WORKER_URL
    backend_url: str = DEFAULT_BACKEND_URL
    command_timeout: int = 15
    verbose: bool = False
    blocked_commands: List[str] = field(
        default_factory=lambda: [
            "rm -rf /", "rm -rf /*", "mkfs", "dd if=", "> /dev/sda",
            "sudo ", "chmod 777", "curl|sh", "curl|bash", "wget|sh",
            ":(){:|:&};:",  # fork bomb
        ]
    )
    _config_source: str = ""

    def __post_init__(self):
        self._lock = threading.RLock()

    @classmethod
    def load(cls, path: Optional[str] = None) -> "Config":
        config = cls()
        target = Path(path).expanduser() if path else CONFIG_FILE
        target.parent.mkdir(parents=True, exist_ok=True)

        for env_path in [target.parent / ".env", Path.cwd() / ".env"]:
            if env_path.exists():
                load_dotenv(env_path, override=False)

        config._config_source = str(target)
        if target.exists():
            config._load_yaml(target)
        else:
            config.save()

        config._apply_env()
        return config

    def _load_yaml(self, filepath: Path):
        try:
            with open(filepath, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            _log.warning("Could not read %s: %s", filepath, e)
            return
        if not isinstance(data, dict):
            _log.warning("Ignoring malformed config file %s", filepath)
            return

        self.access_token = data.get("access-token")
        self.access_token_expiry = data.get("access-token-expiry")
        self.refresh_token = data.get("refresh-token")
        self.user = data.get("user") or {}
        self.accept_all_tool_calls = _validate_bool(data.get("accept-all-tool-calls", False))[1]
        raw_keys = data.get("api-keys") or {}
        self.api_keys = {str(k): str(v) for k, v in raw_keys.items() if v} if isinstance(raw_keys, dict) else {}
        self.selected_model = ModelSelection.from_dict(data.get("selected-model"))
        self.plan = Plan.from_dict(data.get("plan"))
        valid, mode, _ = _validate_enum(self.plan.mode, PLAN_MODES)
        self.plan.mode = mode if valid else "lite"
        self.worker_url = str(data.get("worker-url") or DEFAULT_WORKER_URL).rstrip("/")
        self.backend_url = str(data.get("backend-url") or DEFAULT_BACKEND_URL).rstrip("/")
        valid, timeout, _ = _validate_int_range(data.get("command-timeout", 15), 1, 300)
        self.command_timeout = timeout if valid else 15
        self.verbose = _validate_bool(data.get("verbose", False))[1]
        if "blocked-commands" in data:
            self.blocked_commands = list(data["blocked-commands"] or [])

    def _apply_env(self):
        env_map = {
            "CLI_CODE_WORKER_URL": ("worker_url", lambda v: v.rstrip("/")),
            "CLI_CODE_BACKEND_URL": ("backend_url", lambda v: v.rstrip("/")),
            "CLI_CODE_VERBOSE": ("verbose", lambda v: v.lower() in ("true", "1")),
        }
        for env_var, (attr, conv) in env_map.items():
            val = os.environ.get(env_var)
            if val:
                setattr(self, attr, conv(val))

    def to_data(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "accept-all-tool-calls": self.accept_all_tool_calls,
            "api-keys": dict(self.api_keys),
            "plan": {"mode": self.plan.mode, "add-ons": list(self.plan.add_ons)},
            "worker-url": self.worker_url,
            "backend-url": self.backend_url,
            "command-timeout": self.command_timeout,
            "verbose": self.verbose,
            "blocked-commands": list(self.blocked_commands),
        }
        optional = {
            "access-token": self.access_token,
            "access-token-expiry": self.access_token_expiry,
            "refresh-token": self.refresh_token,
            "user": self.user or None,
            "selected-model": self.selected_model.to_dict() if self.selected_model else None,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data

    def save(self, filepath: Optional[str] = None):
        target = Path(filepath) if filepath else (
            Path(self._config_source) if self._config_source else CONFIG_FILE
        )
        with self._lock:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "w", encoding="utf-8") as f:
                yaml.safe_dump(self.to_data(), f, default_flow_style=False, sort_keys=False)

    def update(self, **fields: Any):
        """Merge ``fields`` into the config and write it back."""
        with self._lock:
            for name, value in fields.items():
                if not hasattr(self, name) or name.startswith("_"):
                    raise AttributeError(f"Unknown config field: {name}")
                setattr(self, name, value)
            self.save()

    def set_value(self, key: str, value: Any) -> tuple[bool, str]:
        """Validate and persist one ``CONFIG_FIELDS`` entry (``/settings``)."""
        valid, coerced, error = validate_config_value(key, value)
        if not valid:
            return False, error
        self.update(**{CONFIG_FIELDS[key].field_name: coerced})
        return True, ""

    def api_key_for(self, provider: Optional[str]) -> Optional[str]:
        if not provider:
            return None
        return self.api_keys.get(provider) or os.environ.get(f"{provider.upper()}_API_KEY")

    def set_api_key(self, provider: str, key: Optional[str]):
        keys = dict(self.api_keys)
        if key:
            keys[provider] = key
        else:
            keys.pop(provider, None)
        self.update(api_keys=keys)

    def clear_credentials(self):
        self.update(access_token=None, access_token_expiry=None, refresh_token=None, user={})

    @property
    def is_logged_in(self) -> bool:
        return bool(self.access_token)

    def summary(self) -> Dict[str, str]:
        model = self.selected_model
        return {
            "Config file": self._config_source or str(CONFIG_FILE),
            "Worker URL": self.worker_url,
            "Backend URL": self.backend_url,
            "Logged in": "yes" if self.is_logged_in else "no",
            "Model": f"{model.model} ({model.provider})" if model else "(none)",
            "Plan": self.plan.mode,
            "Auto-accept tools": "on" if self.accept_all_tool_calls else "off",
            "API keys": ", ".join(sorted(self.api_keys)) or "(none)",
            "Command timeout": f"{self.command_timeout}s",
        }
