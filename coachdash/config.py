"""CoachDash configuration."""
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("coachdash")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _load_overlay(path: str | None) -> dict[str, Any]:
    """Read the optional YAML settings file. Env vars still win over it."""
    if not path:
        return {}
    file_path = Path(path)
    if not file_path.exists():
        logger.warning(f"Config file not found: {file_path}")
        return {}
    try:
        data = yaml.safe_load(file_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        logger.error(f"Failed to parse config file {file_path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


_OVERLAY = _load_overlay(os.getenv("COACHDASH_CONFIG_FILE"))
_CONTEXT_FILE = _OVERLAY.get("context") or {}
_WEBSOCKET_FILE = _OVERLAY.get("websocket") or {}

PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Database
DB_PATH = os.getenv("COACHDASH_DB_PATH", str(PROJECT_ROOT / "data" / "coachdash.db"))

# Server settings
HOST = os.getenv("COACHDASH_HOST", str(_WEBSOCKET_FILE.get("host", "0.0.0.0")))
PORT = _env_int("COACHDASH_PORT", int(_WEBSOCKET_FILE.get("port", 8180)))
FRONTEND_ORIGIN = os.getenv("COACHDASH_FRONTEND_ORIGIN", "http://localhost:3000")

# Realtime hub
WS_AUTH_TOKEN = os.getenv("COACHDASH_WS_AUTH_TOKEN", str(_WEBSOCKET_FILE.get("auth_token", "myworkflow-secret")))
WS_HEARTBEAT_SECONDS = _env_int("COACHDASH_WS_HEARTBEAT_SECONDS", int(_WEBSOCKET_FILE.get("heartbeat_seconds", 30)))
WS_SEND_QUEUE_SIZE = _env_int("COACHDASH_WS_SEND_QUEUE_SIZE", 256)
WS_CLIENT_URL = os.getenv("COACHDASH_WS_URL", f"ws://localhost:{PORT}/ws")
WS_RECONNECT_ATTEMPTS = _env_int("COACHDASH_WS_RECONNECT_ATTEMPTS", 10)
WS_RECONNECT_BASE_SECONDS = _env_float("COACHDASH_WS_RECONNECT_BASE_SECONDS", 1.0)
WS_RECONNECT_MAX_SECONDS = _env_float("COACHDASH_WS_RECONNECT_MAX_SECONDS", 30.0)

# Context budget
CONTEXT_DEFAULT_BUDGET = _env_int("COACHDASH_CONTEXT_DEFAULT_BUDGET", int(_CONTEXT_FILE.get("default_budget", 100000)))
CONTEXT_WARNING_THRESHOLD = _env_float(
    "COACHDASH_CONTEXT_WARNING_THRESHOLD", float(_CONTEXT_FILE.get("warning_threshold", 0.70))
)
CONTEXT_CRITICAL_THRESHOLD = _env_float(
    "COACHDASH_CONTEXT_CRITICAL_THRESHOLD", float(_CONTEXT_FILE.get("critical_threshold", 0.85))
)

# Workspace inspection
WORKSPACE_ROOT = Path(os.getenv("COACHDASH_WORKSPACE_ROOT", os.getcwd()))
DOCS_DIR = os.getenv("COACHDASH_DOCS_DIR", "docs")
HANDOFF_DIR = os.getenv("COACHDASH_HANDOFF_DIR", "docs/handoffs")
TEST_REPORT_PATH = os.getenv("COACHDASH_TEST_REPORT_PATH", ".coachdash/test-report.json")
DOC_STALE_DAYS = _env_int("COACHDASH_DOC_STALE_DAYS", 14)
WATCHER_ENABLED = _env_bool("COACHDASH_WATCHER_ENABLED", True)

# Advisory agents
AGENTS_ENABLED = _env_bool("COACHDASH_AGENTS_ENABLED", True)
AGENT_TIMEOUT_MS = _env_int("COACHDASH_AGENT_TIMEOUT_MS", 200)
AGENT_MAX_CONTEXT_PERCENT = _env_int("COACHDASH_AGENT_MAX_CONTEXT_PERCENT", 50)

# Observability
OTEL_ENABLED = _env_bool("COACHDASH_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("COACHDASH_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("COACHDASH_OTEL_SERVICE_NAME", "coachdash")
PROM_PORT = _env_int("COACHDASH_PROM_PORT", 9464)


def validate_settings() -> None:
    """Reject budget settings that would make usage tracking meaningless."""
    if CONTEXT_DEFAULT_BUDGET < 1000:
        raise ValueError("COACHDASH_CONTEXT_DEFAULT_BUDGET must be at least 1000 tokens")
    for name, value in (
        ("COACHDASH_CONTEXT_WARNING_THRESHOLD", CONTEXT_WARNING_THRESHOLD),
        ("COACHDASH_CONTEXT_CRITICAL_THRESHOLD", CONTEXT_CRITICAL_THRESHOLD),
    ):
        if not 0 < value <= 1:
            raise ValueError(f"{name} must be within (0, 1], got {value}")
    if CONTEXT_WARNING_THRESHOLD >= CONTEXT_CRITICAL_THRESHOLD:
        raise ValueError("Context warning threshold must be below the critical threshold")
