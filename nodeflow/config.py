"""Shared nodeflow configuration utilities.

Centralises reading of ~/.nodeflow/configuration.json so that the executor,
the CLI, and the webhook server agree on defaults.

Example file:
    {
        "engine": {"parallel_branches": true, "max_steps": 10000},
        "storage": {"token_dir": "~/.nodeflow/tokens"},
        "webhook": {"host": "127.0.0.1", "port": 8080, "secret": null}
    }
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

NODEFLOW_HOME = Path.home() / ".nodeflow"
NODEFLOW_CONFIG_FILE = NODEFLOW_HOME / "configuration.json"

DEFAULT_MAX_STEPS = 10_000
DEFAULT_MAX_NODE_RUNS = 1_000


def get_nodeflow_config() -> dict[str, Any]:
    """Load configuration from ~/.nodeflow/configuration.json."""
    if not NODEFLOW_CONFIG_FILE.exists():
        return {}
    try:
        with open(NODEFLOW_CONFIG_FILE, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def _engine_setting(name: str, default: Any) -> Any:
    return get_nodeflow_config().get("engine", {}).get(name, default)


def get_token_dir() -> Path:
    """Directory where suspension tokens are persisted."""
    configured = get_nodeflow_config().get("storage", {}).get("token_dir")
    if configured:
        return Path(configured).expanduser()
    return NODEFLOW_HOME / "tokens"


def get_webhook_settings() -> dict[str, Any]:
    webhook = get_nodeflow_config().get("webhook", {})
    return {
        "host": webhook.get("host", "127.0.0.1"),
        "port": webhook.get("port", 8080),
        "secret": webhook.get("secret"),
    }


# ---------------------------------------------------------------------------
# EngineConfig – shared by the executor and the CLI
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Executor settings loaded from ~/.nodeflow/configuration.json."""

    # Run sibling invocations of one ready set concurrently
    parallel_branches: bool = field(
        default_factory=lambda: _engine_setting("parallel_branches", True)
    )

    # Loop guards
    max_steps: int = field(default_factory=lambda: _engine_setting("max_steps", DEFAULT_MAX_STEPS))
    max_node_runs: int = field(
        default_factory=lambda: _engine_setting("max_node_runs", DEFAULT_MAX_NODE_RUNS)
    )

    # Applied when a node has no timeout of its own
    default_timeout_seconds: float | None = field(
        default_factory=lambda: _engine_setting("default_timeout_seconds", None)
    )

    # Upper bound for a single backoff wait
    max_retry_delay_seconds: float = field(
        default_factory=lambda: _engine_setting("max_retry_delay_seconds", 60.0)
    )

    token_dir: Path = field(default_factory=get_token_dir)
