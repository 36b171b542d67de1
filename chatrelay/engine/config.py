"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via RELAY_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# Optional async callback for live progress rendering.
# Signature: async def callback(event: ProgressEvent) -> None
EventCallback = Callable[[Any], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: Any,
) -> None:
    """Fire an event callback if set, logging and swallowing errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        # Never let callback errors break a turn
        logger.debug("Progress callback raised", exc_info=True)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _default_codex_home() -> Path:
    env_home = os.getenv("CODEX_HOME", "").strip()
    if env_home:
        return Path(env_home)
    return Path.home() / ".codex"


@dataclass
class EngineConfig:
    """Turn orchestration configuration."""

    default_agent: str = "codex"
    # Global fallback project directory ("" means the process cwd).
    default_cwd: str = ""

    # Wall-clock budget for one turn.
    agent_timeout_seconds: float = 600.0
    # Hard cap for interactive "create a session" runs.
    interactive_session_cap_seconds: float = 45.0
    max_buffer_bytes: int = 10 * 1024 * 1024

    # Session discovery after a new-session turn.
    session_resolve_attempts: int = 16
    session_resolve_interval_seconds: float = 0.25
    snapshot_limit: int = 50
    # How often the interactive path checks the new session log for a
    # completed turn.
    interactive_poll_interval_seconds: float = 1.0
    # Timeout for `gemini --list-sessions` style lookups.
    session_list_timeout_seconds: float = 30.0

    # Create new codex sessions through the interactive TUI so they show
    # up in `codex resume`.
    codex_interactive_new_sessions: bool = True
    codex_sandbox_mode: str = "workspace-write"
    codex_approval_policy: str = "never"

    codex_home: Path = field(default_factory=_default_codex_home)
    state_dir: Path = field(
        default_factory=lambda: Path.home() / ".chatrelay"
    )

    # Per-agent model override, e.g. {"codex": "gpt-5.2-codex"}.
    models: dict[str, str] = field(default_factory=dict)
    # Reasoning effort passed to agents that accept one.
    thinking: str | None = None

    log_level: str = "INFO"

    @property
    def codex_sessions_dir(self) -> Path:
        return self.codex_home / "sessions"

    @property
    def codex_index_path(self) -> Path:
        return self.codex_home / "state_5.sqlite"

    @property
    def interactive_timeout_seconds(self) -> float:
        """Timeout for an interactive new-session run."""
        return min(
            self.agent_timeout_seconds,
            self.interactive_session_cap_seconds,
        )

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from RELAY_* environment variables."""
        relay_vars = {
            k: v for k, v in os.environ.items() if k.startswith("RELAY_")
        }
        if relay_vars:
            logger.info(
                "EngineConfig.from_env: RELAY_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(relay_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no RELAY_* env vars set, using defaults")

        models: dict[str, str] = {}
        for agent in ("codex", "claude", "gemini"):
            model = os.getenv(f"RELAY_{agent.upper()}_MODEL", "").strip()
            if model:
                models[agent] = model

        codex_home = os.getenv("RELAY_CODEX_HOME", "").strip()
        state_dir = os.getenv("RELAY_STATE_DIR", "").strip()

        config = cls(
            default_agent=os.getenv(
                "RELAY_DEFAULT_AGENT", cls.default_agent
            ),
            default_cwd=os.getenv("RELAY_DEFAULT_CWD", cls.default_cwd),
            agent_timeout_seconds=float(os.getenv(
                "RELAY_AGENT_TIMEOUT",
                str(cls.agent_timeout_seconds),
            )),
            interactive_session_cap_seconds=float(os.getenv(
                "RELAY_INTERACTIVE_SESSION_CAP",
                str(cls.interactive_session_cap_seconds),
            )),
            max_buffer_bytes=int(os.getenv(
                "RELAY_MAX_BUFFER_BYTES", str(cls.max_buffer_bytes)
            )),
            session_resolve_attempts=int(os.getenv(
                "RELAY_SESSION_RESOLVE_ATTEMPTS",
                str(cls.session_resolve_attempts),
            )),
            session_resolve_interval_seconds=float(os.getenv(
                "RELAY_SESSION_RESOLVE_INTERVAL",
                str(cls.session_resolve_interval_seconds),
            )),
            codex_interactive_new_sessions=_env_bool(
                "RELAY_CODEX_INTERACTIVE_NEW_SESSIONS",
                cls.codex_interactive_new_sessions,
            ),
            codex_home=Path(codex_home) if codex_home else _default_codex_home(),
            state_dir=(
                Path(state_dir) if state_dir
                else Path.home() / ".chatrelay"
            ),
            models=models,
            thinking=os.getenv("RELAY_THINKING") or None,
            log_level=os.getenv("RELAY_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig loaded: agent=%s timeout=%.0fs interactive_cap=%.0fs "
            "resolve=%dx%.2fs codex_home=%s",
            config.default_agent,
            config.agent_timeout_seconds,
            config.interactive_session_cap_seconds,
            config.session_resolve_attempts,
            config.session_resolve_interval_seconds,
            config.codex_home,
        )
        return config
