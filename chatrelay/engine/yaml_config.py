"""YAML configuration loader.

Loads a single YAML file as an alternative to RELAY_* env vars. When no
YAML is given, EngineConfig.from_env() is used as before.

Example YAML:
    engine:
      default_agent: codex
      default_cwd: /path/to/project
      agent_timeout_seconds: 900
      codex_interactive_new_sessions: true
      state_dir: ~/.chatrelay

    agents:
      codex:
        command: /opt/codex/bin/codex
        transport: stream
        model: gpt-5.2-codex
      claude:
        transport: batch
      gemini:
        model: gemini-2.5-pro
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .config import EngineConfig
from .providers.base import Transport

logger = logging.getLogger(__name__)

_PATH_FIELDS = frozenset({"codex_home", "state_dir"})


@dataclass
class AgentConfig:
    """Per-agent overrides."""
    command: str | None = None  # path to the CLI binary
    transport: str | None = None  # "stream" or "batch"
    model: str | None = None


@dataclass
class RelayConfig:
    """Parsed YAML configuration."""
    engine: EngineConfig
    agents: dict[str, AgentConfig] = field(default_factory=dict)


def _parse_engine(engine_raw: dict) -> EngineConfig:
    known = {f.name: f for f in dataclasses.fields(EngineConfig)}
    kwargs = {}
    for key, value in engine_raw.items():
        if key not in known:
            logger.warning("Ignoring unknown engine setting '%s'", key)
            continue
        if value is None:
            continue
        if key in _PATH_FIELDS:
            value = Path(str(value)).expanduser()
        elif key == "models":
            value = {str(k): str(v) for k, v in (value or {}).items()}
        kwargs[key] = value
    return EngineConfig(**kwargs)


def _parse_agent(name: str, cfg: dict | None) -> AgentConfig:
    cfg = cfg or {}
    transport = cfg.get("transport")
    if transport is not None:
        try:
            transport = Transport(str(transport).strip().lower()).value
        except ValueError:
            raise ValueError(
                f"Agent '{name}': transport must be 'stream' or 'batch', "
                f"got {transport!r}"
            ) from None
    return AgentConfig(
        command=cfg.get("command"),
        transport=transport,
        model=cfg.get("model"),
    )


def load_yaml_config(path: str | Path) -> RelayConfig:
    """Load and parse a YAML config file.

    Agent ``model`` entries are merged into ``engine.models`` unless the
    engine section already names a model for that agent.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        logger.info("load_yaml_config: successfully read and parsed %s", path)
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error(
            "load_yaml_config: YAML parse error in %s: %s",
            path, exc
        )
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    engine = _parse_engine(raw.get("engine") or {})

    agents: dict[str, AgentConfig] = {}
    for name, cfg in (raw.get("agents") or {}).items():
        agent = _parse_agent(str(name), cfg)
        agents[str(name)] = agent
        if agent.model and str(name) not in engine.models:
            engine.models[str(name)] = agent.model

    logger.info(
        "YAML config loaded: default_agent=%s agents=%s",
        engine.default_agent, ", ".join(sorted(agents)) or "(none)",
    )
    return RelayConfig(engine=engine, agents=agents)
