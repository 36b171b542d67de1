"""Provider registry: maps agent names to AgentProvider instances."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .base import AgentProvider, Transport
from .claude_provider import ClaudeProvider
from .codex_provider import CodexProvider
from .gemini_provider import GeminiProvider

if TYPE_CHECKING:
    from ..config import EngineConfig
    from ..yaml_config import AgentConfig

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registry of available agent providers.

    Maps short names (e.g. 'codex', 'claude') to provider instances.
    """

    def __init__(self) -> None:
        self._providers: dict[str, AgentProvider] = {}

    def register(self, name: str, provider: AgentProvider) -> None:
        """Register a provider by name."""
        self._providers[name] = provider
        logger.info(
            "Provider registered: %s (transport=%s, available=%s)",
            name,
            provider.transport.value,
            provider.is_available(),
        )

    def get(self, name: str) -> AgentProvider | None:
        """Get a provider by name, or None if not registered."""
        return self._providers.get(name)

    def get_or_raise(self, name: str) -> AgentProvider:
        """Get a provider by name, raising KeyError if not found."""
        provider = self._providers.get(name)
        if provider is None:
            available = ", ".join(self._providers.keys())
            raise KeyError(
                f"Provider '{name}' not found. "
                f"Available: {available or 'none'}"
            )
        return provider

    def list_names(self) -> list[str]:
        """Return all registered provider names."""
        return list(self._providers.keys())


_PROVIDER_TYPES = {
    "codex": CodexProvider,
    "claude": ClaudeProvider,
    "gemini": GeminiProvider,
}


def build_provider_registry(
    config: EngineConfig | None = None,
    agents: dict[str, AgentConfig] | None = None,
) -> ProviderRegistry:
    """Build a registry with codex, claude and gemini, applying overrides."""
    agents = agents or {}
    registry = ProviderRegistry()
    for name, provider_cls in _PROVIDER_TYPES.items():
        agent_cfg = agents.get(name)
        command = (agent_cfg.command if agent_cfg and agent_cfg.command else name)
        kwargs = {}
        if agent_cfg and agent_cfg.transport and name != "gemini":
            kwargs["transport"] = Transport(agent_cfg.transport)
        if name == "codex" and config is not None:
            kwargs["sandbox_mode"] = config.codex_sandbox_mode
            kwargs["approval_policy"] = config.codex_approval_policy
            kwargs["interactive_sessions"] = config.codex_interactive_new_sessions
        registry.register(name, provider_cls(command, **kwargs))
    return registry
