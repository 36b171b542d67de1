"""Agent providers for codex, claude and gemini."""
from .base import AgentProvider, ParsedOutput, StreamRequest, StreamResult, Transport
from .registry import ProviderRegistry, build_provider_registry
from .claude_provider import ClaudeProvider
from .codex_provider import CodexProvider
from .gemini_provider import GeminiProvider

__all__ = [
    "AgentProvider",
    "ParsedOutput",
    "StreamRequest",
    "StreamResult",
    "Transport",
    "ProviderRegistry",
    "build_provider_registry",
    "ClaudeProvider",
    "CodexProvider",
    "GeminiProvider",
]
