"""EdgeAI Gateway - local HTTP gateway for on-device generative models."""

__version__ = "0.1.0"

from edgeai.core.config import EdgeAIConfig, config

__all__ = [
    "EdgeAIConfig",
    "config",
]
