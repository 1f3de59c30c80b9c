"""Core components for remedy."""

from remedy.core.client import RemedyClient, RemedyClientError
from remedy.core.config import EngineSettings, SettingsManager

__all__ = [
    "EngineSettings",
    "RemedyClient",
    "RemedyClientError",
    "SettingsManager",
]
