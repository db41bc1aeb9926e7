"""
SDK for AI Gen Guard.

Provides admission-controlled OpenAI clients.
"""

from .openai_client import GuardedOpenAI
from .video_backend import OpenAIVideoBackend

__all__ = ["GuardedOpenAI", "OpenAIVideoBackend"]
