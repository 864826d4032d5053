"""
brain/ — Completion Service boundary

Public API:
    from fitcoach.brain import BaseCompletionClient, OpenAICompletionClient, CancelToken
"""

from fitcoach.brain.completion import BaseCompletionClient, CancelToken, ChunkCallback
from fitcoach.brain.openai_client import OpenAICompletionClient

__all__ = [
    "BaseCompletionClient",
    "OpenAICompletionClient",
    "CancelToken",
    "ChunkCallback",
]
