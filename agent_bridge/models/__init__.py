"""
Models module for data structures
"""

from .stream_event import StreamEventType, StreamEvent
from .openai import ChatMessage, ChatCompletionRequest

__all__ = [
    'StreamEventType',
    'StreamEvent',
    'ChatMessage',
    'ChatCompletionRequest'
]
