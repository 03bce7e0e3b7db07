"""
Conversation state: message history, context items and persistence.
"""

from .manager import ConversationManager

__all__ = ["ConversationManager"]
