"""
Models module for the chat-completion client.

Provides a streaming interface to the conversation service.
"""

from vbot_voice.models.chat_client import (
    CONVERSATION_ID_HEADER,
    ChatClient,
    ChatClientBase,
    ChatReply,
    ChatStream,
    Message,
    Role,
)

__all__ = [
    "ChatClient",
    "ChatClientBase",
    "ChatReply",
    "ChatStream",
    "Message",
    "Role",
    "CONVERSATION_ID_HEADER",
]
