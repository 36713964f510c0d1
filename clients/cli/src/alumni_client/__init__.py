"""Client-side conversation cache and gateway access for alumni direct messaging."""

from .chat_client import ChatClient
from .conversation_state import ConversationState, Notice
from .gateway_client import GatewayApi, GatewayApiError, session_start
from .live import LiveChannel
from .wire import ChatMessage, decode_message, encode_message

__all__ = [
    "ChatClient",
    "ChatMessage",
    "ConversationState",
    "GatewayApi",
    "GatewayApiError",
    "LiveChannel",
    "Notice",
    "decode_message",
    "encode_message",
    "session_start",
]
