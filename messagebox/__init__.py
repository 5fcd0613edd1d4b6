"""Conversation messaging for managed marketplace accounts."""

from .config import MessagingConfig, load_config
from .faults import ErrorCode, FaultKind, MessagingError
from .models import Account, ConversationRef, ConversationSnapshot, ConversationSummary, MediaFile, Message, Proxy
from .pipeline import FetchOptions
from .service import MessageService

__all__ = [
    "Account",
    "ConversationRef",
    "ConversationSnapshot",
    "ConversationSummary",
    "ErrorCode",
    "FaultKind",
    "FetchOptions",
    "MediaFile",
    "Message",
    "MessageService",
    "MessagingConfig",
    "MessagingError",
    "Proxy",
    "load_config",
]
