"""Chat transcript models owned by the UI layer."""

from .message_model import ChatSender, ChatTranscript, ChatTranscriptEntry

__all__ = ["ChatSender", "ChatTranscript", "ChatTranscriptEntry"]
