from .gemini import (
    ChatMessage,
    ContentKind,
    GeminiReply,
    ImageData,
    send_message_to_gemini,
)

__all__ = ["ChatMessage", "ContentKind", "GeminiReply", "ImageData", "send_message_to_gemini"]
