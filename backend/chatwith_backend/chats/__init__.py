from .routes import chats_bp

__all__ = ["chats_bp"]
