from .chats import NOT_FOUND_CODE, ChatStore, StoreError

__all__ = ["NOT_FOUND_CODE", "ChatStore", "StoreError"]
