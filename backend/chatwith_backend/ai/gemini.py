from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from google import genai
from google.genai import types

from .prompts import DOCUMENT_ASSISTANT_PREAMBLE, create_rag_system_prompt, create_youtube_system_prompt

DEFAULT_MODEL = "gemini-2.0-flash"

IMAGE_FILE_SENTINEL = "IMAGE_FILE"
YOUTUBE_TRANSCRIPT_SENTINEL = "YOUTUBE_TRANSCRIPT"

# Generation settings are fixed for every session.
TEMPERATURE = 0.7
TOP_K = 40
TOP_P = 0.95
MAX_OUTPUT_TOKENS = 8192

_SAFETY_CATEGORIES = (
    types.HarmCategory.HARM_CATEGORY_HARASSMENT,
    types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
    types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
    types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
)

log = logging.getLogger(__name__)

_client_cache: dict[str, Any] = {}


class GeminiAPIError(RuntimeError):
    """Raised when the Gemini API responds with an error or nothing usable."""


class ContentKind(str, Enum):
    IMAGE = "image"
    VIDEO_TRANSCRIPT = "video-transcript"
    DOCUMENT = "generic-document"


@dataclass(slots=True)
class ChatMessage:
    role: str
    content: str

    @classmethod
    def from_value(cls, value: Union["ChatMessage", Mapping[str, Any]]) -> "ChatMessage":
        if isinstance(value, ChatMessage):
            return value
        return cls(role=str(value.get("role") or "user"), content=str(value.get("content") or ""))

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True)
class ImageData:
    buffer: bytes
    mime_type: str


@dataclass(slots=True)
class GeminiReply:
    """Outcome of one conversation round.

    ``error`` is ``None`` on success. On failure ``text`` still holds an
    apology that embeds ``detail`` so the UI has something to show, but callers
    should branch on ``ok`` rather than inspect the text.
    """

    text: str
    error: Optional[str] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, error: str, detail: str) -> "GeminiReply":
        return cls(
            text=f"I'm sorry, I encountered an error while processing your request. {detail}",
            error=error,
            detail=detail,
        )


def is_gemini_configured(api_key: Optional[str]) -> bool:
    return bool(api_key and api_key.strip())


def _get_client(api_key: str) -> Any:
    client = _client_cache.get(api_key)
    if client is None:
        client = _client_cache[api_key] = genai.Client(api_key=api_key)
    return client


def build_generation_config() -> types.GenerateContentConfig:
    return types.GenerateContentConfig(
        temperature=TEMPERATURE,
        top_k=TOP_K,
        top_p=TOP_P,
        max_output_tokens=MAX_OUTPUT_TOKENS,
        safety_settings=[
            types.SafetySetting(category=category, threshold=types.HarmBlockThreshold.BLOCK_NONE)
            for category in _SAFETY_CATEGORIES
        ],
    )


def create_chat_session(api_key: str, model: str = DEFAULT_MODEL) -> Any:
    """Open a fresh chat. History always starts empty; context is rebuilt by replaying turns."""
    return _get_client(api_key).chats.create(model=model, config=build_generation_config(), history=[])


def classify_content(
    file_content: Optional[str],
    messages: Sequence[ChatMessage],
    file_type: Optional[str] = None,
) -> Optional[ContentKind]:
    if not file_content:
        return None

    # A known file type is authoritative; the sentinels and the message heuristic
    # only apply when the caller could not say what the content is.
    if file_type == "image":
        return ContentKind.IMAGE
    if file_type == "youtube":
        return ContentKind.VIDEO_TRANSCRIPT
    if file_type:
        return ContentKind.DOCUMENT

    if file_content == IMAGE_FILE_SENTINEL:
        return ContentKind.IMAGE
    if file_content == YOUTUBE_TRANSCRIPT_SENTINEL or (messages and "YouTube" in messages[-1].content):
        return ContentKind.VIDEO_TRANSCRIPT
    return ContentKind.DOCUMENT


def select_system_prompt(kind: Optional[ContentKind], file_content: Optional[str]) -> Optional[str]:
    if kind is None or kind is ContentKind.IMAGE or not file_content:
        return None
    if kind is ContentKind.VIDEO_TRANSCRIPT:
        return create_youtube_system_prompt(file_content)
    return create_rag_system_prompt(file_content)


def plan_turns(
    messages: Sequence[ChatMessage],
    system_prompt: Optional[str] = None,
    image_data: Optional[ImageData] = None,
) -> list[list[types.Part]]:
    """Return the outgoing turns, in send order, for one conversation round.

    The optional instruction comes first, then every earlier user turn, then the
    final message (with the image attached, if any). Model turns are not resent:
    the session produces its own replies while the user turns are replayed.
    """
    turns: list[list[types.Part]] = []
    if system_prompt:
        turns.append([types.Part.from_text(text=f"{DOCUMENT_ASSISTANT_PREAMBLE}{system_prompt}")])

    *earlier, last = messages
    for message in earlier:
        if message.role != "user" or not message.content:
            continue
        turns.append([types.Part.from_text(text=message.content)])

    final_parts = [types.Part.from_text(text=last.content)]
    if image_data is not None:
        final_parts.append(types.Part.from_bytes(data=image_data.buffer, mime_type=image_data.mime_type))
    turns.append(final_parts)
    return turns


def _response_text(response: Any) -> str:
    try:
        text = getattr(response, "text", None)
    except ValueError:
        text = None
    return text.strip() if isinstance(text, str) else ""


def send_message_to_gemini(
    messages: Iterable[Union[ChatMessage, Mapping[str, Any]]],
    file_content: Optional[str] = None,
    image_data: Optional[ImageData] = None,
    *,
    api_key: Optional[str],
    model: str = DEFAULT_MODEL,
    file_type: Optional[str] = None,
) -> GeminiReply:
    """Produce the model's reply to the last message of ``messages``."""
    history = [ChatMessage.from_value(message) for message in messages]

    if not is_gemini_configured(api_key):
        log.error("Gemini API key is not configured")
        return GeminiReply.failure("not_configured", "Gemini API key is not configured")
    if not history:
        return GeminiReply.failure("invalid_request", "There is no message to answer")

    log.info(
        "Sending message to Gemini (file content: %s, image: %s, messages: %d)",
        bool(file_content),
        image_data is not None,
        len(history),
    )

    try:
        kind = classify_content(file_content, history, file_type)
        system_prompt = select_system_prompt(kind, file_content)
        if kind is ContentKind.IMAGE:
            log.debug("Image content, no system prompt")
        turns = plan_turns(history, system_prompt, image_data)

        chat = create_chat_session(api_key, model)
        *replayed, final = turns
        for index, parts in enumerate(replayed):
            response = chat.send_message(parts)
            if index == 0 and system_prompt:
                log.debug("System prompt acknowledged: %s...", _response_text(response)[:50])

        response = chat.send_message(final)
        reply = _response_text(response)
        if not reply:
            raise GeminiAPIError("Gemini returned an empty response")
    except Exception as exc:
        log.exception("Error in Gemini chat")
        return GeminiReply.failure("ai_error", str(exc) or exc.__class__.__name__)

    log.info("Received response from Gemini (%d chars)", len(reply))
    return GeminiReply(reply)
