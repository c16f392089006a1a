"""Instruction texts used to seed a Gemini chat with file context."""

DOCUMENT_ASSISTANT_PREAMBLE = (
    "I need you to act as a document assistant with the following instructions: "
)


def create_rag_system_prompt(document_content: str) -> str:
    return (
        "You are a helpful assistant that answers questions about the document provided below. "
        "Base your answers on the document content. If the answer is not contained in the document, "
        "say so clearly instead of guessing. Quote relevant passages when it helps, and keep answers "
        "concise unless the user asks for more detail.\n\n"
        "DOCUMENT CONTENT:\n"
        f"{document_content}"
    )


def create_youtube_system_prompt(transcript: str) -> str:
    return (
        "You are a helpful assistant that answers questions about a YouTube video. "
        "You are given the video's transcript below. Use it to summarise the video, explain what was said "
        "and answer questions about it. Refer to the speaker's words when useful. If something is not "
        "covered by the transcript, say that the video does not mention it.\n\n"
        "VIDEO TRANSCRIPT:\n"
        f"{transcript}"
    )
