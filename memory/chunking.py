"""
Text and conversation chunking for vector memory.

Long documents are split into fixed character windows with ~20% overlap.
A window that would end mid-text backs up to the last paragraph break, or
failing that the last sentence break, as long as that break lies past the
window's midpoint. Conversations are grouped into overlapping runs of
messages instead.
"""

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_OVERLAP = 200


def chunk_text(text: str, chunk_size: int = DEFAULT_CHUNK_SIZE, overlap: int = DEFAULT_OVERLAP) -> list[str]:
    """Split text into overlapping chunks, preferring natural break points."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if not 0 <= overlap < chunk_size:
        raise ValueError("overlap must be in [0, chunk_size)")

    text = text.strip()
    if not text:
        return []
    if len(text) <= chunk_size:
        return [text]

    chunks = []
    midpoint = chunk_size // 2
    start = 0
    while start < len(text):
        end = min(start + chunk_size, len(text))

        if end < len(text):
            window = text[start:end]
            paragraph = window.rfind("\n\n")
            sentence = window.rfind(". ")
            if paragraph > midpoint:
                end = start + paragraph
            elif sentence > midpoint:
                end = start + sentence + 1

        piece = text[start:end].strip()
        if piece:
            chunks.append(piece)

        if end >= len(text):
            break
        start = max(end - overlap, start + 1)

    return chunks


def message_text(message: dict) -> str:
    """Plain text of a chat message whose content may be a list of parts."""
    content = message.get("content") or ""
    if isinstance(content, str):
        return content
    return " ".join(
        part.get("text", "") for part in content
        if isinstance(part, dict) and part.get("type") == "text"
    )


def chunk_conversation(messages: list[dict], window: int = 4) -> list[str]:
    """Group messages into windows of `window` messages with 50% overlap."""
    if window <= 0:
        raise ValueError("window must be positive")

    lines = [
        f"{m.get('role', 'user')}: {message_text(m)}"
        for m in messages
        if m.get("role") in ("user", "assistant") and message_text(m).strip()
    ]
    if not lines:
        return []

    step = max(1, window // 2)
    chunks = []
    for i in range(0, len(lines), step):
        chunks.append("\n".join(lines[i:i + window]))
        if i + window >= len(lines):
            break
    return chunks
