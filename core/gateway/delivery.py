"""
Delivery service

Handles outbound message delivery: chunking long replies to the
platform's length limit and sending each chunk through the originating
connector.
"""

from typing import List

from logger import get_logger

from core.gateway.channel import Connector
from core.gateway.types import OutboundMessage

logger = get_logger("gateway.delivery")

# Per-platform message length limits (characters)
PLATFORM_MAX_LENGTH = {
    "dingtalk": 20000,
    "wecom": 2048,
}

DEFAULT_MAX_LENGTH = 2000


def max_length_for(platform: str) -> int:
    return PLATFORM_MAX_LENGTH.get(platform, DEFAULT_MAX_LENGTH)


def split_message(text: str, max_length: int) -> List[str]:
    """
    Split a long message into chunks that fit within platform limits.

    Prefers splitting at paragraph or sentence boundaries.

    Args:
        text: full message text
        max_length: maximum characters per chunk

    Returns:
        list of text chunks
    """
    if max_length <= 0:
        raise ValueError("max_length must be positive")
    if not text:
        return []
    if len(text) <= max_length:
        return [text]

    chunks: List[str] = []
    remaining = text

    while remaining:
        if len(remaining) <= max_length:
            chunks.append(remaining)
            break

        # Try to split at paragraph boundary (double newline)
        split_idx = remaining.rfind("\n\n", 0, max_length)
        if split_idx > max_length // 4:
            chunks.append(remaining[:split_idx])
            remaining = remaining[split_idx:].lstrip("\n")
            continue

        # Try to split at single newline
        split_idx = remaining.rfind("\n", 0, max_length)
        if split_idx > max_length // 4:
            chunks.append(remaining[:split_idx])
            remaining = remaining[split_idx:].lstrip("\n")
            continue

        # Try to split at sentence boundary
        for sep in ("。", ". ", "！", "! ", "？", "? "):
            split_idx = remaining.rfind(sep, 0, max_length)
            if split_idx > max_length // 4:
                split_idx += len(sep)
                chunks.append(remaining[:split_idx])
                remaining = remaining[split_idx:].lstrip()
                break
        else:
            # Hard split at max_length
            chunks.append(remaining[:max_length])
            remaining = remaining[max_length:]

    return chunks


async def deliver(connector: Connector, message: OutboundMessage) -> int:
    """
    Deliver a reply through ``connector``, auto-chunking if needed.

    Every chunk carries the original correlation id and conversation.
    Stops at the first failing chunk and re-raises its error.

    Returns:
        number of chunks sent
    """
    if not message.content:
        logger.warning("Empty reply, skipping delivery", extra={"channel": message.channel_id})
        return 0

    chunks = split_message(message.content, max_length_for(connector.platform))

    logger.info(
        "Delivering reply",
        extra={
            "channel": message.channel_id,
            "conversation_id": message.conversation_id,
            "total_length": len(message.content),
            "chunks": len(chunks),
        },
    )

    for i, chunk in enumerate(chunks):
        part = message if len(chunks) == 1 else message.model_copy(update={"content": chunk})
        try:
            await connector.send(part)
        except Exception as e:
            logger.error(
                "Failed to deliver chunk",
                extra={
                    "channel": message.channel_id,
                    "chunk_index": i,
                    "total_chunks": len(chunks),
                    "error": str(e),
                },
            )
            raise
    return len(chunks)
