"""
Access control filter

Allow-list evaluation shared by every connector. Runs before any message
crosses into the dispatcher.
"""

from typing import Iterable

from logger import get_logger

from core.gateway.errors import AuthorizationError
from core.gateway.types import WILDCARD

logger = get_logger("gateway.access")


def is_allowed(channel_id: str, sender_id: str, allow_list: Iterable[str]) -> bool:
    """
    Decide whether ``sender_id`` may reach the AI engine through ``channel_id``.

    A wildcard entry admits every sender, including ids never seen before.
    Otherwise the sender id must be an exact member. An empty allow-list
    admits nobody.
    """
    entries = allow_list if isinstance(allow_list, (set, frozenset)) else set(allow_list)
    if WILDCARD in entries:
        return True
    return bool(sender_id) and sender_id in entries


def check_sender(channel_id: str, sender_id: str, allow_list: Iterable[str]) -> bool:
    """is_allowed() plus the audit log line for rejected senders."""
    if is_allowed(channel_id, sender_id, allow_list):
        return True
    denied = AuthorizationError(f"Sender '{sender_id}' is not in the allow-list", channel_id)
    logger.warning(
        "Sender not in allow-list, message dropped",
        extra={
            "channel": channel_id,
            "sender": sender_id,
            "audit": "authorization_denied",
            "error_type": type(denied).__name__,
            "error": str(denied),
        },
    )
    return False
