"""
Resolve who is calling from the tokens they present.

There are no accounts: holding the owner secret makes the caller the owner,
holding a participant secret of the room makes them that participant.
"""
import hmac
from typing import Optional

from logging_config import get_logger
from models import AuthorizedCaller, CallerRole, Room

logger = get_logger(__name__)


def _matches(candidate: Optional[str], secret: str) -> bool:
    if not candidate or not secret:
        return False
    return hmac.compare_digest(candidate.encode(), secret.encode())


def resolve_caller(room: Optional[Room], owner_token: Optional[str] = None,
                   participant_token: Optional[str] = None) -> Optional[AuthorizedCaller]:
    """Owner match wins over participant match; ``None`` means unauthorized."""
    if room is None:
        return None

    if _matches(owner_token, room.owner_token):
        return AuthorizedCaller(role=CallerRole.OWNER, name=room.owner_name, token=room.owner_token)

    if participant_token:
        for participant in room.participants:
            if _matches(participant_token, participant.token):
                return AuthorizedCaller(role=CallerRole.PARTICIPANT, name=participant.name, token=participant.token)

    logger.debug(f"No matching token for room {room.id}")
    return None


def is_owner(room: Optional[Room], token: Optional[str]) -> bool:
    caller = resolve_caller(room, owner_token=token)
    return caller is not None and caller.is_owner
