from fastapi.concurrency import run_in_threadpool

from backend import RoomStore
from logging_config import get_logger
from redis_keys import room_topic

logger = get_logger(__name__)


def participants_message(names: list[str]) -> dict:
    return {"type": "participants", "participants": [{"name": name} for name in names]}


def selection_message(selected_names: list[str], count: int) -> dict:
    return {"type": "selection", "selected": [{"name": name} for name in selected_names], "count": count}


class UpdateBroadcaster:
    """
    Publishes room changes to the room topic.

    Delivery is best effort: any failure is logged here and never reaches the
    command that triggered the broadcast.
    """

    def __init__(self, store: RoomStore, pubsub):
        self.store = store
        self.pubsub = pubsub

    async def participants_changed(self, room_id: str) -> bool:
        try:
            members = await run_in_threadpool(self.store.participant_list, room_id)
            message = participants_message([p.name for p in members])
            await self.pubsub.publish(room_topic(room_id), message)
        except Exception as e:
            logger.warning(f"Broadcast of participants update failed for room {room_id}: {e}")
            return False
        logger.info(f"Broadcasted participants update for room {room_id} ({len(members)} items)")
        return True

    async def selection_made(self, room_id: str, selected_names: list[str], count: int) -> bool:
        try:
            await self.pubsub.publish(room_topic(room_id), selection_message(selected_names, count))
        except Exception as e:
            logger.warning(f"Broadcast of selection update failed for room {room_id}: {e}")
            return False
        logger.info(f"Broadcasted selection update for room {room_id} ({len(selected_names)} items)")
        return True
