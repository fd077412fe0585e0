import json
import secrets
import string
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Optional

import redis

from constants import (
    OWNER_TOKEN_BYTES,
    PARTICIPANT_TOKEN_BYTES,
    REDIS_URL,
    ROOM_ID_LENGTH,
    ROOM_STORE_BACKEND,
    ROOM_TTL_SECONDS,
)
from exceptions import BackendUnavailable
from logging_config import get_logger
from models import Participant, Room, SelectionResult, utcnow
from redis_keys import REDIS_ROOM_KEY_PATTERN, room_key
from selection import select_subset

logger = get_logger(__name__)

ROOM_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_room_id(length: int = ROOM_ID_LENGTH) -> str:
    return ''.join(secrets.choice(ROOM_ID_ALPHABET) for _ in range(length))


def generate_token(nbytes: int) -> str:
    return secrets.token_hex(nbytes)


class RoomStore(ABC):
    """Contract shared by the in-memory and Redis room stores."""

    name = "abstract"

    def __init__(self, ttl_seconds: int = ROOM_TTL_SECONDS, clock: Callable[[], datetime] = utcnow):
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    @abstractmethod
    def create_room(self, owner_name: str) -> tuple[Room, str]:
        ...

    @abstractmethod
    def find_room(self, room_id: str) -> Optional[Room]:
        ...

    @abstractmethod
    def add_participant(self, room_id: str, name: str) -> Optional[Participant]:
        ...

    @abstractmethod
    def draw(self, room_id: str, count: int) -> Optional[tuple[list[Participant], SelectionResult]]:
        ...

    @abstractmethod
    def room_exists(self, room_id: str) -> bool:
        ...

    @abstractmethod
    def expire_rooms(self) -> int:
        ...

    def select_random(self, room_id: str, count: int) -> list[Participant]:
        drawn = self.draw(room_id, count)
        if drawn is None:
            return []
        return drawn[0]

    def participant_list(self, room_id: str) -> list[Participant]:
        room = self.find_room(room_id)
        if not room:
            return []
        return room.members()

    def is_expired(self, room: Room, now: datetime) -> bool:
        return room.created_at <= now - timedelta(seconds=self.ttl_seconds)

    def _new_participant(self, name: str) -> Participant:
        return Participant(token=generate_token(PARTICIPANT_TOKEN_BYTES), name=name, joined_at=self.clock())

    def _draw(self, room: Room, count: int) -> tuple[list[Participant], SelectionResult]:
        """Sample the member list and record the result on ``room``."""
        selected = select_subset(room.members(), count)
        room.last_selection = SelectionResult(
            requested_count=count,
            selected_names=[p.name for p in selected],
            selected_at=self.clock(),
        )
        return selected, room.last_selection


class VolatileRoomStore(RoomStore):
    """
    Process-local store: a dict of rooms guarded by one lock.

    Every mutation runs under ``self._lock``, so a selection reads the member
    list and writes ``last_selection`` without a concurrent join slipping in
    between. Reads skip the lock and hand out copies.
    """

    name = "memory"

    def __init__(self, ttl_seconds: int = ROOM_TTL_SECONDS, clock: Callable[[], datetime] = utcnow):
        super().__init__(ttl_seconds=ttl_seconds, clock=clock)
        self._rooms: dict[str, Room] = {}
        self._lock = threading.Lock()

    def create_room(self, owner_name: str) -> tuple[Room, str]:
        owner_token = generate_token(OWNER_TOKEN_BYTES)
        with self._lock:
            room_id = self._fresh_room_id()
            room = Room(id=room_id, owner_token=owner_token, owner_name=owner_name, created_at=self.clock())
            self._rooms[room_id] = room
        logger.info(f"Created room {room_id} for owner {owner_name}")
        return room.copy(), owner_token

    def find_room(self, room_id: str) -> Optional[Room]:
        room = self._rooms.get(room_id)
        logger.debug(f"find_room: id={room_id}, found={room is not None}, total_rooms={len(self._rooms)}")
        return room.copy() if room else None

    def add_participant(self, room_id: str, name: str) -> Optional[Participant]:
        participant = self._new_participant(name)
        with self._lock:
            room = self._rooms.get(room_id)
            if not room:
                logger.info(f"Add participant failed: room {room_id} not found")
                return None
            room.participants.append(participant)
            member_count = len(room.participants) + 1
        logger.info(f"Participant {name} joined room {room_id} ({member_count} members)")
        return participant

    def draw(self, room_id: str, count: int) -> Optional[tuple[list[Participant], SelectionResult]]:
        with self._lock:
            room = self._rooms.get(room_id)
            if not room:
                return None
            selected, result = self._draw(room, count)
        logger.info(f"Selected {len(selected)} of requested {count} in room {room_id}")
        return selected, result

    def room_exists(self, room_id: str) -> bool:
        return room_id in self._rooms

    def expire_rooms(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [room_id for room_id, room in self._rooms.items() if self.is_expired(room, now)]
            for room_id in expired:
                del self._rooms[room_id]
                logger.info(f"Cleaned up expired room: {room_id}")
        return len(expired)

    def _fresh_room_id(self) -> str:
        while True:
            room_id = generate_room_id()
            if room_id not in self._rooms:
                return room_id
            logger.warning(f"Room id collision detected, regenerating: {room_id}")


class RedisRoomStore(RoomStore):
    """
    One JSON record per room under ``room:{id}`` with a TTL refreshed on every write.

    Joins and selections are read-modify-write on that record; concurrent
    writers race and the last one wins. Updates only land on a record that
    still exists, so a room removed by the sweep stays removed.
    """

    name = "redis"

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = ROOM_TTL_SECONDS,
                 clock: Callable[[], datetime] = utcnow):
        super().__init__(ttl_seconds=ttl_seconds, clock=clock)
        self.redis_client = redis_client

    def create_room(self, owner_name: str) -> tuple[Room, str]:
        owner_token = generate_token(OWNER_TOKEN_BYTES)
        while True:
            room = Room(id=generate_room_id(), owner_token=owner_token, owner_name=owner_name, created_at=self.clock())
            # NX keeps a concurrent create from claiming the same id
            if self._store(room, only_if_new=True):
                break
            logger.warning(f"Room id collision detected, regenerating: {room.id}")
        logger.info(f"Redis: created room {room.id} for owner {owner_name}")
        return room, owner_token

    def find_room(self, room_id: str) -> Optional[Room]:
        try:
            raw = self.redis_client.get(room_key(room_id))
        except redis.exceptions.RedisError as e:
            logger.error(f"Redis error in find_room for {room_id}: {e}")
            raise BackendUnavailable(str(e)) from e
        if not raw:
            logger.debug(f"Redis: room {room_id} not found")
            return None
        try:
            room = Room.from_record(json.loads(raw))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Could not decode room record {room_id}: {e}")
            return None
        logger.debug(f"Redis: room {room_id} found")
        return room

    def add_participant(self, room_id: str, name: str) -> Optional[Participant]:
        room = self.find_room(room_id)
        if not room:
            logger.info(f"Redis: add participant failed, room {room_id} not found")
            return None
        participant = self._new_participant(name)
        room.participants.append(participant)
        if not self._store(room):
            logger.info(f"Redis: add participant failed, room {room_id} expired during the join")
            return None
        logger.info(f"Redis: participant {name} joined room {room_id} ({len(room.participants) + 1} members)")
        return participant

    def draw(self, room_id: str, count: int) -> Optional[tuple[list[Participant], SelectionResult]]:
        room = self.find_room(room_id)
        if not room:
            return None
        selected, result = self._draw(room, count)
        if not self._store(room):
            logger.info(f"Redis: selection dropped, room {room_id} expired during the draw")
            return None
        logger.info(f"Redis: selected {len(selected)} of requested {count} in room {room_id}")
        return selected, result

    def room_exists(self, room_id: str) -> bool:
        try:
            exists = self.redis_client.exists(room_key(room_id)) > 0
        except redis.exceptions.RedisError as e:
            logger.error(f"Redis error in room_exists for {room_id}: {e}")
            raise BackendUnavailable(str(e)) from e
        logger.debug(f"Redis: room exists check: id={room_id}, exists={exists}")
        return exists

    def expire_rooms(self) -> int:
        """
        Delete records older than the TTL.

        Key expiry is refreshed on writes, so a busy room could outlive its
        fixed age without this scan.
        """
        now = self.clock()
        removed = 0
        try:
            for key in self.redis_client.scan_iter(match=REDIS_ROOM_KEY_PATTERN):
                raw = self.redis_client.get(key)
                if not raw:
                    continue
                try:
                    room = Room.from_record(json.loads(raw))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping undecodable room record {key}: {e}")
                    continue
                if self.is_expired(room, now):
                    removed += self.redis_client.delete(key)
                    logger.info(f"Cleaned up expired room: {room.id}")
        except redis.exceptions.RedisError as e:
            logger.error(f"Redis error in expire_rooms: {e}")
            raise BackendUnavailable(str(e)) from e
        return removed

    def _store(self, room: Room, only_if_new: bool = False) -> bool:
        key = room_key(room.id)
        try:
            stored = self.redis_client.set(
                key, json.dumps(room.to_record()), ex=self.ttl_seconds, nx=only_if_new, xx=not only_if_new
            )
        except redis.exceptions.RedisError as e:
            logger.error(f"Redis error storing room {room.id}: {e}")
            raise BackendUnavailable(str(e)) from e
        logger.debug(f"Redis: stored room {room.id} with TTL {self.ttl_seconds} seconds")
        return bool(stored)


def create_room_store(backend: str = ROOM_STORE_BACKEND, redis_url: str = REDIS_URL,
                      ttl_seconds: int = ROOM_TTL_SECONDS) -> RoomStore:
    """
    Pick the room store once at startup.

    Redis is tried first when configured; if it cannot be reached the
    in-memory store is used instead and the fallback is logged.
    """
    if backend == "redis":
        try:
            redis_client = redis.Redis.from_url(redis_url, decode_responses=True)
            redis_client.ping()
            logger.info(f"Redis room store connected to {_redacted(redis_url)}")
            return RedisRoomStore(redis_client, ttl_seconds=ttl_seconds)
        except redis.exceptions.RedisError as e:
            logger.warning(f"Redis unavailable at {_redacted(redis_url)} ({e}), falling back to in-memory room store")
    elif backend != "memory":
        logger.warning(f"Unknown room store backend {backend!r}, using in-memory room store")
    logger.info("Using in-memory room store")
    return VolatileRoomStore(ttl_seconds=ttl_seconds)


def _redacted(redis_url: str) -> str:
    return redis_url.rsplit("@", 1)[-1]
