"""
Domain errors raised by the room service and stores.

Routers translate these into HTTP responses; an unknown room on a plain read
is a ``None`` result rather than an exception.
"""


class DrawRoomException(Exception):
    """Base class for all room errors"""
    pass


class RoomNotFound(DrawRoomException):
    def __init__(self, room_id):
        self.room_id = room_id
        super().__init__(f"Room {room_id} not found")


class SelectionForbidden(DrawRoomException):
    """Only the room owner may run a selection"""
    def __init__(self, room_id):
        self.room_id = room_id
        super().__init__(f"Caller is not the owner of room {room_id}")


class InvalidSelectionCount(DrawRoomException):
    """Requested count is not positive or larger than the membership"""

    COUNT_NOT_POSITIVE = "count_not_positive"
    COUNT_EXCEEDS_MEMBERS = "count_exceeds_members"

    def __init__(self, reason: str, requested_count: int, member_count: int):
        self.reason = reason
        self.requested_count = requested_count
        self.member_count = member_count
        if reason == self.COUNT_NOT_POSITIVE:
            message = f"Count must be at least 1, got {requested_count}"
        else:
            message = f"Count must not exceed the number of members ({member_count}), got {requested_count}"
        super().__init__(message)


class BackendUnavailable(DrawRoomException):
    """The durable room store could not be reached"""
    pass
