import pytest

from authorization import is_owner, resolve_caller
from models import CallerRole


@pytest.fixture
def room(store):
    room, _ = store.create_room("Alice")
    store.add_participant(room.id, "Bob")
    return store.find_room(room.id)


def test_owner_token_resolves_to_owner(room):
    caller = resolve_caller(room, owner_token=room.owner_token)
    assert caller.role == CallerRole.OWNER
    assert caller.name == "Alice"
    assert caller.is_owner and not caller.is_participant


def test_participant_token_resolves_to_participant(room):
    bob = room.participants[0]
    caller = resolve_caller(room, participant_token=bob.token)
    assert caller.role == CallerRole.PARTICIPANT
    assert caller.name == "Bob"
    assert caller.token == bob.token


def test_owner_wins_when_both_tokens_valid(room):
    caller = resolve_caller(room, owner_token=room.owner_token, participant_token=room.participants[0].token)
    assert caller.is_owner


def test_invalid_owner_token_falls_through_to_participant(room):
    caller = resolve_caller(room, owner_token="forged", participant_token=room.participants[0].token)
    assert caller.is_participant


@pytest.mark.parametrize("owner_token, participant_token", [
    (None, None),
    ("", ""),
    ("forged", "forged"),
])
def test_unauthorized(room, owner_token, participant_token):
    assert resolve_caller(room, owner_token, participant_token) is None


def test_participant_token_is_not_an_owner_token(room):
    assert resolve_caller(room, owner_token=room.participants[0].token) is None
    assert is_owner(room, room.participants[0].token) is False


def test_tokens_do_not_cross_rooms(store, room):
    other, other_token = store.create_room("Mallory")
    assert resolve_caller(room, owner_token=other_token) is None
    assert is_owner(store.find_room(other.id), other_token) is True


def test_missing_room_is_unauthorized():
    assert resolve_caller(None, owner_token="x", participant_token="y") is None
