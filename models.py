from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Participant:
    token: str
    name: str
    joined_at: datetime

    def to_record(self) -> dict:
        return {"token": self.token, "name": self.name, "joined_at": self.joined_at.isoformat()}

    @classmethod
    def from_record(cls, data: dict) -> "Participant":
        return cls(token=data["token"], name=data["name"], joined_at=datetime.fromisoformat(data["joined_at"]))


@dataclass(frozen=True)
class SelectionResult:
    requested_count: int
    selected_names: list[str]
    selected_at: datetime

    @property
    def selected_count(self) -> int:
        return len(self.selected_names)

    def to_record(self) -> dict:
        return {
            "selected_at": self.selected_at.isoformat(),
            "requested_count": self.requested_count,
            "selected_names": list(self.selected_names),
        }

    @classmethod
    def from_record(cls, data: dict) -> "SelectionResult":
        return cls(
            requested_count=int(data["requested_count"]),
            selected_names=list(data["selected_names"]),
            selected_at=datetime.fromisoformat(data["selected_at"]),
        )


@dataclass
class Room:
    """
    A room as stored. The owner is kept apart from ``participants``; the
    combined member list is only built by ``members()``.
    """
    id: str
    owner_token: str
    owner_name: str
    created_at: datetime
    participants: list[Participant] = field(default_factory=list)
    last_selection: Optional[SelectionResult] = None

    def members(self) -> list[Participant]:
        """Participants in join order, then the owner as a synthetic last entry."""
        owner = Participant(token=self.owner_token, name=self.owner_name, joined_at=self.created_at)
        return [*self.participants, owner]

    def find_participant(self, token: str) -> Optional[Participant]:
        for participant in self.participants:
            if participant.token == token:
                return participant
        return None

    def copy(self) -> "Room":
        return replace(self, participants=list(self.participants))

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "owner_token": self.owner_token,
            "owner_name": self.owner_name,
            "participants": [p.to_record() for p in self.participants],
            "created_at": self.created_at.isoformat(),
            "last_selection": self.last_selection.to_record() if self.last_selection else None,
        }

    @classmethod
    def from_record(cls, data: dict) -> "Room":
        last_selection = data.get("last_selection")
        return cls(
            id=data["id"],
            owner_token=data["owner_token"],
            owner_name=data["owner_name"],
            created_at=datetime.fromisoformat(data["created_at"]),
            participants=[Participant.from_record(p) for p in data.get("participants") or []],
            last_selection=SelectionResult.from_record(last_selection) if last_selection else None,
        )


class CallerRole(str, Enum):
    OWNER = "owner"
    PARTICIPANT = "participant"


@dataclass(frozen=True)
class AuthorizedCaller:
    role: CallerRole
    name: str
    token: str

    @property
    def is_owner(self) -> bool:
        return self.role == CallerRole.OWNER

    @property
    def is_participant(self) -> bool:
        return self.role == CallerRole.PARTICIPANT
