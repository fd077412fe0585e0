from pydantic import BaseModel, Field, field_validator
from typing import Optional


def _strip_name(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be blank")
    return value


class CreateRoomRequest(BaseModel):
    owner_name: str = Field(min_length=1, max_length=50)

    @field_validator("owner_name")
    @classmethod
    def strip_owner_name(cls, value: str) -> str:
        return _strip_name(value)

class CreateRoomResponse(BaseModel):
    room_id: str
    owner_token: str
    ws_url: str

class JoinRoomRequest(BaseModel):
    name: str = Field(min_length=1, max_length=50)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        return _strip_name(value)

class JoinRoomResponse(BaseModel):
    participant_token: str
    ws_url: str

class SelectionRequest(BaseModel):
    count: int

class SelectionResponse(BaseModel):
    selected_names: list[str]
    requested_count: int

class ParticipantView(BaseModel):
    name: str

class SelectionView(BaseModel):
    selected_names: list[str]
    requested_count: int
    selected_at: Optional[str] = None

class RoomSnapshot(BaseModel):
    """Full read model shared by the poll endpoint and client-side rendering."""
    participants: list[ParticipantView]
    selection: Optional[SelectionView] = None

class CallerResponse(BaseModel):
    role: str
    name: str
