from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RoomType(str, Enum):
    PRIVATE = "private"
    EVENT = "event"
    JAM = "jam"


class RoomPrefix(str, Enum):
    PRIVATE = f"{RoomType.PRIVATE.value}-room_"
    EVENT = f"{RoomType.EVENT.value}-room_"
    JAM = f"{RoomType.JAM.value}-room_"


class Room(BaseModel):
    id: str
    type: RoomType
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CreatePrivateRoomRequest(CamelModel):
    user_id: str = Field(alias="userId", min_length=1)
    dest_id: str = Field(alias="destId", min_length=1)
    metadata: Optional[Dict[str, Any]] = None


class CreateEventRoomRequest(CamelModel):
    event_id: str = Field(alias="eventId", min_length=1)
    metadata: Optional[Dict[str, Any]] = None


class CreateJamRoomRequest(CamelModel):
    jam_id: str = Field(alias="jamId", min_length=1)
    metadata: Optional[Dict[str, Any]] = None


class AddUserRequest(CamelModel):
    room_id: str = Field(alias="roomId", min_length=1)
    user_id: str = Field(alias="userId", min_length=1)


class AddUsersRequest(CamelModel):
    room_id: str = Field(alias="roomId", min_length=1)
    users_id: List[str] = Field(alias="usersId")


class RemoveUserRequest(CamelModel):
    user_id: str = Field(alias="userId", min_length=1)


class MembershipResponse(CamelModel):
    room_id: str = Field(serialization_alias="roomId")
    added: List[str] = Field(default_factory=list)
    joined_live: List[str] = Field(default_factory=list, serialization_alias="joinedLive")


class RoomDetailsResponse(CamelModel):
    id: str
    type: RoomType
    metadata: Dict[str, Any]
    members: List[str]


class UserRoomsResponse(CamelModel):
    user_id: str = Field(serialization_alias="userId")
    rooms: List[str]
