from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    content: str
    dest_id: Optional[str] = Field(default=None, alias="destId")
    room_id: Optional[str] = Field(default=None, alias="roomId")
    timestamp: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_payload(self) -> Dict[str, Any]:
        """Wire form emitted to transport clients (camelCase, no empty fields)."""
        return self.model_dump(by_alias=True, exclude_none=True)


class ChatMessage(Envelope):
    sender_id: str = Field(alias="senderId")


class Notification(Envelope):
    title: str


class UserDestination(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str


class RoomDestination(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str


Destination = Union[UserDestination, RoomDestination]
