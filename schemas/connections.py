import time

from pydantic import BaseModel, ConfigDict, Field


def now_millis() -> int:
    return int(time.time() * 1000)


class Connection(BaseModel):
    """One live transport session as stored in ``user:{id}:connections``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    user_id: str = Field(alias="userId")
    connection_id: str = Field(alias="connectionId")
    owner_process_id: str = Field(alias="ownerProcessId")
    established_at: int = Field(default_factory=now_millis, alias="establishedAt")

    def serialize(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def deserialize(cls, raw: str) -> "Connection":
        return cls.model_validate_json(raw)
