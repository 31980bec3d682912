from typing import List

from pydantic import BaseModel


class UserExistsResponse(BaseModel):
    exists: bool


class ConnectedUsersResponse(BaseModel):
    users: List[str]
