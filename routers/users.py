from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from logging_config import get_logger
from schemas.users import ConnectedUsersResponse, UserExistsResponse
from services.connection_registry import ConnectionRegistry

logger = get_logger(__name__)

users_router = APIRouter(prefix="/api/users", tags=["users"])


def get_connection_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.services.registry


@users_router.get("")
async def users_api():
    logger.info("Users API")
    return "Users API"


@users_router.get("/existsById/{user_id}", response_model=UserExistsResponse, responses={404: {"model": UserExistsResponse}})
async def user_exists(user_id: str, registry: ConnectionRegistry = Depends(get_connection_registry)):
    """True when the user has at least one live connection; 404 otherwise."""
    if await registry.exists(user_id):
        return UserExistsResponse(exists=True)
    logger.info(f"User {user_id} has no live connection")
    return JSONResponse(status_code=404, content={"exists": False})


@users_router.get("/connected", response_model=ConnectedUsersResponse)
async def connected_users(registry: ConnectionRegistry = Depends(get_connection_registry)):
    logger.info("Get all connected users")
    users = await registry.connected_users()
    return ConnectedUsersResponse(users=users)
