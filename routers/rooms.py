from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request

from errors import RoomNotFoundError
from logging_config import get_logger
from schemas.rooms import (
    AddUserRequest,
    AddUsersRequest,
    CreateEventRoomRequest,
    CreateJamRoomRequest,
    CreatePrivateRoomRequest,
    MembershipResponse,
    RemoveUserRequest,
    Room,
    RoomDetailsResponse,
    UserRoomsResponse,
)
from services.message_relay import MessageRelay
from services.room_directory import RoomDirectory

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/api/rooms", tags=["rooms"])


def get_room_directory(request: Request) -> RoomDirectory:
    return request.app.state.services.directory


def get_message_relay(request: Request) -> MessageRelay:
    return request.app.state.services.relay


async def add_users_to_room(room_id: str, user_ids: List[str], directory: RoomDirectory, relay: MessageRelay) -> MembershipResponse:
    """Write membership first, then join whichever of the users are online."""
    if not await directory.room_exists(room_id):
        logger.warning(f"Add users failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    response = MembershipResponse(room_id=room_id)
    for user_id in user_ids:
        await directory.add_member(room_id, user_id)
        response.added.append(user_id)
        try:
            if await relay.add_user_to_room_live(room_id, user_id):
                response.joined_live.append(user_id)
        except RoomNotFoundError:
            # Room removed out of band between the check and the join
            raise HTTPException(status_code=404, detail="Room not found")
    logger.info(f"Added {len(response.added)} users to room {room_id}, {len(response.joined_live)} joined live")
    return response


@rooms_router.get("")
async def rooms_api():
    logger.info("Rooms API")
    return "Rooms API"


@rooms_router.post("/private", response_model=Room)
async def create_private_room(body: CreatePrivateRoomRequest, directory: RoomDirectory = Depends(get_room_directory)):
    # Creates the room if it doesn't exist, otherwise returns the existing one
    logger.info(f"Private room request for {body.user_id} and {body.dest_id}")
    return await directory.create_private_room(body.user_id, body.dest_id, body.metadata)


@rooms_router.post("/private/add-users", response_model=MembershipResponse)
async def add_users_to_private_room(
    body: AddUsersRequest,
    directory: RoomDirectory = Depends(get_room_directory),
    relay: MessageRelay = Depends(get_message_relay),
):
    return await add_users_to_room(body.room_id, body.users_id, directory, relay)


@rooms_router.post("/event", response_model=Room)
async def create_event_room(body: CreateEventRoomRequest, directory: RoomDirectory = Depends(get_room_directory)):
    logger.info(f"Event room request for event {body.event_id}")
    return await directory.create_event_room(body.event_id, body.metadata)


@rooms_router.post("/event/add-user", response_model=MembershipResponse)
async def add_user_to_event_room(
    body: AddUserRequest,
    directory: RoomDirectory = Depends(get_room_directory),
    relay: MessageRelay = Depends(get_message_relay),
):
    return await add_users_to_room(body.room_id, [body.user_id], directory, relay)


@rooms_router.post("/jam", response_model=Room)
async def create_jam_room(body: CreateJamRoomRequest, directory: RoomDirectory = Depends(get_room_directory)):
    logger.info(f"Jam room request for jam {body.jam_id}")
    return await directory.create_jam_room(body.jam_id, body.metadata)


@rooms_router.post("/jam/add-user", response_model=MembershipResponse)
async def add_user_to_jam_room(
    body: AddUserRequest,
    directory: RoomDirectory = Depends(get_room_directory),
    relay: MessageRelay = Depends(get_message_relay),
):
    return await add_users_to_room(body.room_id, [body.user_id], directory, relay)


@rooms_router.post("/{room_id}/remove-user")
async def remove_user_from_room(room_id: str, body: RemoveUserRequest, directory: RoomDirectory = Depends(get_room_directory)):
    # Membership only; live sessions drop the room on their next connect
    if not await directory.room_exists(room_id):
        logger.warning(f"Remove user failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    await directory.remove_member(room_id, body.user_id)
    return {"message": "User removed from room"}


@rooms_router.get("/user/{user_id}", response_model=UserRoomsResponse)
async def get_user_rooms(user_id: str, directory: RoomDirectory = Depends(get_room_directory)):
    rooms = await directory.rooms_of(user_id)
    return UserRoomsResponse(user_id=user_id, rooms=sorted(rooms))


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, directory: RoomDirectory = Depends(get_room_directory)):
    """
    Get a room record with its members.

    Returns:
    - id: Room identifier
    - type: private, event or jam
    - metadata: Opaque metadata given at creation
    - members: User ids belonging to the room, online or not
    """
    room = await directory.get_room(room_id)
    if room is None:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    members = await directory.members_of(room_id)
    return RoomDetailsResponse(id=room.id, type=room.type, metadata=room.metadata, members=sorted(members))
