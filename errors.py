class RelayError(Exception):
    """Base class for every error raised by the relay."""


class InfrastructureError(RelayError):
    """A backing service (store or broker) could not be reached."""


class StoreUnavailableError(InfrastructureError):
    pass


class QueueUnavailableError(InfrastructureError):
    pass


class RoutingError(RelayError):
    """A message could not be routed to its destination."""

    def __init__(self, target_id: str, message: str):
        super().__init__(message)
        self.target_id = target_id


class RoomNotFoundError(RoutingError):
    def __init__(self, room_id: str):
        super().__init__(room_id, f"Room {room_id} not found")


class DestinationNotFoundError(RoutingError):
    def __init__(self, dest_id: str):
        super().__init__(dest_id, f"Destination {dest_id} not found")


class UserUnreachableError(DestinationNotFoundError):
    """The user is known but has no live connection to deliver to."""

    def __init__(self, user_id: str):
        RoutingError.__init__(self, user_id, f"User {user_id} has no active connection")


class EnvelopeError(RelayError):
    """A queue payload is not a valid envelope."""
