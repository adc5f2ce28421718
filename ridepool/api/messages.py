"""Chat routes: send and read a match thread (auth required)."""
from fastapi import APIRouter, Depends, status

from ridepool.api.errors import http_error
from ridepool.deps import get_current_user, get_services
from ridepool.errors import RidePoolError
from ridepool.models.user import User
from ridepool.schemas.message import MessageCreate, MessageResponse
from ridepool.services.messaging import ChatMessage
from ridepool.services.registry import Services
from ridepool.services.validation import is_valid_match_id

router = APIRouter(prefix="/messages", tags=["messages"])


def message_to_response(m: ChatMessage) -> MessageResponse:
    return MessageResponse(
        id=m.id,
        client_id=m.client_id,
        match_id=m.match_id,
        trip_id=m.trip_id,
        sender_id=m.sender_id,
        text=m.text,
        created_at=m.created_at,
        pending=m.pending,
    )


@router.post("", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    body: MessageCreate,
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
):
    """Send a message as the current user (max 5000 chars, 1 per second)."""
    try:
        message = await services.messages.add_message(
            body.match_id, current_user.id, body.text, trip_id=body.trip_id, client_id=body.client_id
        )
    except RidePoolError as e:
        raise http_error(e)
    return message_to_response(message)


@router.get("", response_model=list[MessageResponse])
async def list_messages(
    match_id: str,
    services: Services = Depends(get_services),
    current_user: User = Depends(get_current_user),
):
    """Oldest first, up to 200. An invalid match id gives an empty list."""
    if not is_valid_match_id(match_id):
        return []
    return [message_to_response(m) for m in await services.messages.list_messages(match_id)]
