"""Account and history REST endpoints.

Endpoints:
    POST /signup: Register a username
    GET /user/{username}: Look up a user and its presence
    GET /messages: Messages between two users, oldest first

Passwords are not handled here; authentication strength is outside the
scope of this backend.

Store access goes through the chat manager's StoreGateway, so these
handlers never block the event loop and share the store timeout policy.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from chatsync.chat.errors import PersistenceError, failures
from chatsync.chat.manager import manager
from chatsync.chat.persistence import StoreGateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["users"])


def _gateway() -> StoreGateway:
    return manager.gateway


def _unavailable(exc: PersistenceError) -> JSONResponse:
    failures.report(exc.operation, exc)
    return JSONResponse({"message": "Store unavailable"}, status_code=503)


class SignupRequest(BaseModel):
    """Request body for registering a username."""
    username: str = Field(..., min_length=1, max_length=64)


@router.post("/signup")
async def signup(body: SignupRequest) -> JSONResponse:
    """Register a new username.

    Returns:
        ``{"success": true}``, 400 if the username is taken, 503 if the
        store did not answer in time.
    """
    try:
        user = await _gateway().create_user(body.username)
    except PersistenceError as exc:
        return _unavailable(exc)
    if user is None:
        return JSONResponse({"message": "Username exists"}, status_code=400)
    logger.info("[users] Registered %s", body.username)
    return JSONResponse({"success": True})


@router.get("/user/{username}")
async def get_user(username: str) -> JSONResponse:
    """Look up a user.

    Returns:
        The user with its live ``online`` flag and ``lastSeen``, or 404.
    """
    try:
        user = await _gateway().find_user(username)
    except PersistenceError as exc:
        return _unavailable(exc)
    if user is None:
        return JSONResponse({"message": "Not found"}, status_code=404)
    last_seen: Optional[str] = user.lastSeen.isoformat() if user.lastSeen else None
    return JSONResponse({
        "success": True,
        "username": user.username,
        "online": manager.presence.is_online(username),
        "lastSeen": last_seen,
    })


@router.get("/messages")
async def get_messages(
    user1: str = Query(..., min_length=1, description="One side of the conversation"),
    user2: str = Query(..., min_length=1, description="The other side"),
) -> JSONResponse:
    """Get every message between two users, oldest first."""
    try:
        messages = await _gateway().find_messages_between(user1, user2)
    except PersistenceError as exc:
        return _unavailable(exc)
    return JSONResponse([m.model_dump() for m in messages])
