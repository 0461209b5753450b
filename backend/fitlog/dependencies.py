"""FastAPI dependencies for caller identity and outbound clients."""
from typing import AsyncIterator

import httpx
from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from fitlog.database import get_db
from fitlog.models import User
from fitlog.services.strava import build_http_client


def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    """
    Get the currently authenticated user from the session.

    The session is populated by the login flow, which lives outside this
    service. Raises HTTPException if no user is logged in.
    """
    user_id = request.session.get("user_id")

    if not user_id:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated. Please log in."
        )

    user = db.query(User).filter(User.id == user_id).first()

    if not user:
        # Session has invalid user_id (user was deleted?)
        request.session.clear()
        raise HTTPException(
            status_code=401,
            detail="Session invalid. Please log in again."
        )

    return user


async def get_strava_client() -> AsyncIterator[httpx.AsyncClient]:
    """
    Dependency for a Strava HTTP client, closed after the request.

    Yields:
        AsyncClient bound to the Strava API base URL with the request timeout.
    """
    async with build_http_client() as client:
        yield client
