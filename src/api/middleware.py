"""Rate limiting (slowapi), keyed by caller identity when known."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address


def identity_or_address(request: Request) -> str:
    user_id = request.headers.get("x-user-id")
    return f"user:{user_id}" if user_id else get_remote_address(request)


limiter = Limiter(key_func=identity_or_address)
