import logging
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import jwt
from channels.db import database_sync_to_async
from channels.middleware import BaseMiddleware
from django.conf import settings
from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
TOKEN_TYPE = "ws"


def issue_token(user, ttl_seconds=None) -> str:
    """Short-lived token a browser passes as ``?token=`` when opening the socket."""
    ttl = ttl_seconds or getattr(settings, "NOTIFICATIONS_TOKEN_TTL", 300)
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user.pk),
        "typ": TOKEN_TYPE,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl)).timestamp()),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=ALGORITHM)


def user_for_token(token: str):
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.PyJWTError as e:
        logger.info("Rejected websocket token: %s", e)
        return AnonymousUser()
    if payload.get("typ") != TOKEN_TYPE:
        return AnonymousUser()
    user = get_user_model().objects.filter(pk=payload.get("sub"), is_active=True).first()
    return user or AnonymousUser()


class JwtQueryAuthMiddleware(BaseMiddleware):
    """Authenticate a websocket from ``?token=`` when the session did not."""

    async def __call__(self, scope, receive, send):
        query = parse_qs((scope.get("query_string") or b"").decode("utf-8"))
        token = (query.get("token") or [""])[0]
        if token:
            scope = dict(scope)
            scope["user"] = await database_sync_to_async(user_for_token)(token)
        return await super().__call__(scope, receive, send)
