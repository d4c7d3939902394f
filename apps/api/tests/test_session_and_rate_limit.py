from unittest.mock import patch

from fastapi import HTTPException
from jose import jwt
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from starlette.requests import Request

from config import settings
from main import app
from routers import rate_limit
from services.permissions import has_permission
from services.session_token import create_session_token, decode_session_token
from models.user import User


def test_session_token_round_trip_carries_subject_and_email():
    issued = create_session_token("owner", email="owner@example.com", expires_hours=2)

    claims = decode_session_token(issued["token"])

    assert claims.user_id == "owner"
    assert claims.email == "owner@example.com"
    assert claims.expires_at == issued["expires_at"]


def test_session_token_rejects_foreign_token_type():
    token = jwt.encode({"sub": "owner", "type": "refresh"}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    with pytest.raises(ValueError, match="type"):
        decode_session_token(token)


def test_session_token_rejects_bad_signature():
    token = jwt.encode({"sub": "owner", "type": "portal_session"}, "other-secret", algorithm="HS256")

    with pytest.raises(ValueError):
        decode_session_token(token)


def test_role_permissions():
    visitor = User(id="v", email="v@example.com", role="visitor")
    public = User(id="p", email="p@example.com", role="public")
    admin = User(id="a", email="a@example.com", role="super_admin")

    assert has_permission(visitor, "create tasks")
    assert not has_permission(visitor, "view all tasks")
    assert has_permission(public, "view all email logs")
    assert not has_permission(public, "send emails")
    assert has_permission(admin, "anything at all")


def _request(client_host="10.0.0.7"):
    return Request({"type": "http", "app": app, "headers": [], "client": (client_host, 1234)})


@pytest.mark.asyncio
async def test_rate_limit_falls_back_to_local_counter_when_redis_is_down():
    app.state.disable_rate_limits = False
    dependency = rate_limit.rate_limit("task_create", limit=2, window_seconds=60)

    with patch.object(rate_limit, "_count_in_redis", side_effect=RedisConnectionError("down")):
        await dependency(_request())
        await dependency(_request())
        with pytest.raises(HTTPException) as exc_info:
            await dependency(_request())
        await dependency(_request(client_host="10.0.0.8"))

    assert exc_info.value.status_code == 429
    assert rate_limit._local_counters["portal:rate:task_create:10.0.0.7"][0] == 3
