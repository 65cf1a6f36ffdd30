from fastapi import Depends, Request
from sqlalchemy.orm import Session
from starlette.requests import HTTPConnection
from shared.core import set_request_context
from storefront.auth import user_id_from_token
from storefront.domain.errors import AuthenticationError, PermissionDeniedError
from storefront.domain.models import User, UserRole
from storefront.infrastructure.db import get_db
from storefront.infrastructure.realtime import EventBroadcaster

BEARER_PREFIX = "Bearer "

def get_broadcaster(conn: HTTPConnection) -> EventBroadcaster:
    return conn.app.state.broadcaster

def load_user(db: Session, token: str) -> User:
    user_id = user_id_from_token(token)
    if user_id is None:
        raise AuthenticationError("Invalid token")
    user = db.get(User, user_id)
    if user is None:
        raise AuthenticationError("Unknown user")
    set_request_context(user_id=str(user.id))
    return user

def get_current_user(request: Request, db: Session = Depends(get_db)) -> User:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith(BEARER_PREFIX):
        raise AuthenticationError("Missing token")
    return load_user(db, auth_header[len(BEARER_PREFIX):].strip())

def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.ADMIN.value:
        raise PermissionDeniedError("Admin access required")
    return user
