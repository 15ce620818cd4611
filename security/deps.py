from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from core.db import get_db
from models.user import User
from security import jwt as jwt_utils
from services.cart import CartOwner


def _user_from_header(db: Session, authorization: str) -> User:
    if not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt_utils.decode_access(token)
        user_id = int(payload.get("sub"))
    except (jwt.PyJWTError, TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def get_current_user(
    db: Session = Depends(get_db), authorization: Optional[str] = Header(default=None, alias="Authorization")
) -> User:
    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return _user_from_header(db, authorization)


def get_optional_user(
    db: Session = Depends(get_db), authorization: Optional[str] = Header(default=None, alias="Authorization")
) -> Optional[User]:
    if not authorization:
        return None
    return _user_from_header(db, authorization)


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return current_user


def get_cart_owner(
    user: Optional[User] = Depends(get_optional_user),
    x_session_id: Optional[str] = Header(default=None, alias="X-Session-Id"),
) -> CartOwner:
    """Signed-in customers own their cart by id; guests by the X-Session-Id header."""
    if user is not None:
        return CartOwner(customer_id=user.id)
    if x_session_id:
        return CartOwner(session_id=x_session_id)
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing session id or bearer token")
