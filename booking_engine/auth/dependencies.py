from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from booking_engine.auth import jwt_handler
from booking_engine.database import SessionLocal
from booking_engine.models.user import User

security = HTTPBearer()

STAFF_ROLES = frozenset({"staff", "admin"})


@dataclass(frozen=True)
class Identity:
    user_id: int
    role: str
    email: str

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_current_identity(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Identity:
    token = credentials.credentials
    try:
        payload = jwt_handler.decode_access_token(token)
    except Exception as exc:
        raise HTTPException(status_code=401, detail="Invalid token") from exc

    email = payload.get("sub")
    if not email:
        raise HTTPException(status_code=401, detail="Invalid token subject")

    db = SessionLocal()
    try:
        user = db.query(User).filter(User.email == email).first()
    finally:
        db.close()
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    return Identity(user_id=user.id, role=user.role or "client", email=user.email)


def require_staff(identity: Identity = Depends(get_current_identity)) -> Identity:
    if not identity.is_staff:
        raise HTTPException(status_code=403, detail="Only staff can manage appointments.")
    return identity


def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    if not identity.is_admin:
        raise HTTPException(status_code=403, detail="Only admins can change booking policy.")
    return identity


def user_id_from_authorization(authorization: str | None) -> int | None:
    """Best-effort user id for traffic classification; never touches the database."""
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    try:
        payload = jwt_handler.decode_access_token(authorization.split(" ", 1)[1].strip())
    except jwt.PyJWTError:
        return None
    user_id = payload.get("uid")
    return user_id if isinstance(user_id, int) else None
