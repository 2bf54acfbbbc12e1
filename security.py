import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr

from config import JWT_ALG, JWT_EXPIRES_MINUTES, JWT_SECRET
from database import as_utc, get_db, to_object_id, utcnow
from exceptions import ValidationError

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def create_token(data: dict, expires_minutes: int = JWT_EXPIRES_MINUTES) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def token_for_user(user: dict) -> str:
    return create_token({
        "id": str(user["_id"]),
        "email": user["email"],
        "name": f"{user.get('first_name', '')} {user.get('last_name', '')}".strip(),
        "role": user.get("role", "customer"),
    })


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "first_name": user.get("first_name"),
        "last_name": user.get("last_name"),
        "email": user["email"],
        "phone": user.get("phone"),
        "role": user.get("role", "customer"),
        "is_active": user.get("is_active", True),
    }


class AuthUser(BaseModel):
    id: str
    email: EmailStr
    name: str
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def oid(self):
        return to_object_id(self.id)


def _decode(authorization: str) -> dict:
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("Invalid auth scheme")
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid Authorization header")
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token has expired")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def get_current_user(authorization: Optional[str] = Header(None), db=Depends(get_db)) -> AuthUser:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    payload = _decode(authorization)
    try:
        user = db["user"].find_one({"_id": to_object_id(payload.get("id"))})
    except ValidationError:
        user = None
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token")
    if not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Account has been deactivated")
    lock_until = as_utc(user.get("lock_until"))
    if lock_until and lock_until > utcnow():
        raise HTTPException(status_code=423, detail="Account is temporarily locked")
    return AuthUser(
        id=str(user["_id"]),
        email=user["email"],
        name=f"{user.get('first_name', '')} {user.get('last_name', '')}".strip(),
        role=user.get("role", "customer"),
    )


def get_optional_user(authorization: Optional[str] = Header(None), db=Depends(get_db)) -> Optional[AuthUser]:
    if not authorization or authorization.strip().lower() == "bearer guest-token":
        return None
    try:
        return get_current_user(authorization, db)
    except HTTPException:
        return None


def require_admin(user: AuthUser = Depends(get_current_user)) -> AuthUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Access denied. Admin privileges required.")
    return user
