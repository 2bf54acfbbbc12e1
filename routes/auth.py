import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import DuplicateKeyError

from config import LOCK_MINUTES, MAX_LOGIN_ATTEMPTS
from database import as_utc, create_document, get_db, utcnow
from schemas import User as UserSchema
from security import (
    AuthUser,
    get_current_user,
    hash_password,
    public_user,
    token_for_user,
    verify_password,
)
from services.audit import log_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


# --------------------- Models ---------------------

class RegisterRequest(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(None, min_length=1, max_length=50)
    phone: Optional[str] = None


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


# --------------------- Helpers ---------------------

def _authenticate(db, req: LoginRequest, request: Request) -> dict:
    """Check credentials, counting failures towards a temporary lock"""
    email = req.email.lower()
    user = db["user"].find_one({"email": email})
    if not user:
        log_event(db, "failed_login_attempt", "security", details={"email": email, "reason": "unknown_email"},
                  request=request, status="failure")
        raise HTTPException(status_code=401, detail="Invalid credentials")

    lock_until = as_utc(user.get("lock_until"))
    if lock_until and lock_until > utcnow():
        raise HTTPException(status_code=423,
                            detail="Account is temporarily locked due to too many failed login attempts")
    if not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Account has been deactivated")

    if not verify_password(req.password, user.get("password_hash", "")):
        attempts = user.get("login_attempts", 0) + 1
        updates = {"login_attempts": attempts}
        if attempts >= MAX_LOGIN_ATTEMPTS:
            updates = {"login_attempts": 0, "lock_until": utcnow() + timedelta(minutes=LOCK_MINUTES)}
            logger.warning("Account %s locked after %s failed logins", email, attempts)
            log_event(db, "account_locked", "security", user_id=user["_id"], resource_id=user["_id"],
                      details={"email": email, "attempts": attempts}, request=request, status="failure")
        db["user"].update_one({"_id": user["_id"]}, {"$set": updates})
        log_event(db, "failed_login_attempt", "security", user_id=user["_id"], resource_id=user["_id"],
                  details={"email": email, "attempts": attempts}, request=request, status="failure")
        raise HTTPException(status_code=401, detail="Invalid credentials")

    now = utcnow()
    db["user"].update_one({"_id": user["_id"]},
                          {"$set": {"login_attempts": 0, "lock_until": None, "last_login": now}})
    user["last_login"] = now
    return user


# --------------------- Routes ---------------------

@router.post("/register", status_code=201)
def register(req: RegisterRequest, request: Request, db=Depends(get_db)):
    email = req.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="User already exists with this email")
    user_doc = UserSchema(
        first_name=req.first_name.strip(),
        last_name=req.last_name.strip(),
        email=email,
        password_hash=hash_password(req.password),
        phone=req.phone,
        role="customer",
        is_active=True,
    )
    try:
        user_id = create_document(db, "user", user_doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="User already exists with this email")
    user = db["user"].find_one({"email": email})
    log_event(db, "user_register", "user", user_id=user_id, resource_id=user_id,
              details={"email": email}, request=request)
    return {"success": True, "token": token_for_user(user), "user": public_user(user)}


@router.post("/login")
def login(req: LoginRequest, request: Request, db=Depends(get_db)):
    user = _authenticate(db, req, request)
    log_event(db, "user_login", "user", user_id=user["_id"], resource_id=user["_id"], request=request)
    return {"success": True, "token": token_for_user(user), "user": public_user(user)}


@router.post("/admin/login")
def admin_login(req: LoginRequest, request: Request, db=Depends(get_db)):
    user = _authenticate(db, req, request)
    if user.get("role") != "admin":
        log_event(db, "unauthorized_admin_access", "security", user_id=user["_id"], request=request,
                  status="failure")
        raise HTTPException(status_code=403, detail="Access denied. Admin privileges required.")
    log_event(db, "admin_login", "user", user_id=user["_id"], resource_id=user["_id"], request=request)
    return {"success": True, "token": token_for_user(user), "user": public_user(user)}


@router.get("/me")
def me(user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    doc = db["user"].find_one({"_id": user.oid})
    data = public_user(doc)
    data["last_login"] = as_utc(doc.get("last_login")).isoformat() if doc.get("last_login") else None
    return {"success": True, "user": data}


@router.put("/profile")
def update_profile(req: ProfileUpdate, request: Request, user: AuthUser = Depends(get_current_user),
                   db=Depends(get_db)):
    updates = req.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    updates["updated_at"] = utcnow()
    db["user"].update_one({"_id": user.oid}, {"$set": updates})
    log_event(db, "profile_update", "user", user_id=user.id, resource_id=user.oid,
              details={"fields": sorted(k for k in updates if k != "updated_at")}, request=request)
    return {"success": True, "user": public_user(db["user"].find_one({"_id": user.oid}))}


@router.post("/change-password")
def change_password(req: ChangePasswordRequest, request: Request, user: AuthUser = Depends(get_current_user),
                    db=Depends(get_db)):
    doc = db["user"].find_one({"_id": user.oid})
    if not verify_password(req.current_password, doc.get("password_hash", "")):
        log_event(db, "password_change", "security", user_id=user.id, request=request, status="failure",
                  error_message="Current password is incorrect")
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    db["user"].update_one({"_id": user.oid},
                          {"$set": {"password_hash": hash_password(req.new_password), "updated_at": utcnow()}})
    log_event(db, "password_change", "security", user_id=user.id, resource_id=user.oid, request=request)
    return {"success": True, "message": "Password changed successfully"}


@router.post("/logout")
def logout(request: Request, user: AuthUser = Depends(get_current_user), db=Depends(get_db)):
    log_event(db, "user_logout", "user", user_id=user.id, resource_id=user.oid, request=request)
    return {"success": True, "message": "Logged out successfully"}
