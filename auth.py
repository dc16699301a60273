"""
Authentication
JWT bearer tokens for every marketplace role
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import bcrypt
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel, Field

from config import settings
from database import create_document, db, get_document, serialize, update_document
from schemas import AppUser, GeoPoint, Role

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

# Roles a user may pick at registration; admins are created out of band
SELF_SERVICE_ROLES = {"customer", "pharmacist", "doctor", "technician", "delivery_agent"}

# Roles that can act without an admin approving the account
PRE_APPROVED_ROLES = ("customer", "admin")

# Mongo filter for approved accounts; documents without the flag count as approved
APPROVED = {"is_approved": {"$ne": False}}

router = APIRouter(prefix="/api/auth", tags=["Auth"])
users_router = APIRouter(prefix="/api/users", tags=["Users"])


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(user_id: str, role: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"sub": user_id, "role": role, "exp": expire}
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None


def public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    data = serialize(doc)
    data.pop("password_hash", None)
    return data


def get_current_account(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict[str, Any]:
    """Resolve the bearer token to an active user document."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not credentials:
        raise credentials_exception

    payload = decode_token(credentials.credentials)
    if payload is None or not payload.get("sub"):
        raise credentials_exception

    user = get_document("appuser", payload["sub"])
    if user is None:
        raise credentials_exception
    if not user.get("is_active", True):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Account has been deactivated")
    return public_user(user)


def get_current_user(user: Dict[str, Any] = Depends(get_current_account)) -> Dict[str, Any]:
    """Like get_current_account, but staff accounts must have been approved by an admin."""
    if user.get("role") not in PRE_APPROVED_ROLES and user.get("is_approved") is False:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is awaiting admin approval")
    return user


def require_roles(*roles: str):
    """Dependency factory restricting an endpoint to the given roles."""
    def checker(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if user.get("role") not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"User role '{user.get('role')}' is not authorized to access this resource",
            )
        return user
    return checker


# -----------------------------
# Routes
# -----------------------------

class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: Optional[str] = None
    password: str = Field(..., min_length=6)
    role: Role = "customer"
    address: Optional[str] = None
    location: Optional[GeoPoint] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


@router.post("/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterRequest):
    if payload.role not in SELF_SERVICE_ROLES:
        raise HTTPException(status_code=400, detail=f"Cannot self-register as '{payload.role}'")
    email = payload.email.lower()
    if db["appuser"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="Email already registered")

    user = AppUser(
        name=payload.name,
        email=email,
        phone=payload.phone,
        role=payload.role,
        password_hash=hash_password(payload.password),
        is_approved=payload.role == "customer",
        address=payload.address,
        location=payload.location,
    )
    user_id = create_document("appuser", user)
    logger.info("[AUTH] Registered %s user %s", payload.role, user_id)
    doc = get_document("appuser", user_id)
    return TokenResponse(access_token=create_access_token(user_id, payload.role), user=public_user(doc))


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest):
    user = db["appuser"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Account has been deactivated")
    user_id = str(user["_id"])
    return TokenResponse(access_token=create_access_token(user_id, user["role"]), user=public_user(user))


@router.get("/me")
def me(user: Dict[str, Any] = Depends(get_current_account)):
    return user


# -----------------------------
# User administration
# -----------------------------

class ApproveUserRequest(BaseModel):
    approve: bool = True
    review_notes: Optional[str] = None


@users_router.get("")
def list_users(role: Optional[Role] = None, is_approved: Optional[bool] = None,
               user: Dict[str, Any] = Depends(require_roles("admin"))):
    query: Dict[str, Any] = {}
    if role:
        query["role"] = role
    if is_approved is not None:
        query.update(APPROVED if is_approved else {"is_approved": False})
    return [public_user(doc) for doc in db["appuser"].find(query).sort("created_at", -1)]


@users_router.patch("/{user_id}/approve")
def approve_user(user_id: str, payload: Optional[ApproveUserRequest] = None,
                 admin: Dict[str, Any] = Depends(require_roles("admin"))):
    payload = payload or ApproveUserRequest()
    if not update_document("appuser", user_id, {"is_approved": payload.approve,
                                                "review_notes": payload.review_notes}):
        raise HTTPException(status_code=404, detail="User not found")
    logger.info("[USERS] %s %s by %s", "Approved" if payload.approve else "Rejected", user_id, admin["_id"])
    return public_user(get_document("appuser", user_id))
