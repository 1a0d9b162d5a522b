import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

import jwt
from bson import ObjectId
from fastapi import APIRouter, Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import AppConfig, get_config
from database import create_document, get_db, serialize_doc, utcnow
from schemas import Address

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

security = HTTPBearer(auto_error=False)
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")

PRIVATE_USER_FIELDS = ("hashed_password",)


def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return password_ctx.verify(password, hashed)


def create_token(user: dict, config: AppConfig) -> str:
    now = utcnow()
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "is_admin": user.get("is_admin", False),
        "exp": now + timedelta(minutes=config.jwt_expires_min),
        "iat": now,
    }
    return jwt.encode(payload, config.jwt_secret, algorithm="HS256")


def decode_token(token: str, config: AppConfig) -> dict:
    try:
        return jwt.decode(token, config.jwt_secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                     db: Database = Depends(get_db),
                     config: AppConfig = Depends(get_config)) -> dict:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    payload = decode_token(credentials.credentials, config)
    uid = payload.get("sub")
    if not uid or not isinstance(uid, str) or not ObjectId.is_valid(uid):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db["user"].find_one({"_id": ObjectId(uid)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account is deactivated")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if not user.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin only")
    return user


def public_user(user: dict) -> dict:
    return serialize_doc(user, hidden=PRIVATE_USER_FIELDS)


# Schemas (request)

class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    addresses: Optional[List[Address]] = None


@router.post("/register")
def register(payload: RegisterRequest, db: Database = Depends(get_db), config: AppConfig = Depends(get_config)):
    if len(payload.password) < 6:
        raise HTTPException(status_code=400, detail="Password must be at least 6 characters")
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    doc = {
        "name": payload.name,
        "email": email,
        "hashed_password": hash_password(payload.password),
        "phone": None,
        "is_active": True,
        "is_admin": False,
        "addresses": [],
    }
    try:
        user = create_document(db, "user", doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    logger.info("Registered user %s", user["_id"])
    return {"token": create_token(user, config), "user": public_user(user)}


@router.post("/login")
def login(payload: LoginRequest, db: Database = Depends(get_db), config: AppConfig = Depends(get_config)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("hashed_password", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="Account is deactivated")
    return {"token": create_token(user, config), "user": public_user(user)}


@router.get("/me")
def me(current_user: dict = Depends(get_current_user)):
    return public_user(current_user)


@router.put("/me")
def update_profile(update: ProfileUpdate, current_user: dict = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    changes: Dict[str, Any] = update.model_dump(exclude_unset=True)
    changes["updated_at"] = utcnow()
    db["user"].update_one({"_id": current_user["_id"]}, {"$set": changes})
    return public_user(db["user"].find_one({"_id": current_user["_id"]}))
