import hmac
import logging
import secrets
from datetime import timedelta

from bson import ObjectId
from fastapi import APIRouter, Depends
from jose import JWTError
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import mailer
from config import settings
from database import as_utc, create_document, find_by_id, get_db, to_object_id, utcnow
from errors import Conflict, DeliveryFailed, Forbidden, InvalidOrExpiredCode, Unauthenticated
from schemas import (
    Developer,
    EmailVerification,
    Employer,
    LoginPayload,
    LogoutPayload,
    RefreshPayload,
    RefreshToken,
    RegisterPayload,
    SendOtpPayload,
    TokenResponse,
    User,
    VerifyOtpPayload,
)
from security import (
    Identity,
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    get_identity,
    hash_password,
    parse_ttl,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


def get_user_by_email(db: Database, email: str):
    return db["user"].find_one({"email": email.strip().lower()})


def issue_tokens(db: Database, user_id: str, role: str) -> TokenResponse:
    access_token = create_access_token({"id": user_id, "role": role})
    refresh_token = create_refresh_token({"id": user_id})
    expires_at = utcnow() + parse_ttl(settings.jwt_refresh_ttl)
    create_document(db, "refreshtoken", RefreshToken(user_id=user_id, token=refresh_token, expires_at=expires_at))
    return TokenResponse(access_token=access_token, refresh_token=refresh_token, user_id=user_id, role=role)


def create_account(db: Database, email: str, password: str, role: str, full_name=None) -> str:
    """Create a User and its matching profile extension.

    The two inserts are not transactional: when the profile insert fails the
    freshly created User is deleted again before the error propagates.
    """
    if get_user_by_email(db, email):
        raise Conflict("Email already in use")
    user = User(email=email, password_hash=hash_password(password), role=role, full_name=full_name)
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise Conflict("Email already in use")

    try:
        if role == "developer":
            create_document(db, "developer", Developer(user_id=user_id))
        elif role == "employer":
            create_document(db, "employer", Employer(user_id=user_id, company_name=full_name or "Company"))
    except Exception:
        logger.exception("Profile creation failed for %s; removing user %s", user.email, user_id)
        db["user"].delete_one({"_id": to_object_id(user_id)})
        raise
    return user_id


# ----------------------- Email verification -----------------------

@router.post("/send-otp")
def send_otp(payload: SendOtpPayload, db: Database = Depends(get_db)):
    email = payload.email.lower()
    if get_user_by_email(db, email):
        raise Conflict("Email already in use")

    db["emailverification"].delete_many({"email": email})
    otp = str(secrets.randbelow(900000) + 100000)
    expires_at = utcnow() + timedelta(minutes=mailer.OTP_TTL_MINUTES)
    create_document(db, "emailverification", EmailVerification(email=email, otp=otp, expires_at=expires_at))

    try:
        mailer.send_verification_email(email, otp)
    except mailer.MailerError as exc:
        logger.error("Failed to send verification email to %s: %s", email, exc)
        db["emailverification"].delete_many({"email": email})
        raise DeliveryFailed()
    return {"message": "Verification code sent to your email"}


@router.post("/verify-otp")
def verify_otp(payload: VerifyOtpPayload, db: Database = Depends(get_db)):
    email = payload.email.lower()
    record = db["emailverification"].find_one({"email": email, "verified": False})
    if not record:
        raise InvalidOrExpiredCode("No verification request found. Please request a new code.")
    if as_utc(record["expires_at"]) < utcnow():
        db["emailverification"].delete_one({"_id": record["_id"]})
        raise InvalidOrExpiredCode("Verification code expired. Please request a new one.")
    if not hmac.compare_digest(record["otp"].encode(), payload.otp.encode()):
        raise InvalidOrExpiredCode("Incorrect verification code")

    result = db["emailverification"].update_one(
        {"_id": record["_id"], "verified": False},
        {"$set": {"verified": True, "updated_at": utcnow()}},
    )
    if result.modified_count != 1:
        raise InvalidOrExpiredCode("Verification code already used")
    return {"message": "Email verified successfully"}


# ----------------------- Accounts -----------------------

@router.post("/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterPayload, db: Database = Depends(get_db)):
    email = payload.email.lower()
    verification = db["emailverification"].find_one({"email": email, "verified": True})
    if not verification or as_utc(verification["expires_at"]) < utcnow():
        raise Forbidden("Please verify your email before creating an account.")

    user_id = create_account(db, email, payload.password, payload.role, payload.full_name)
    db["emailverification"].delete_many({"email": email})
    return issue_tokens(db, user_id, payload.role)


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginPayload, db: Database = Depends(get_db)):
    user = get_user_by_email(db, payload.email)
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise Unauthenticated("Invalid credentials")
    if user.get("status") != "active":
        raise Forbidden("Account suspended")
    return issue_tokens(db, str(user["_id"]), user["role"])


@router.post("/refresh")
def refresh(payload: RefreshPayload, db: Database = Depends(get_db)):
    try:
        claims = decode_refresh_token(payload.refresh_token)
    except JWTError:
        raise Unauthenticated("Invalid refresh token")
    stored = db["refreshtoken"].find_one({"token": payload.refresh_token})
    if not stored or as_utc(stored["expires_at"]) <= utcnow():
        raise Unauthenticated("Invalid refresh token")
    user_id = str(claims.get("id", ""))
    user = db["user"].find_one({"_id": ObjectId(user_id)}) if ObjectId.is_valid(user_id) else None
    if not user:
        raise Unauthenticated("User not found")
    if user.get("status") != "active":
        raise Forbidden("Account suspended")
    return {"access_token": create_access_token({"id": str(user["_id"]), "role": user["role"]}), "token_type": "bearer"}


@router.post("/logout")
def logout(payload: LogoutPayload, identity: Identity = Depends(get_identity), db: Database = Depends(get_db)):
    if payload.refresh_token:
        db["refreshtoken"].delete_one({"token": payload.refresh_token, "user_id": identity.id})
    return {"message": "Logged out"}


@router.get("/me")
def me(identity: Identity = Depends(get_identity), db: Database = Depends(get_db)):
    user = find_by_id(db, "user", identity.id, "User")
    return {
        "id": str(user["_id"]),
        "email": user["email"],
        "role": user["role"],
        "full_name": user.get("full_name"),
        "status": user.get("status"),
    }
