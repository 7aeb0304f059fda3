import logging
from datetime import timedelta

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

import settings
from database import create_document, db, parse_object_id, serialize, transaction, utcnow
from errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from schemas import (
    Artisan,
    ArtisanRegisterPayload,
    DeactivatePayload,
    ForgotPasswordPayload,
    LoginPayload,
    RegisterPayload,
    ResetPasswordPayload,
    User,
)
from security import (
    create_access_token,
    get_current_user,
    get_password_hash,
    hash_reset_token,
    new_reset_token,
    require_admin,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def user_response(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "username": user["username"],
        "email": user["email"],
        "phone": user.get("phone", ""),
        "role": user["role"],
        "isActive": user.get("isActive", True),
        "artisanId": str(user["artisanId"]) if user.get("artisanId") else None,
        "createdAt": serialize(user.get("createdAt")),
    }


def token_response(user: dict, status_code: int, message: str) -> JSONResponse:
    token = create_access_token(data={"sub": str(user["_id"])})
    response = JSONResponse(
        status_code=status_code,
        content={"success": True, "token": token, "user": user_response(user), "message": message},
    )
    response.set_cookie(
        settings.COOKIE_NAME,
        token,
        max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="strict" if settings.ENVIRONMENT == "production" else "lax",
    )
    return response


def _validate_registration(payload: RegisterPayload):
    if not payload.username or not payload.email or not payload.password:
        raise ValidationError("Please provide username, email, and password")
    if len(payload.password) < settings.PASSWORD_MIN_LENGTH:
        raise ValidationError(f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters")
    email = payload.email.strip().lower()
    existing = db["user"].find_one({"$or": [{"email": email}, {"username": payload.username}]})
    if existing:
        field = "email" if existing["email"] == email else "username"
        raise ConflictError(field, "User already exists with this email or username")
    return email


def _new_user(payload: RegisterPayload, email: str, role: str) -> User:
    try:
        return User(
            username=payload.username.strip(),
            email=email,
            password_hash=get_password_hash(payload.password),
            phone=payload.phone or "",
            role=role,
        )
    except PydanticValidationError as e:
        raise ValidationError(e.errors()[0]["msg"])


# Auth endpoints
@router.post("/register")
def register(payload: RegisterPayload):
    email = _validate_registration(payload)
    user_id = create_document("user", _new_user(payload, email, "user"))
    user = db["user"].find_one({"_id": user_id})
    logger.info("Registered user %s", user_id)
    return token_response(user, 201, "Registration successful!")


@router.post("/register/artisan")
def register_artisan(payload: ArtisanRegisterPayload):
    """Create the applicant's user and artisan profile together.

    The user starts as ``pending_artisan`` and the profile as ``pending``; both
    documents and the back-reference are written in one transaction.
    """
    email = _validate_registration(payload)
    user_doc = _new_user(payload, email, "pending_artisan")
    application = payload.artisan
    with transaction() as session:
        user_id = create_document("user", user_doc, session=session)
        profile = Artisan(
            user_id=user_id,
            email=email,
            **application.model_dump(),
        )
        artisan_id = create_document("artisan", profile, session=session)
        db["user"].update_one(
            {"_id": user_id}, {"$set": {"artisanId": artisan_id}}, session=session
        )
    user = db["user"].find_one({"_id": user_id})
    logger.info("Artisan application %s submitted by user %s", artisan_id, user_id)
    return token_response(user, 201, "Application submitted! We will review it shortly.")


@router.post("/login")
def login(payload: LoginPayload):
    if payload.email:
        query = {"email": payload.email.strip().lower()}
    elif payload.username:
        query = {"username": payload.username}
    else:
        raise ValidationError("Email or username is required")

    user = db["user"].find_one(query)
    if not user or not verify_password(payload.password, user.get("passwordHash")):
        raise AuthenticationError("Invalid email or password" if payload.email else "Invalid username or password")
    if not user.get("isActive", True):
        raise AuthenticationError("Account is deactivated. Please contact support.")

    now = utcnow()
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"lastLogin": now}, "$inc": {"loginCount": 1}},
    )
    if user.get("artisanId"):
        db["artisan"].update_one({"_id": user["artisanId"]}, {"$set": {"lastLoginAt": now}})
    return token_response(user, 200, "Login successful!")


@router.get("/logout")
def logout(user=Depends(get_current_user)):
    response = JSONResponse(content={"success": True, "message": "Logged out successfully"})
    response.delete_cookie(settings.COOKIE_NAME)
    return response


@router.get("/me")
def me(user=Depends(get_current_user)):
    return {"success": True, "user": user_response(user)}


@router.put("/deactivate/{user_id}")
def deactivate_user(user_id: str, payload: DeactivatePayload = DeactivatePayload(), admin=Depends(require_admin)):
    oid = parse_object_id(user_id, "User")
    if oid == admin["_id"]:
        raise ValidationError("You cannot deactivate your own account")
    result = db["user"].update_one(
        {"_id": oid},
        {
            "$set": {"isActive": False, "deactivationReason": payload.reason, "deactivatedAt": utcnow(), "updatedAt": utcnow()},
            "$unset": {"selfDeactivated": ""},
        },
    )
    if result.matched_count == 0:
        raise NotFoundError("User not found")
    logger.info("User %s deactivated by %s", oid, admin["_id"])
    return {"success": True, "message": "User deactivated successfully"}


@router.put("/activate/{user_id}")
def activate_user(user_id: str, admin=Depends(require_admin)):
    oid = parse_object_id(user_id, "User")
    result = db["user"].update_one(
        {"_id": oid},
        {"$set": {"isActive": True, "deactivationReason": "", "deactivatedAt": None, "updatedAt": utcnow()}},
    )
    if result.matched_count == 0:
        raise NotFoundError("User not found")
    logger.info("User %s activated by %s", oid, admin["_id"])
    return {"success": True, "message": "User activated successfully"}


@router.post("/forgotpassword")
def forgot_password(payload: ForgotPasswordPayload):
    if not payload.email:
        raise ValidationError("Please provide email")
    user = db["user"].find_one({"email": payload.email.strip().lower()})
    if not user:
        raise NotFoundError("No user found with this email")
    if not user.get("isActive", True):
        raise ValidationError("Account is deactivated. Please contact support.")

    token, digest = new_reset_token()
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "resetPasswordToken": digest,
            "resetPasswordExpires": utcnow() + timedelta(minutes=settings.RESET_TOKEN_EXPIRE_MINUTES),
        }},
    )
    # delivery is handled by the mail relay watching this log
    logger.info("Password reset requested for user %s, token %s", user["_id"], token)
    body = {"success": True, "message": "Password reset instructions sent"}
    if settings.ENVIRONMENT != "production":
        body["resetToken"] = token
    return body


@router.put("/resetpassword/{reset_token}")
def reset_password(reset_token: str, payload: ResetPasswordPayload):
    if not payload.password or len(payload.password) < settings.PASSWORD_MIN_LENGTH:
        raise ValidationError(f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters")
    user = db["user"].find_one({
        "resetPasswordToken": hash_reset_token(reset_token),
        "resetPasswordExpires": {"$gt": utcnow()},
    })
    if not user:
        raise ValidationError("Invalid or expired reset token")
    db["user"].update_one(
        {"_id": user["_id"]},
        {
            "$set": {"passwordHash": get_password_hash(payload.password), "updatedAt": utcnow()},
            "$unset": {"resetPasswordToken": "", "resetPasswordExpires": ""},
        },
    )
    logger.info("Password reset for user %s", user["_id"])
    return token_response(db["user"].find_one({"_id": user["_id"]}), 200, "Password reset successful")
