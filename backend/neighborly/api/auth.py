import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from ..auth_utils import generate_otp, hash_password, verify_password
from ..config import OTP_MAX_ATTEMPTS, OTP_RESEND_COOLDOWN_SECONDS, OTP_TTL_MINUTES
from ..db import insert_unique
from ..deps import get_db, get_user
from ..errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from ..models import UQ_USER_EMAIL, OtpVerification, Role, User, utcnow
from ..policy import Action, Actor, ProfileResource, require
from ..schemas import (
    FederatedSignIn,
    LoginRequest,
    OtpResendRequest,
    OtpVerifyRequest,
    PasswordChange,
    RegisterRequest,
    UserOut,
)
from ..services import get_or_404, serialize_user

logger = logging.getLogger(__name__)

router = APIRouter()


def issue_otp(db: Session, user: User) -> OtpVerification:
    db.execute(delete(OtpVerification).where(OtpVerification.email == user.email))
    otp = OtpVerification(email=user.email, user_id=user.id, otp=generate_otp(), attempts=0, verified=False)
    db.add(otp)
    db.flush()
    # Mail delivery is handled by the outbound mail relay
    logger.info("[EMAIL] to=%s subj=Your Neighborly verification code", user.email)
    return otp


@router.post("/api/auth/register", response_model=UserOut)
def register(payload: RegisterRequest, db: Session = Depends(get_db)):
    invited = db.execute(select(User).where(User.email == payload.email)).scalar_one_or_none()
    if invited is not None and invited.invited_by is not None and invited.password_hash is None:
        # Invitees finish sign-up on the row created for them and keep its society
        invited.password_hash = hash_password(payload.password)
        invited.display_name = invited.display_name or (payload.display_name or "").strip() or None
        db.flush()
        issue_otp(db, invited)
        db.refresh(invited)
        logger.info("Invited user %s completed registration", invited.id)
        return serialize_user(invited)

    user = User(
        email=payload.email,
        display_name=(payload.display_name or "").strip() or None,
        password_hash=hash_password(payload.password),
        society=(payload.society or "").strip() or None,
        role=Role.UNVERIFIED,
        is_logged_in=False,
    )
    insert_unique(db, user, UQ_USER_EMAIL, "Email already registered")
    issue_otp(db, user)
    db.refresh(user)
    return serialize_user(user)


@router.post("/api/auth/verify-otp", response_model=UserOut)
def verify_otp(payload: OtpVerifyRequest, db: Session = Depends(get_db)):
    user = get_or_404(db, User, payload.user_id, "User")
    otp = db.execute(
        select(OtpVerification).where(
            OtpVerification.user_id == user.id,
            OtpVerification.verified == False,  # noqa: E712
        )
    ).scalar_one_or_none()
    if not otp:
        raise NotFoundError("No verification code for this user")

    attempts = otp.attempts + 1
    db.execute(update(OtpVerification).where(OtpVerification.id == otp.id).values(attempts=attempts))
    # The attempt counts even when the code turns out wrong
    db.commit()

    if utcnow() - otp.created_at > timedelta(minutes=OTP_TTL_MINUTES):
        raise ValidationError("Verification code has expired, please request a new one")
    if attempts > OTP_MAX_ATTEMPTS:
        raise AuthorizationError("Too many attempts, please request a new code")
    if otp.otp != payload.otp.strip():
        raise ValidationError("Invalid verification code")

    db.execute(delete(OtpVerification).where(OtpVerification.user_id == user.id))
    user.is_logged_in = True
    db.flush()
    db.refresh(user)
    logger.info("User %s verified their email", user.id)
    return serialize_user(user)


@router.post("/api/auth/resend-otp")
def resend_otp(payload: OtpResendRequest, db: Session = Depends(get_db)):
    user = get_or_404(db, User, payload.user_id, "User")
    pending = db.execute(
        select(OtpVerification).where(OtpVerification.user_id == user.id)
    ).scalar_one_or_none()
    if not pending:
        raise ValidationError("Email is already verified")
    if utcnow() - pending.created_at < timedelta(seconds=OTP_RESEND_COOLDOWN_SECONDS):
        raise ValidationError("Please wait before requesting another code")
    issue_otp(db, user)
    return {"status": "sent"}


@router.post("/api/auth/login", response_model=UserOut)
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    email = payload.email.strip().lower()
    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    unverified = db.execute(
        select(OtpVerification.id).where(OtpVerification.user_id == user.id)
    ).first()
    if unverified:
        raise AuthorizationError("Verify your email before signing in")
    user.is_logged_in = True
    db.flush()
    db.refresh(user)
    return serialize_user(user)


@router.post("/api/auth/logout", response_model=UserOut)
def logout(db: Session = Depends(get_db), user: User = Depends(get_user)):
    user.is_logged_in = False
    db.flush()
    db.refresh(user)
    return serialize_user(user)


@router.post("/api/auth/password", response_model=UserOut)
def change_password(payload: PasswordChange, db: Session = Depends(get_db), user: User = Depends(get_user)):
    require(Actor.from_user(user), Action.UPDATE, ProfileResource(user_id=user.id))
    if not verify_password(payload.current_password, user.password_hash):
        raise AuthorizationError("Current password is incorrect")
    user.password_hash = hash_password(payload.new_password)
    db.flush()
    db.refresh(user)
    logger.info("User %s changed their password", user.id)
    return serialize_user(user)


@router.post("/api/auth/federated", response_model=UserOut)
def federated_sign_in(payload: FederatedSignIn, db: Session = Depends(get_db)):
    email = payload.email.lower()
    user = db.get(User, payload.user_id)
    if user is None:
        owner = db.execute(select(User.id).where(User.email == email)).scalar_one_or_none()
        if owner is not None:
            raise ConflictError("Email is linked to another account", constraint=UQ_USER_EMAIL)
        user = User(
            id=payload.user_id,
            email=email,
            display_name=payload.display_name,
            role=Role.UNVERIFIED,
            is_logged_in=True,
        )
        insert_unique(db, user, UQ_USER_EMAIL, "Email already registered")
        logger.info("Created account %s from federated sign-in", user.id)
    else:
        if payload.display_name:
            user.display_name = payload.display_name
        user.is_logged_in = True
        db.flush()
    db.refresh(user)
    return serialize_user(user)
