"""Users, password hashing and the signed session cookie."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

import bcrypt
from fastapi import Depends, HTTPException, Request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from database import get_db
from models import Location, User, UserRole, UserStatus
from schemas import OnboardingIn, RegisterIn, UserIn

logger = logging.getLogger(__name__)

SESSION_COOKIE = "cosbudget_session"
SESSION_MAX_AGE = 60 * 60 * 12
PRIVILEGED_ROLES = frozenset({UserRole.admin, UserRole.office})


def is_privileged(role: UserRole) -> bool:
    return role in PRIVILEGED_ROLES


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # malformed hash or a password over the 72 byte bcrypt limit
        return False


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    def by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(User.email == email.strip().lower())
        )

    def create(self, data: UserIn) -> User:
        email = data.email.strip().lower()
        if self.by_email(email):
            raise ValueError("User already exists")
        if data.role == UserRole.manager:
            if data.location_id is None:
                raise ValueError("Managers need a location")
            if not self.session.get(Location, data.location_id):
                raise ValueError("Location not found")
        user = User(
            email=email,
            name=data.name,
            password_hash=hash_password(data.password),
            role=data.role,
            location_id=data.location_id,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info("user_created: id=%s role=%s", user.id, user.role.value)
        return user

    def authenticate(self, email: str, password: str) -> Optional[User]:
        user = self.by_email(email)
        if not user or not user.is_active:
            return None
        if not verify_password(password, user.password_hash):
            logger.warning("login_failed: user_id=%s", user.id)
            return None
        return user

    def register(self, data: RegisterIn) -> User:
        """Self sign-up; the account stays pending until onboarding is approved."""
        email = data.email.strip().lower()
        if self.by_email(email):
            raise ValueError("User already exists")
        user = User(
            email=email,
            name=data.name,
            password_hash=hash_password(data.password),
            role=UserRole.manager,
            status=UserStatus.pending_approval,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        logger.info("user_registered: id=%s", user.id)
        return user

    def has_active_admin(self) -> bool:
        return (
            self.session.scalar(
                select(User.id).where(
                    User.role == UserRole.admin, User.status == UserStatus.active
                ).limit(1)
            )
            is not None
        )

    def onboard(self, user: User, data: OnboardingIn) -> User:
        if user.status == UserStatus.active:
            raise ValueError("User is already active")
        if data.role == UserRole.manager:
            if data.location_id is None or not self.session.get(Location, data.location_id):
                raise ValueError("Invalid location")
        # the first admin activates itself; every later account waits for approval
        bootstrap = data.role == UserRole.admin and not self.has_active_admin()
        user.name = data.name
        user.role = data.role
        user.location_id = data.location_id if data.role == UserRole.manager else None
        user.status = UserStatus.active if bootstrap else UserStatus.pending_approval
        self.session.commit()
        self.session.refresh(user)
        logger.info(
            "user_onboarded: id=%s role=%s status=%s",
            user.id,
            user.role.value,
            user.status.value,
        )
        return user

    def list_pending(self) -> list[User]:
        return list(
            self.session.scalars(
                select(User)
                .where(User.status == UserStatus.pending_approval)
                .order_by(User.created_at, User.id)
            )
        )

    def approve(self, approver: User, target: User) -> User:
        if target.status != UserStatus.pending_approval:
            raise ValueError("User is not pending approval")
        target.status = UserStatus.active
        target.permitted_by_id = approver.id
        target.permitted_at = datetime.utcnow()
        self.session.commit()
        self.session.refresh(target)
        logger.info("user_approved: id=%s by=%s", target.id, approver.id)
        return target


def can_approve(approver: User, target: User) -> bool:
    """Admins approve anyone; office staff approve managers only."""
    if approver.role == UserRole.admin:
        return True
    return approver.role == UserRole.office and target.role == UserRole.manager


def _session_serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(get_settings().secret_key, salt="cosbudget-session")


def issue_session(user_id: int) -> str:
    return _session_serializer().dumps({"uid": user_id})


def read_session(token: Optional[str], max_age: int = SESSION_MAX_AGE) -> Optional[int]:
    if not token:
        return None
    try:
        data = _session_serializer().loads(token, max_age=max_age)
    except (SignatureExpired, BadSignature):
        return None
    uid = data.get("uid") if isinstance(data, dict) else None
    return uid if isinstance(uid, int) else None


def optional_user(request: Request, db: Session = Depends(get_db)) -> Optional[User]:
    user_id = read_session(request.cookies.get(SESSION_COOKIE))
    if user_id is None:
        return None
    user = UserService(db).get(user_id)
    if not user or not user.is_active:
        return None
    return user


def current_user(user: Optional[User] = Depends(optional_user)) -> User:
    if user is None:
        raise HTTPException(status_code=401, detail="Not signed in")
    return user


def active_user(user: User = Depends(current_user)) -> User:
    if user.status != UserStatus.active:
        raise HTTPException(status_code=403, detail="Account awaiting approval")
    return user


def require_privileged(user: User = Depends(active_user)) -> User:
    if not is_privileged(user.role):
        raise HTTPException(status_code=403, detail="Forbidden")
    return user


def ensure_location_access(user: User, location_id: int) -> None:
    """Managers may only see their own location."""
    if is_privileged(user.role):
        return
    if user.location_id != location_id:
        raise HTTPException(status_code=403, detail="Forbidden")
