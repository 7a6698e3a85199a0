"""Registration, role assignment and subject lifecycle."""
from datetime import datetime
from typing import Iterable, List, Optional
import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from codearena import policy
from codearena.errors import Conflict, InvariantViolation, LastAdmin, NotFound, RoleNotHeld, ValidationFailed
from codearena.identity import IdentityClaims, get_password_hash, verify_password
from codearena.models import Role, User, UserRoleLink
from codearena.schemas import UserRead

logger = logging.getLogger("codearena.users")

# Development accounts for the legacy credential path (CODEARENA_SEED_DEV_USERS).
DEV_USERS = {
    "user@codearena.com": {"uid": "dev-user", "password": "password", "roles": [policy.USER]},
    "setter@codearena.com": {"uid": "dev-setter", "password": "password", "roles": [policy.USER, policy.PROBLEM_SETTER]},
    "tester@codearena.com": {"uid": "dev-tester", "password": "password", "roles": [policy.USER, policy.TESTER]},
    "admin@codearena.com": {"uid": "dev-admin", "password": "password", "roles": [policy.USER, policy.ADMIN]},
}


def get_user_by_uid(session: Session, uid: str) -> Optional[User]:
    return session.exec(select(User).where(User.firebase_uid == uid)).first()


def get_user_by_email(session: Session, email: str) -> Optional[User]:
    return session.exec(select(User).where(User.email == email)).first()


def require_user(session: Session, uid: str) -> User:
    user = get_user_by_uid(session, uid)
    if not user:
        raise NotFound(f"User not found: {uid}")
    return user


def user_read(user: User) -> UserRead:
    return UserRead(
        uid=user.firebase_uid,
        email=user.email,
        display_name=user.display_name,
        is_active=user.is_active,
        roles=user.role_names(),
        created_at=user.created_at,
    )


def _role_tag(name: str) -> str:
    tag = policy.normalize_role(name)
    if tag is None:
        raise ValidationFailed(f"Invalid role name: {name!r}")
    return tag


def get_or_create_role(session: Session, name: str) -> Role:
    tag = _role_tag(name)
    role = session.exec(select(Role).where(Role.name == tag)).first()
    if role is None:
        role = Role(name=tag)
        session.add(role)
        session.flush()
        logger.info("created role %s", tag)
    return role


def init_roles(session: Session):
    for name in policy.KNOWN_ROLES:
        get_or_create_role(session, name)
    session.commit()


def list_roles(session: Session) -> List[str]:
    return list(session.exec(select(Role.name).order_by(Role.name)).all())


def list_users(session: Session) -> List[User]:
    return list(session.exec(select(User).order_by(User.id)).all())


def register(session: Session, claims: IdentityClaims, email: Optional[str] = None,
             display_name: Optional[str] = None, password: Optional[str] = None) -> User:
    if get_user_by_uid(session, claims.uid):
        raise Conflict("User is already registered")

    email = (email or claims.email or "").strip().lower()
    if not email:
        raise ValidationFailed("Email is required")
    if get_user_by_email(session, email):
        raise Conflict("Email is already in use")

    name = (display_name or claims.display_name or "").strip() or email.split("@")[0]
    user = User(
        firebase_uid=claims.uid,
        email=email,
        display_name=name,
        password_hash=get_password_hash(password) if password else None,
    )
    user.roles.append(get_or_create_role(session, policy.DEFAULT_ROLE))
    session.add(user)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise Conflict("User is already registered") from exc
    session.refresh(user)
    logger.info("registered user uid=%s", user.firebase_uid)
    return user


def assign_role(session: Session, uid: str, role_name: str) -> User:
    user = require_user(session, uid)
    role = get_or_create_role(session, role_name)
    if role.name not in user.role_names():
        user.roles.append(role)
        user.updated_at = datetime.utcnow()
        session.add(user)
        logger.info("assigned role %s to uid=%s", role.name, uid)
    session.commit()
    session.refresh(user)
    return user


def count_other_admins(session: Session, user: User, active_only: bool = False) -> int:
    stmt = (
        select(func.count(User.id))
        .join(UserRoleLink, UserRoleLink.user_id == User.id)
        .join(Role, Role.id == UserRoleLink.role_id)
        .where(Role.name == policy.ADMIN, User.id != user.id)
    )
    if active_only:
        stmt = stmt.where(User.is_active == True)  # noqa: E712
    return session.exec(stmt).one()


def remove_role(session: Session, uid: str, role_name: str) -> User:
    user = require_user(session, uid)
    tag = _role_tag(role_name)
    held = user.role_names()
    if tag not in held:
        raise RoleNotHeld(f"User {uid} does not hold role {tag}")
    if tag == policy.DEFAULT_ROLE:
        raise InvariantViolation(f"Role {tag} cannot be removed")
    # An active admin may only step down while another active admin remains.
    others = count_other_admins(session, user, active_only=user.is_active)
    if not policy.can_remove_role(held, tag, others):
        raise LastAdmin("Cannot remove the last remaining admin")

    user.roles = [r for r in user.roles if r.name != tag]
    user.updated_at = datetime.utcnow()
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info("removed role %s from uid=%s", tag, uid)
    return user


def set_active(session: Session, uid: str, active: bool) -> User:
    user = require_user(session, uid)
    if not active and user.is_active and policy.ADMIN in user.role_names():
        if count_other_admins(session, user, active_only=True) == 0:
            raise LastAdmin("Cannot deactivate the last remaining admin")
    user.is_active = active
    user.updated_at = datetime.utcnow()
    session.add(user)
    session.commit()
    session.refresh(user)
    logger.info("set active=%s for uid=%s", active, uid)
    return user


def authenticate(session: Session, email: str, password: str) -> Optional[User]:
    user = get_user_by_email(session, (email or "").strip().lower())
    if not user or not user.password_hash:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def init_admins(session: Session, uids: Iterable[str]):
    for uid in uids:
        user = get_user_by_uid(session, uid)
        if user is None:
            logger.warning("bootstrap admin uid=%s is not registered yet", uid)
            continue
        if policy.ADMIN not in user.role_names():
            user.roles.append(get_or_create_role(session, policy.ADMIN))
            session.add(user)
            logger.info("granted bootstrap admin to uid=%s", uid)
    session.commit()


def init_dev_users(session: Session):
    for email, data in DEV_USERS.items():
        if get_user_by_email(session, email) or get_user_by_uid(session, data["uid"]):
            continue
        user = User(
            firebase_uid=data["uid"],
            email=email,
            display_name=email.split("@")[0],
            password_hash=get_password_hash(data["password"]),
        )
        for name in data["roles"]:
            user.roles.append(get_or_create_role(session, name))
        session.add(user)
    session.commit()
