import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlmodel import Session

from codearena import policy
from codearena.config import Settings, get_settings
from codearena.db import get_session
from codearena.errors import Forbidden, Unauthorized, UpstreamError
from codearena.identity import IdentityClaims, IdentityResolver, TokenVerificationError, get_identity_resolver
from codearena.models import User
from codearena.schemas import RegisterRequest, SignInRequest, TokenRead, VerifyRequest, envelope
from codearena.services import users

logger = logging.getLogger("codearena.auth")

router = APIRouter(prefix="/api/auth", tags=["auth"])

_UPSTREAM_CODES = ("jwks_fetch_failed", "jwks_invalid")


def bearer_token(request: Request) -> Optional[str]:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def resolve_token(resolver: IdentityResolver, token: str) -> IdentityClaims:
    try:
        return resolver.resolve(token)
    except TokenVerificationError as exc:
        if exc.code in _UPSTREAM_CODES:
            logger.error("identity provider keys unavailable: %s", exc.code)
            raise UpstreamError("Identity provider unavailable") from exc
        logger.warning("rejected bearer token: %s", exc.code)
        raise Unauthorized("Invalid or expired token", details={"reason": exc.code}) from exc


def get_claims(request: Request, resolver: IdentityResolver = Depends(get_identity_resolver)) -> IdentityClaims:
    token = bearer_token(request)
    if not token:
        raise Unauthorized("Missing bearer token")
    return resolve_token(resolver, token)


def get_current_user(claims: IdentityClaims = Depends(get_claims), session: Session = Depends(get_session)) -> User:
    user = users.get_user_by_uid(session, claims.uid)
    if not user:
        raise Unauthorized("User is not registered")
    if claims.provider == "legacy" and not user.password_hash:
        logger.warning("legacy token presented for account without password: %s", claims.uid)
        raise Unauthorized("Invalid or expired token", details={"reason": "legacy_token_not_allowed"})
    if not user.is_active:
        raise Forbidden("User account is deactivated")
    return user


def get_optional_user(
    request: Request,
    resolver: IdentityResolver = Depends(get_identity_resolver),
    session: Session = Depends(get_session),
) -> Optional[User]:
    token = bearer_token(request)
    if not token:
        return None
    try:
        claims = resolver.resolve(token)
    except TokenVerificationError as exc:
        logger.warning("ignoring bearer token on public route: %s", exc.code)
        return None
    user = users.get_user_by_uid(session, claims.uid)
    if not user or not user.is_active:
        return None
    if claims.provider == "legacy" and not user.password_hash:
        return None
    return user


def require_roles(*roles: str):
    wanted = frozenset(roles)

    def dependency(user: User = Depends(get_current_user)) -> User:
        if not policy.holds_any(user.as_subject(), wanted):
            raise Forbidden(f"Requires one of: {', '.join(sorted(wanted))}")
        return user

    return dependency


@router.post("/verify")
def verify(
    request: Request,
    body: VerifyRequest,
    resolver: IdentityResolver = Depends(get_identity_resolver),
    session: Session = Depends(get_session),
):
    claims = resolve_token(resolver, body.id_token)
    user = users.get_user_by_uid(session, claims.uid)
    data = {
        "uid": claims.uid,
        "email": claims.email,
        "display_name": claims.display_name,
        "email_verified": claims.email_verified,
        "registered": user is not None,
        "user": users.user_read(user) if user else None,
    }
    return envelope(request, data, "Token verified")


@router.post("/register", status_code=201)
def register(
    request: Request,
    body: Optional[RegisterRequest] = None,
    claims: IdentityClaims = Depends(get_claims),
    session: Session = Depends(get_session),
):
    body = body or RegisterRequest()
    user = users.register(session, claims, email=body.email, display_name=body.display_name, password=body.password)
    return envelope(request, users.user_read(user), "User registered")


@router.get("/me")
def me(request: Request, current_user: User = Depends(get_current_user)):
    return envelope(request, users.user_read(current_user))


@router.post("/signin")
def signin(
    request: Request,
    body: SignInRequest,
    session: Session = Depends(get_session),
    resolver: IdentityResolver = Depends(get_identity_resolver),
    settings: Settings = Depends(get_settings),
):
    user = users.authenticate(session, body.email, body.password)
    if not user:
        logger.warning("failed sign-in for %s", body.email)
        raise Unauthorized("Invalid email or password")
    if not user.is_active:
        raise Forbidden("User account is deactivated")
    if not resolver.legacy_enabled:
        logger.warning("password sign-in refused: SECRET_KEY is not configured")
        raise Unauthorized("Password sign-in is not configured")

    token = resolver.issue_legacy_token(user.firebase_uid, user.email, settings.access_token_expire_minutes)
    data = TokenRead(token=token, uid=user.firebase_uid, email=user.email, roles=user.role_names())
    return envelope(request, data, "Signed in")
