"""
Bearer token verification.

Two token kinds resolve to a subject:

- Firebase ID tokens (RS256), checked against Google's Secure Token JWKS with
  issuer ``https://securetoken.google.com/<project>`` and the project as
  audience.
- Legacy tokens (HS256) minted by ``/api/auth/signin`` for password-backed
  accounts, signed with ``SECRET_KEY``.

Both yield ``IdentityClaims``; loading the subject record and its roles is the
caller's job.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Dict, Optional
import time

import requests
from jose import jwt
from jose.exceptions import JOSEError
from passlib.context import CryptContext

from codearena.config import DEFAULT_SECRET_KEY, Settings, get_settings

FIREBASE_JWKS_URL = "https://www.googleapis.com/service_accounts/v1/jwk/securetoken@system.gserviceaccount.com"
FIREBASE_ISSUER_PREFIX = "https://securetoken.google.com/"
LEGACY_ALGORITHM = "HS256"
MAX_CLOCK_SKEW_SECONDS = 5

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class TokenVerificationError(Exception):
    """Raised when a bearer token cannot be turned into claims."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


@dataclass(frozen=True)
class IdentityClaims:
    uid: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    email_verified: bool = False
    provider: str = "firebase"


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, secret_key: str, expires_minutes: int):
    to_encode = data.copy()
    expire = datetime.utcnow() + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, secret_key, algorithm=LEGACY_ALGORITHM)


class JWKSCache:
    """In-memory cache for the signing keys, refreshed after ``ttl_seconds``."""

    def __init__(self, url: str = FIREBASE_JWKS_URL, ttl_seconds: int = 3600):
        self.url = url
        self.ttl_seconds = ttl_seconds
        self._jwks: Optional[Dict[str, object]] = None
        self._expires_at = 0.0

    def get(self) -> Dict[str, object]:
        now = time.time()
        if self._jwks is not None and self._expires_at > now:
            return self._jwks
        self._jwks = self._fetch()
        self._expires_at = now + self.ttl_seconds
        return self._jwks

    def _fetch(self) -> Dict[str, object]:
        try:
            resp = requests.get(self.url, timeout=5)
        except requests.RequestException as exc:
            raise TokenVerificationError("jwks_fetch_failed") from exc
        if resp.status_code != 200:
            raise TokenVerificationError("jwks_fetch_failed")
        try:
            jwks = resp.json()
        except ValueError as exc:
            raise TokenVerificationError("jwks_invalid") from exc
        if not isinstance(jwks, dict) or "keys" not in jwks:
            raise TokenVerificationError("jwks_invalid")
        return jwks


class FirebaseTokenVerifier:
    def __init__(self, project_id: str, cache: Optional[JWKSCache] = None):
        self.project_id = project_id
        self.cache = cache or JWKSCache()

    @property
    def issuer(self) -> str:
        return f"{FIREBASE_ISSUER_PREFIX}{self.project_id}"

    def verify(self, id_token: str) -> IdentityClaims:
        if not self.project_id:
            raise TokenVerificationError("identity_provider_not_configured")
        try:
            header = jwt.get_unverified_header(id_token)
        except JOSEError as exc:
            raise TokenVerificationError("malformed_token") from exc
        kid = header.get("kid")
        if not kid:
            raise TokenVerificationError("missing_kid")
        key = _find_key(self.cache.get(), kid)
        if not key:
            raise TokenVerificationError("unknown_kid")
        try:
            claims = jwt.decode(
                id_token,
                key,
                algorithms=[key.get("alg", "RS256")],
                audience=self.project_id,
                issuer=self.issuer,
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "verify_at_hash": False,
                },
            )
        except JOSEError as exc:
            raise TokenVerificationError("invalid_id_token") from exc

        _validate_temporal_claims(claims)
        uid = claims.get("sub")
        if not isinstance(uid, str) or not uid or len(uid) > 128:
            raise TokenVerificationError("invalid_subject")
        return IdentityClaims(
            uid=uid,
            email=claims.get("email"),
            display_name=claims.get("name"),
            email_verified=bool(claims.get("email_verified", False)),
            provider="firebase",
        )


def _find_key(jwks: Dict[str, object], kid: str) -> Optional[Dict[str, object]]:
    keys = jwks.get("keys")
    if not isinstance(keys, list):
        return None
    for key in keys:
        if isinstance(key, dict) and key.get("kid") == kid:
            return key
    return None


def _validate_temporal_claims(claims: Dict[str, object]) -> None:
    now = time.time()
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)) or exp + MAX_CLOCK_SKEW_SECONDS < now:
        raise TokenVerificationError("expired_id_token")
    for name in ("iat", "auth_time", "nbf"):
        value = claims.get(name)
        if isinstance(value, (int, float)) and value - MAX_CLOCK_SKEW_SECONDS > now:
            raise TokenVerificationError("invalid_id_token")


class IdentityResolver:
    def __init__(self, firebase: FirebaseTokenVerifier, secret_key: str):
        self.firebase = firebase
        self.secret_key = secret_key

    @property
    def legacy_enabled(self) -> bool:
        # Never trust tokens signed with the shipped placeholder key.
        return bool(self.secret_key) and self.secret_key != DEFAULT_SECRET_KEY

    def resolve(self, token: str) -> IdentityClaims:
        try:
            header = jwt.get_unverified_header(token)
        except JOSEError as exc:
            raise TokenVerificationError("malformed_token") from exc
        if header.get("alg") == LEGACY_ALGORITHM:
            return self._resolve_legacy(token)
        return self.firebase.verify(token)

    def _resolve_legacy(self, token: str) -> IdentityClaims:
        if not self.legacy_enabled:
            raise TokenVerificationError("legacy_tokens_disabled")
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[LEGACY_ALGORITHM])
        except JOSEError as exc:
            raise TokenVerificationError("invalid_legacy_token") from exc
        uid = payload.get("sub")
        if not uid:
            raise TokenVerificationError("invalid_legacy_token")
        return IdentityClaims(uid=uid, email=payload.get("email"), provider="legacy")

    def issue_legacy_token(self, uid: str, email: str, expires_minutes: int) -> str:
        if not self.legacy_enabled:
            raise TokenVerificationError("legacy_tokens_disabled")
        return create_access_token({"sub": uid, "email": email}, self.secret_key, expires_minutes)


def build_identity_resolver(settings: Settings) -> IdentityResolver:
    return IdentityResolver(FirebaseTokenVerifier(settings.firebase_project_id), settings.secret_key)


@lru_cache
def get_identity_resolver() -> IdentityResolver:
    return build_identity_resolver(get_settings())
