"""
Shared fixtures.

API tests drive the ASGI app in-process. Database, content store and token
verification are swapped through FastAPI dependency overrides: an in-memory
SQLite engine, a ``MemoryContentStore`` and a resolver that maps fixed test
tokens to claims (unknown tokens fall through to the real legacy/Firebase
checks).
"""
from typing import Dict

import httpx
import pytest
from httpx import ASGITransport
from sqlalchemy.pool import StaticPool
from sqlmodel import Session

from codearena.db import create_tables, get_session, make_engine
from codearena.identity import FirebaseTokenVerifier, IdentityClaims, IdentityResolver, get_identity_resolver
from codearena.main import app as fastapi_app
from codearena.models import User
from codearena.services import users
from codearena.storage import MemoryContentStore, get_content_store

TEST_SECRET = "test-secret"


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeResolver(IdentityResolver):
    def __init__(self):
        super().__init__(FirebaseTokenVerifier(""), TEST_SECRET)
        self.tokens: Dict[str, IdentityClaims] = {}

    def add(self, uid: str, email: str = None, display_name: str = None) -> str:
        token = f"tok-{uid}"
        self.tokens[token] = IdentityClaims(uid=uid, email=email, display_name=display_name)
        return token

    def resolve(self, token: str) -> IdentityClaims:
        if token in self.tokens:
            return self.tokens[token]
        return super().resolve(token)


@pytest.fixture
def engine():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        users.init_roles(session)
        yield session


@pytest.fixture
def store():
    return MemoryContentStore()


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def make_user(session, resolver):
    """Create a registered user holding ``roles`` and return ``(user, headers)``."""

    def _make(uid: str, *roles: str, email: str = None, active: bool = True):
        user = User(firebase_uid=uid, email=email or f"{uid}@codearena.com", display_name=uid, is_active=active)
        user.roles.append(users.get_or_create_role(session, "USER"))
        for name in roles:
            if name != "USER":
                user.roles.append(users.get_or_create_role(session, name))
        session.add(user)
        session.commit()
        session.refresh(user)
        token = resolver.add(uid, email=user.email)
        return user, {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def app(session, store, resolver):
    fastapi_app.dependency_overrides[get_session] = lambda: session
    fastapi_app.dependency_overrides[get_content_store] = lambda: store
    fastapi_app.dependency_overrides[get_identity_resolver] = lambda: resolver
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
