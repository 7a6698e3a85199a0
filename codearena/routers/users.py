from fastapi import APIRouter, Depends, Query, Request
from sqlmodel import Session

from codearena import policy
from codearena.auth import get_current_user, require_roles
from codearena.db import get_session
from codearena.errors import NotFound
from codearena.models import User
from codearena.schemas import envelope
from codearena.services import users as service

router = APIRouter(prefix="/api", tags=["users"])

require_admin = require_roles(policy.ADMIN)


@router.get("/users")
def list_users(request: Request, _: User = Depends(require_admin), session: Session = Depends(get_session)):
    return envelope(request, [service.user_read(u) for u in service.list_users(session)])


@router.get("/users/{uid}")
def user_detail(
    uid: str,
    request: Request,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    # Non-admins may only look themselves up; anyone else reads as missing.
    if uid != current_user.firebase_uid and not current_user.as_subject().is_admin:
        raise NotFound(f"User not found: {uid}")
    return envelope(request, service.user_read(service.require_user(session, uid)))


@router.get("/roles")
def list_roles(request: Request, _: User = Depends(require_admin), session: Session = Depends(get_session)):
    return envelope(request, service.list_roles(session))


@router.post("/admin/users/{uid}/roles")
def assign_role(
    uid: str,
    request: Request,
    role: str = Query(..., min_length=1, max_length=50),
    _: User = Depends(require_admin),
    session: Session = Depends(get_session),
):
    user = service.assign_role(session, uid, role)
    return envelope(request, service.user_read(user), "Role assigned")


@router.delete("/admin/users/{uid}/roles/{role}")
def remove_role(
    uid: str,
    role: str,
    request: Request,
    _: User = Depends(require_admin),
    session: Session = Depends(get_session),
):
    user = service.remove_role(session, uid, role)
    return envelope(request, service.user_read(user), "Role removed")


@router.post("/admin/users/{uid}/deactivate")
def deactivate_user(uid: str, request: Request, _: User = Depends(require_admin), session: Session = Depends(get_session)):
    user = service.set_active(session, uid, False)
    return envelope(request, service.user_read(user), "User deactivated")


@router.post("/admin/users/{uid}/activate")
def activate_user(uid: str, request: Request, _: User = Depends(require_admin), session: Session = Depends(get_session)):
    user = service.set_active(session, uid, True)
    return envelope(request, service.user_read(user), "User activated")
