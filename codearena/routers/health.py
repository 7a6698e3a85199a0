from fastapi import APIRouter, Depends, Request

from codearena.auth import get_current_user
from codearena.config import Settings, get_settings
from codearena.models import User
from codearena.schemas import envelope

router = APIRouter(prefix="/api/test", tags=["health"])


@router.get("/health")
def health(request: Request):
    return envelope(request, {"status": "UP"}, "Service is running")


@router.get("/firebase-status")
def firebase_status(request: Request, settings: Settings = Depends(get_settings)):
    configured = bool(settings.firebase_project_id)
    data = {"configured": configured, "project_id": settings.firebase_project_id or None}
    return envelope(request, data, "Identity provider configured" if configured else "Identity provider not configured")


@router.get("/protected")
def protected(request: Request, current_user: User = Depends(get_current_user)):
    data = {"uid": current_user.firebase_uid, "roles": current_user.role_names()}
    return envelope(request, data, f"Hello, {current_user.display_name}")
