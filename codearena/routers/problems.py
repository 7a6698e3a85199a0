from fastapi import APIRouter, Depends, Request
from sqlmodel import Session

from codearena.auth import get_current_user
from codearena.db import get_session
from codearena.models import User
from codearena.schemas import ProblemCreate, ProblemUpdate, envelope
from codearena.services import problems as service
from codearena.storage import ContentStore, get_content_store

router = APIRouter(prefix="/api/problems", tags=["problems"])


@router.post("", status_code=201)
def create_problem(
    request: Request,
    body: ProblemCreate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    problem = service.create_problem(session, body, current_user)
    return envelope(request, service.problem_read(session, problem), "Problem created")


@router.get("")
def list_problems(
    request: Request,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    problems = service.list_problems(session, current_user)
    return envelope(request, service.problem_reads(session, problems))


@router.get("/{problem_id}")
def problem_detail(
    problem_id: int,
    request: Request,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    problem = service.get_problem(session, problem_id, current_user)
    return envelope(request, service.problem_read(session, problem))


@router.put("/{problem_id}")
def update_problem(
    problem_id: int,
    request: Request,
    body: ProblemUpdate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    problem = service.update_problem(session, problem_id, body, current_user)
    return envelope(request, service.problem_read(session, problem), "Problem updated")


@router.delete("/{problem_id}")
def delete_problem(
    problem_id: int,
    request: Request,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    store: ContentStore = Depends(get_content_store),
):
    service.delete_problem(session, problem_id, current_user, store)
    return envelope(request, None, "Problem deleted")
