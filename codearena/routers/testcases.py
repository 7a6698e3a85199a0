from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlmodel import Session

from codearena.auth import get_current_user, get_optional_user
from codearena.db import get_session
from codearena.models import User
from codearena.schemas import TestCaseBulkCreate, TestCaseCreate, TestCaseUpdate, envelope
from codearena.services import testcases as service
from codearena.services.problems import get_problem_or_404
from codearena.storage import ContentStore, get_content_store

router = APIRouter(prefix="/api/testcases", tags=["testcases"])


def _reads(session, store, problem_id, test_cases, user):
    problem = get_problem_or_404(session, problem_id)
    return service.test_case_reads(session, store, problem, test_cases, user.as_subject())


@router.post("/problems/{problem_id}", status_code=201)
def create_test_case(
    problem_id: int,
    request: Request,
    body: TestCaseCreate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    store: ContentStore = Depends(get_content_store),
):
    created = service.create_test_cases(session, store, problem_id, [body], current_user)
    return envelope(request, _reads(session, store, problem_id, created, current_user)[0], "Test case created")


@router.post("/problems/{problem_id}/bulk", status_code=201)
def bulk_create_test_cases(
    problem_id: int,
    request: Request,
    body: TestCaseBulkCreate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    store: ContentStore = Depends(get_content_store),
):
    created = service.create_test_cases(session, store, problem_id, body.test_cases, current_user)
    return envelope(
        request,
        _reads(session, store, problem_id, created, current_user),
        f"{len(created)} test cases created",
    )


@router.get("/problems/{problem_id}/samples")
def list_sample_test_cases(
    problem_id: int,
    request: Request,
    current_user: Optional[User] = Depends(get_optional_user),
    session: Session = Depends(get_session),
    store: ContentStore = Depends(get_content_store),
):
    return envelope(request, service.list_sample_test_cases(session, store, problem_id, current_user))


@router.get("/problems/{problem_id}")
def list_test_cases(
    problem_id: int,
    request: Request,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    store: ContentStore = Depends(get_content_store),
):
    return envelope(request, service.list_test_cases(session, store, problem_id, current_user))


@router.get("/{test_case_id}")
def test_case_detail(
    test_case_id: int,
    request: Request,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    store: ContentStore = Depends(get_content_store),
):
    return envelope(request, service.get_test_case(session, store, test_case_id, current_user))


@router.put("/{test_case_id}")
def update_test_case(
    test_case_id: int,
    request: Request,
    body: TestCaseUpdate,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    store: ContentStore = Depends(get_content_store),
):
    tc = service.update_test_case(session, store, test_case_id, body, current_user)
    return envelope(request, _reads(session, store, tc.problem_id, [tc], current_user)[0], "Test case updated")


@router.delete("/{test_case_id}")
def delete_test_case(
    test_case_id: int,
    request: Request,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    store: ContentStore = Depends(get_content_store),
):
    service.delete_test_case(session, store, test_case_id, current_user)
    return envelope(request, None, "Test case deleted")
