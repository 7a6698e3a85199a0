from datetime import datetime
from typing import Dict, Iterable, List, Optional
import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from codearena import policy
from codearena.errors import Conflict, Forbidden, NotFound, UpstreamError
from codearena.models import Problem, TestCase, User
from codearena.policy import Subject
from codearena.schemas import ProblemCreate, ProblemRead, ProblemUpdate
from codearena.storage import ContentStore, ContentStoreError, problem_prefix

logger = logging.getLogger("codearena.problems")


def subject_of(user: Optional[User]) -> Optional[Subject]:
    return user.as_subject() if user is not None else None


def get_problem_or_404(session: Session, problem_id: int) -> Problem:
    problem = session.get(Problem, problem_id)
    if not problem:
        raise NotFound("Problem not found")
    return problem


def require_viewable(session: Session, problem_id: int, subject: Optional[Subject]) -> Problem:
    # Invisible and missing look the same to the caller.
    problem = session.get(Problem, problem_id)
    if not problem or not policy.can_view_problem(problem, subject):
        raise NotFound("Problem not found")
    return problem


def deny(problem: Problem, subject: Optional[Subject], message: str):
    if policy.can_view_problem(problem, subject):
        raise Forbidden(message)
    raise NotFound("Problem not found")


def display_names(session: Session, uids: Iterable[Optional[str]]) -> Dict[str, str]:
    wanted = {uid for uid in uids if uid}
    if not wanted:
        return {}
    rows = session.exec(select(User.firebase_uid, User.display_name).where(User.firebase_uid.in_(wanted))).all()
    return {uid: name for uid, name in rows}


def _test_case_counts(session: Session, problem_ids: List[int]) -> Dict[int, int]:
    if not problem_ids:
        return {}
    rows = session.exec(
        select(TestCase.problem_id, func.count(TestCase.id))
        .where(TestCase.problem_id.in_(problem_ids))
        .group_by(TestCase.problem_id)
    ).all()
    return {pid: count for pid, count in rows}


def problem_reads(session: Session, problems: List[Problem]) -> List[ProblemRead]:
    names = display_names(session, (p.owner_uid for p in problems))
    counts = _test_case_counts(session, [p.id for p in problems])
    return [
        ProblemRead(
            id=p.id,
            title=p.title,
            description=p.description,
            difficulty=p.difficulty,
            time_limit_ms=p.time_limit_ms,
            memory_limit_mb=p.memory_limit_mb,
            tags=list(p.tags or []),
            is_public=p.is_public,
            owner_uid=p.owner_uid,
            created_by=names.get(p.owner_uid),
            created_at=p.created_at,
            updated_at=p.updated_at,
            test_case_count=counts.get(p.id, 0),
        )
        for p in problems
    ]


def problem_read(session: Session, problem: Problem) -> ProblemRead:
    return problem_reads(session, [problem])[0]


def _ensure_title_free(session: Session, title: str, exclude_id: Optional[int] = None):
    stmt = select(Problem.id).where(Problem.title == title)
    if exclude_id is not None:
        stmt = stmt.where(Problem.id != exclude_id)
    if session.exec(stmt).first() is not None:
        raise Conflict(f"A problem titled {title!r} already exists")


def _commit(session: Session, title: str):
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise Conflict(f"A problem titled {title!r} already exists") from exc


def create_problem(session: Session, dto: ProblemCreate, creator: User) -> Problem:
    subject = creator.as_subject()
    if not policy.holds_any(subject, policy.PROBLEM_AUTHOR_ROLES):
        raise Forbidden("Only problem setters and admins can create problems")
    _ensure_title_free(session, dto.title)

    now = datetime.utcnow()
    problem = Problem(
        title=dto.title,
        description=dto.description,
        difficulty=dto.difficulty,
        time_limit_ms=dto.time_limit_ms,
        memory_limit_mb=dto.memory_limit_mb,
        tags=list(dto.tags),
        is_public=dto.is_public,
        owner_uid=creator.firebase_uid,
        created_at=now,
        updated_at=now,
    )
    session.add(problem)
    _commit(session, dto.title)
    session.refresh(problem)
    logger.info("problem %s created by uid=%s", problem.id, creator.firebase_uid)
    return problem


def update_problem(session: Session, problem_id: int, dto: ProblemUpdate, updater: User) -> Problem:
    subject = updater.as_subject()
    problem = get_problem_or_404(session, problem_id)
    if not policy.can_manage_problem(problem, subject):
        deny(problem, subject, "You do not have permission to update this problem")
    _ensure_title_free(session, dto.title, exclude_id=problem.id)

    problem.title = dto.title
    problem.description = dto.description
    problem.difficulty = dto.difficulty
    problem.time_limit_ms = dto.time_limit_ms
    problem.memory_limit_mb = dto.memory_limit_mb
    problem.tags = list(dto.tags)
    if dto.is_public is not None:
        problem.is_public = dto.is_public
    problem.updated_at = datetime.utcnow()
    session.add(problem)
    _commit(session, dto.title)
    session.refresh(problem)
    logger.info("problem %s updated by uid=%s", problem.id, updater.firebase_uid)
    return problem


def delete_problem(session: Session, problem_id: int, deleter: User, store: ContentStore):
    """Delete a problem with every test case and blob under it.

    Blobs go first; records are only removed once the store has accepted every
    delete, so a store failure leaves the problem in place for a retry.
    """
    subject = deleter.as_subject()
    problem = get_problem_or_404(session, problem_id)
    if not policy.can_manage_problem(problem, subject):
        deny(problem, subject, "You do not have permission to delete this problem")

    test_cases = session.exec(select(TestCase).where(TestCase.problem_id == problem.id)).all()
    try:
        for tc in test_cases:
            for key in (tc.input_key, tc.output_key):
                if key:
                    store.delete(key)
        swept = store.delete_prefix(problem_prefix(problem.id))
    except ContentStoreError as exc:
        session.rollback()
        logger.error("content delete failed for problem %s: %s", problem.id, exc)
        raise UpstreamError("Content store unavailable; problem was not deleted") from exc
    if swept:
        logger.warning("swept %d leftover blobs for problem %s", swept, problem.id)

    for tc in test_cases:
        session.delete(tc)
    session.flush()
    session.delete(problem)
    session.commit()
    logger.info("problem %s deleted with %d test cases by uid=%s", problem_id, len(test_cases), deleter.firebase_uid)


def get_problem(session: Session, problem_id: int, user: User) -> Problem:
    return require_viewable(session, problem_id, user.as_subject())


def list_problems(session: Session, user: User) -> List[Problem]:
    subject = user.as_subject()
    problems = session.exec(select(Problem).order_by(Problem.id.desc())).all()
    return [p for p in problems if policy.can_view_problem(p, subject)]
