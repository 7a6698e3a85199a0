"""
Test case lifecycle.

A test case is a database row plus two blobs in the content store. The two
stores cannot share a transaction, so writes run as a short saga:

    create: insert row (flush for the id) -> put input -> put output
            -> size from store -> commit
    update: snapshot old blobs -> put new blobs -> size from store -> commit
    delete: delete blobs -> delete row -> commit

On failure the row change is rolled back and the blob writes already made are
undone (created blobs deleted, overwritten blobs restored). Compensation is
best effort; a compensation that fails is logged with the key it left behind.
"""
from datetime import datetime
from typing import Dict, List, Optional, Sequence
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from codearena import policy
from codearena.errors import Conflict, Forbidden, NotFound, UpstreamError
from codearena.models import Problem, TestCase, User
from codearena.policy import Subject
from codearena.schemas import TestCaseCreate, TestCaseRead, TestCaseUpdate
from codearena.services.problems import display_names, get_problem_or_404, require_viewable, subject_of
from codearena.storage import INPUT_FILE_NAME, OUTPUT_FILE_NAME, ContentStore, ContentStoreError, testcase_key

logger = logging.getLogger("codearena.testcases")


def _require_author_role(subject: Subject):
    if not policy.holds_any(subject, policy.TEST_CASE_AUTHOR_ROLES):
        raise Forbidden("Only problem setters, testers and admins can manage test cases")


def _deny_test_case(tc: TestCase, problem: Problem, subject: Subject, message: str):
    if policy.can_view_test_case(tc, problem, subject):
        raise Forbidden(message)
    raise NotFound("Test case not found")


def _load(session: Session, test_case_id: int):
    tc = session.get(TestCase, test_case_id)
    if not tc:
        raise NotFound("Test case not found")
    problem = get_problem_or_404(session, tc.problem_id)
    return tc, problem


def _name_taken(session: Session, problem_id: int, name: str, exclude_id: Optional[int] = None) -> bool:
    stmt = select(TestCase.id).where(TestCase.problem_id == problem_id, TestCase.name == name)
    if exclude_id is not None:
        stmt = stmt.where(TestCase.id != exclude_id)
    return session.exec(stmt).first() is not None


def _read_content(store: ContentStore, key: str) -> Optional[str]:
    try:
        content = store.get_text(key)
    except ContentStoreError as exc:
        logger.error("content read failed for %s: %s", key, exc)
        raise UpstreamError("Content store unavailable") from exc
    if content is None:
        logger.warning("content missing for %s", key)
    return content


def _size(store: ContentStore, tc: TestCase) -> int:
    return store.size(tc.input_key) + store.size(tc.output_key)


def _delete_written(store: ContentStore, keys: Sequence[str]):
    for key in keys:
        try:
            store.delete(key)
        except ContentStoreError as exc:
            logger.error("compensation failed, orphaned blob %s: %s", key, exc)


def _restore(store: ContentStore, previous: Dict[str, Optional[str]]):
    for key, old in previous.items():
        try:
            if old is None:
                store.delete(key)
            else:
                store.put_text(key, old)
        except ContentStoreError as exc:
            logger.error("compensation failed, could not restore %s: %s", key, exc)


def test_case_reads(session: Session, store: ContentStore, problem: Problem,
                    test_cases: Sequence[TestCase], subject: Optional[Subject]) -> List[TestCaseRead]:
    names = display_names(session, (tc.created_by_uid for tc in test_cases))
    reads = []
    for tc in test_cases:
        read = TestCaseRead(
            id=tc.id,
            problem_id=tc.problem_id,
            name=tc.name,
            description=tc.description,
            input_file_name=tc.input_file_name,
            output_file_name=tc.output_file_name,
            file_size=tc.file_size,
            is_hidden=tc.is_hidden,
            is_sample=tc.is_sample,
            created_by=names.get(tc.created_by_uid),
            created_at=tc.created_at,
            updated_at=tc.updated_at,
        )
        if policy.can_read_test_case_content(tc, problem, subject):
            read.input_content = _read_content(store, tc.input_key)
            read.output_content = _read_content(store, tc.output_key)
        reads.append(read)
    return reads


def create_test_cases(session: Session, store: ContentStore, problem_id: int,
                      dtos: Sequence[TestCaseCreate], creator: User) -> List[TestCase]:
    subject = creator.as_subject()
    _require_author_role(subject)
    problem = get_problem_or_404(session, problem_id)
    if not policy.can_manage_test_cases(problem, subject):
        if policy.can_view_problem(problem, subject):
            raise Forbidden("You do not have permission to create test cases for this problem")
        raise NotFound("Problem not found")

    seen = set()
    for dto in dtos:
        if dto.name in seen or _name_taken(session, problem.id, dto.name):
            raise Conflict(f"Test case name {dto.name!r} already exists for this problem")
        seen.add(dto.name)

    written: List[str] = []
    created: List[TestCase] = []
    try:
        for dto in dtos:
            now = datetime.utcnow()
            tc = TestCase(
                problem_id=problem.id,
                name=dto.name,
                description=dto.description,
                is_hidden=dto.is_hidden,
                is_sample=dto.is_sample,
                created_by_uid=creator.firebase_uid,
                created_at=now,
                updated_at=now,
            )
            session.add(tc)
            session.flush()
            tc.input_key = testcase_key(problem.id, tc.id, INPUT_FILE_NAME)
            tc.output_key = testcase_key(problem.id, tc.id, OUTPUT_FILE_NAME)
            store.put_text(tc.input_key, dto.input_content)
            written.append(tc.input_key)
            store.put_text(tc.output_key, dto.output_content)
            written.append(tc.output_key)
            tc.file_size = _size(store, tc)
            session.add(tc)
            created.append(tc)
        session.commit()
    except ContentStoreError as exc:
        session.rollback()
        _delete_written(store, written)
        logger.error("test case create failed for problem %s: %s", problem_id, exc)
        raise UpstreamError("Content store unavailable; test cases were not created") from exc
    except IntegrityError as exc:
        session.rollback()
        _delete_written(store, written)
        raise Conflict("Test case name already exists for this problem") from exc
    except SQLAlchemyError:
        session.rollback()
        _delete_written(store, written)
        raise

    for tc in created:
        session.refresh(tc)
    logger.info("%d test case(s) created for problem %s by uid=%s", len(created), problem_id, creator.firebase_uid)
    return created


def update_test_case(session: Session, store: ContentStore, test_case_id: int,
                     dto: TestCaseUpdate, updater: User) -> TestCase:
    subject = updater.as_subject()
    _require_author_role(subject)
    tc, problem = _load(session, test_case_id)
    if not policy.can_manage_test_cases(problem, subject):
        _deny_test_case(tc, problem, subject, "You do not have permission to update this test case")
    if dto.name != tc.name and _name_taken(session, problem.id, dto.name, exclude_id=tc.id):
        raise Conflict(f"Test case name {dto.name!r} already exists for this problem")

    previous: Dict[str, Optional[str]] = {}
    try:
        for key, content in ((tc.input_key, dto.input_content), (tc.output_key, dto.output_content)):
            if content is None:
                continue
            previous[key] = store.get_text(key)
            store.put_text(key, content)
        file_size = _size(store, tc)
    except ContentStoreError as exc:
        session.rollback()
        _restore(store, previous)
        logger.error("test case %s update failed: %s", test_case_id, exc)
        raise UpstreamError("Content store unavailable; test case was not updated") from exc

    tc.name = dto.name
    tc.description = dto.description
    tc.is_hidden = dto.is_hidden
    tc.is_sample = dto.is_sample
    tc.file_size = file_size
    tc.updated_at = datetime.utcnow()
    session.add(tc)
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        _restore(store, previous)
        raise Conflict("Test case name already exists for this problem") from exc
    except SQLAlchemyError:
        session.rollback()
        _restore(store, previous)
        raise
    session.refresh(tc)
    logger.info("test case %s updated by uid=%s", tc.id, updater.firebase_uid)
    return tc


def delete_test_case(session: Session, store: ContentStore, test_case_id: int, deleter: User):
    subject = deleter.as_subject()
    _require_author_role(subject)
    tc, problem = _load(session, test_case_id)
    if not policy.can_manage_test_cases(problem, subject):
        _deny_test_case(tc, problem, subject, "You do not have permission to delete this test case")

    try:
        for key in (tc.input_key, tc.output_key):
            if key:
                store.delete(key)
    except ContentStoreError as exc:
        session.rollback()
        logger.error("test case %s content delete failed: %s", test_case_id, exc)
        raise UpstreamError("Content store unavailable; test case was not deleted") from exc

    session.delete(tc)
    session.commit()
    logger.info("test case %s deleted by uid=%s", test_case_id, deleter.firebase_uid)


def get_test_case(session: Session, store: ContentStore, test_case_id: int, user: User) -> TestCaseRead:
    subject = user.as_subject()
    tc, problem = _load(session, test_case_id)
    if not policy.can_view_test_case(tc, problem, subject):
        raise NotFound("Test case not found")
    return test_case_reads(session, store, problem, [tc], subject)[0]


def list_test_cases(session: Session, store: ContentStore, problem_id: int, user: User) -> List[TestCaseRead]:
    subject = user.as_subject()
    problem = require_viewable(session, problem_id, subject)
    test_cases = session.exec(
        select(TestCase).where(TestCase.problem_id == problem.id).order_by(TestCase.id)
    ).all()
    return test_case_reads(session, store, problem, policy.visible_test_cases(test_cases, problem, subject), subject)


def list_sample_test_cases(session: Session, store: ContentStore, problem_id: int,
                           user: Optional[User] = None) -> List[TestCaseRead]:
    problem = get_problem_or_404(session, problem_id)
    samples = session.exec(
        select(TestCase)
        .where(TestCase.problem_id == problem.id, TestCase.is_sample == True)  # noqa: E712
        .order_by(TestCase.id)
    ).all()
    return test_case_reads(session, store, problem, samples, subject_of(user))
