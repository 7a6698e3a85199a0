"""
Access policy for problems and test cases.

Every function here is a pure decision: it takes the caller (a ``Subject`` or
``None`` for anonymous requests) and the ownership/visibility attributes of a
resource and returns a bool. Nothing here touches the database or raises;
routers and services turn ``False`` into a denied outcome.

Precedence, highest first:
    sample test case  -> visible to everyone
    ADMIN             -> manage and view everything
    TESTER            -> view every problem, manage every test case
    owner             -> manage own problem and its test cases
    everyone else     -> public problems, non-hidden test cases of them

Role names are open tags. The constants below are the tags the policy itself
understands; any other tag is carried but grants nothing here.
"""
import re
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Protocol, TypeVar

USER = "USER"
ADMIN = "ADMIN"
PROBLEM_SETTER = "PROBLEM_SETTER"
TESTER = "TESTER"
CONTEST_MANAGER = "CONTEST_MANAGER"
MODERATOR = "MODERATOR"

DEFAULT_ROLE = USER
KNOWN_ROLES = (USER, ADMIN, PROBLEM_SETTER, TESTER, CONTEST_MANAGER, MODERATOR)

PROBLEM_AUTHOR_ROLES = frozenset({ADMIN, PROBLEM_SETTER})
TEST_CASE_AUTHOR_ROLES = frozenset({ADMIN, PROBLEM_SETTER, TESTER})

_ROLE_RE = re.compile(r"^[A-Z][A-Z0-9_]{0,49}$")


def normalize_role(name: str) -> Optional[str]:
    """Return the canonical tag for ``name`` or ``None`` if it is not a valid tag."""
    tag = (name or "").strip().upper()
    if not _ROLE_RE.match(tag):
        return None
    return tag


@dataclass(frozen=True)
class Subject:
    uid: str
    roles: FrozenSet[str]

    def has(self, role: str) -> bool:
        return role in self.roles

    @property
    def is_admin(self) -> bool:
        return ADMIN in self.roles

    @property
    def is_tester(self) -> bool:
        return TESTER in self.roles


class ProblemLike(Protocol):
    owner_uid: Optional[str]
    is_public: bool


class TestCaseLike(Protocol):
    is_hidden: bool
    is_sample: bool


def is_owner(owner_uid: Optional[str], subject: Optional[Subject]) -> bool:
    # An orphaned resource has no owner, so nobody matches by ownership.
    if subject is None or not owner_uid:
        return False
    return owner_uid == subject.uid


def can_manage(owner_uid: Optional[str], subject: Optional[Subject], *, allow_tester: bool = False) -> bool:
    if subject is None:
        return False
    if subject.is_admin:
        return True
    if allow_tester and subject.is_tester:
        return True
    return is_owner(owner_uid, subject)


def can_manage_problem(problem: ProblemLike, subject: Optional[Subject]) -> bool:
    return can_manage(problem.owner_uid, subject)


def can_manage_test_cases(problem: ProblemLike, subject: Optional[Subject]) -> bool:
    return can_manage(problem.owner_uid, subject, allow_tester=True)


def can_view_problem(problem: ProblemLike, subject: Optional[Subject]) -> bool:
    if problem.is_public:
        return True
    if subject is None:
        return False
    return subject.is_admin or subject.is_tester or is_owner(problem.owner_uid, subject)


def can_view_test_case(test_case: TestCaseLike, problem: ProblemLike, subject: Optional[Subject]) -> bool:
    """Decide visibility of one test case.

    ``is_sample`` is checked before ``is_hidden``: a sample stays visible even
    when it is also flagged hidden.
    """
    if test_case.is_sample:
        return True
    if can_manage_test_cases(problem, subject):
        return True
    if test_case.is_hidden:
        return False
    return can_view_problem(problem, subject)


def can_read_test_case_content(test_case: TestCaseLike, problem: ProblemLike, subject: Optional[Subject]) -> bool:
    return test_case.is_sample or can_manage_test_cases(problem, subject)


T = TypeVar("T", bound=TestCaseLike)


def visible_test_cases(test_cases: Iterable[T], problem: ProblemLike, subject: Optional[Subject]) -> List[T]:
    return [tc for tc in test_cases if can_view_test_case(tc, problem, subject)]


def can_remove_role(subject_roles: Iterable[str], role_to_remove: str, other_admin_count: int) -> bool:
    """Last-admin protection.

    ``other_admin_count`` counts admin-tagged subjects other than the one
    losing the role.
    """
    if role_to_remove != ADMIN or ADMIN not in set(subject_roles):
        return True
    return other_admin_count > 0


def holds_any(subject: Optional[Subject], roles: Iterable[str]) -> bool:
    if subject is None:
        return False
    return any(role in subject.roles for role in roles)
