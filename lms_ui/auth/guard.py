"""
Role-based access decisions for page groups
"""
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, Optional, Sequence, Tuple

from ..models.auth import UserRole

LOGIN_PATH = "/login"

ROLE_LANDING_PAGES = {
    UserRole.ADMIN: "/admin/settings",
    UserRole.LECTURER: "/lecturer/dashboard",
    UserRole.STUDENT: "/home",
}

ALL_ROLES: FrozenSet[UserRole] = frozenset(UserRole)


@dataclass(frozen=True)
class PageGroup:
    """Path prefix and the roles allowed under it"""
    prefix: str
    allowed_roles: FrozenSet[UserRole]

    def matches(self, path: str) -> bool:
        return path == self.prefix or path.startswith(self.prefix.rstrip("/") + "/")


DEFAULT_PAGE_GROUPS: Tuple[PageGroup, ...] = (
    PageGroup("/admin", frozenset({UserRole.ADMIN})),
    PageGroup("/lecturer", frozenset({UserRole.LECTURER})),
    PageGroup("/student", frozenset({UserRole.STUDENT})),
    PageGroup("/home", ALL_ROLES),
    PageGroup("/profile", ALL_ROLES),
)


class GuardOutcome(str, Enum):
    WAIT = "wait"
    ALLOW = "allow"
    REDIRECT = "redirect"


@dataclass(frozen=True)
class GuardDecision:
    outcome: GuardOutcome
    location: Optional[str] = None

    @classmethod
    def wait(cls) -> "GuardDecision":
        return cls(GuardOutcome.WAIT)

    @classmethod
    def allow(cls) -> "GuardDecision":
        return cls(GuardOutcome.ALLOW)

    @classmethod
    def redirect(cls, location: str) -> "GuardDecision":
        return cls(GuardOutcome.REDIRECT, location)


def landing_page_for(role: Optional[UserRole]) -> str:
    """Default page for a role; unknown roles land where students do"""
    return ROLE_LANDING_PAGES.get(role, ROLE_LANDING_PAGES[UserRole.STUDENT])


def find_page_group(path: str, groups: Sequence[PageGroup] = DEFAULT_PAGE_GROUPS) -> Optional[PageGroup]:
    for group in groups:
        if group.matches(path):
            return group
    return None


def evaluate_access(session, allowed_roles: Iterable[UserRole]) -> GuardDecision:
    """
    Decide what to do with a request for a role-scoped page

    Args:
        session: SessionManager for the request, or None without a session
        allowed_roles: Roles allowed to see the page group

    Returns:
        GuardDecision: WAIT while the session settles, ALLOW, or REDIRECT.
        The requested path is never carried into the redirect.
    """
    if session is None:
        return GuardDecision.redirect(LOGIN_PATH)
    if session.is_settling:
        return GuardDecision.wait()
    if not session.is_authenticated:
        return GuardDecision.redirect(LOGIN_PATH)

    role = session.user.role
    if role in frozenset(allowed_roles):
        return GuardDecision.allow()
    return GuardDecision.redirect(landing_page_for(role))
