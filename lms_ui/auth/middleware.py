"""
Route guard middleware for FastAPI
"""
from typing import Optional, Sequence

from fastapi import Request
from fastapi.responses import HTMLResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..utils.logger import setup_logger
from .guard import DEFAULT_PAGE_GROUPS, GuardOutcome, PageGroup, evaluate_access, find_page_group

logger = setup_logger(__name__)

# Non-interactive placeholder shown while a session is being established
WAITING_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <meta http-equiv="refresh" content="{refresh}">
  <title>Loading...</title>
</head>
<body>
  <div class="page-loading" role="status" aria-busy="true">Checking your session...</div>
</body>
</html>
"""


class RouteGuardMiddleware(BaseHTTPMiddleware):
    """
    Gate role-scoped page groups before their handlers run

    Requests outside every page group pass through untouched.
    """

    def __init__(
        self,
        app: ASGIApp,
        page_groups: Optional[Sequence[PageGroup]] = None,
        waiting_refresh_seconds: int = 1,
    ):
        super().__init__(app)
        self.page_groups = tuple(page_groups or DEFAULT_PAGE_GROUPS)
        self.waiting_refresh_seconds = waiting_refresh_seconds

    async def dispatch(self, request: Request, call_next):
        """Process request through the route guard"""
        path = request.url.path
        group = find_page_group(path, self.page_groups)
        if group is None:
            return await call_next(request)

        registry = request.app.state.session_registry
        session = registry.get_session_from_request(request)
        decision = evaluate_access(session, group.allowed_roles)

        if decision.outcome == GuardOutcome.WAIT:
            logger.debug(f"Session settling, holding {path}")
            return HTMLResponse(
                WAITING_PAGE.format(refresh=self.waiting_refresh_seconds),
                status_code=200,
                headers={"Cache-Control": "no-store"},
            )

        if decision.outcome == GuardOutcome.REDIRECT:
            logger.info(f"Redirecting {path} to {decision.location}")
            return RedirectResponse(url=decision.location, status_code=302)

        request.state.session = session
        request.state.user = session.user
        return await call_next(request)


class SessionCleanupMiddleware(BaseHTTPMiddleware):
    """
    Middleware to periodically drop idle session managers
    """

    def __init__(self, app: ASGIApp, cleanup_interval: int = 100):
        super().__init__(app)
        self.cleanup_interval = cleanup_interval
        self.request_count = 0

    async def dispatch(self, request: Request, call_next):
        """Process request and occasionally clean up sessions"""
        self.request_count += 1
        if self.request_count % self.cleanup_interval == 0:
            logger.debug("Running session cleanup")
            registry = request.app.state.session_registry
            try:
                await registry.cleanup_idle_sessions()
            except Exception as e:
                logger.error(f"Session cleanup failed: {e}")

        return await call_next(request)


def add_route_guard(app, cleanup_interval: int = 100, **kwargs):
    """
    Add route guard and session cleanup middleware to FastAPI app

    Args:
        app: FastAPI application
        cleanup_interval: Requests between idle session sweeps
        **kwargs: Additional arguments for RouteGuardMiddleware
    """
    app.add_middleware(SessionCleanupMiddleware, cleanup_interval=cleanup_interval)
    app.add_middleware(RouteGuardMiddleware, **kwargs)
    logger.info("Route guard middleware added to application")
