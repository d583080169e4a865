"""
LMS UI FastAPI Application
Main application entry point for the Backend for Frontend (BFF)
"""
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from .api.client import ApiError, BackendClient, ProfileRoleLookup
from .auth import (
    AUTH_STORAGE_KEY, COGNITO_TOKENS_KEY, CognitoIdentityProvider, DevIdentityProvider,
    DevUserDirectory, FileSessionStore, IdentityProvider, SessionManager, SessionRegistry,
    SessionStore, add_route_guard, auth_router, landing_page_for
)
from .auth.middleware import WAITING_PAGE
from .models.auth import LoginMethod
from .utils.config import Config, get_config
from .utils.logger import setup_logger

logger = setup_logger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

ProviderFactory = Callable[[str], IdentityProvider]


def build_provider_factory(
    config: Config,
    store: SessionStore,
    http_client: httpx.AsyncClient,
) -> ProviderFactory:
    """Identity provider per browser session, selected by AUTH_PROVIDER"""
    if config.AUTH_PROVIDER == "dev":
        directory = DevUserDirectory(secret_key=config.SECRET_KEY)
        return lambda client_id: DevIdentityProvider(directory)

    cognito_config = config.get_cognito_config()
    return lambda client_id: CognitoIdentityProvider(
        store,
        storage_key=f"{COGNITO_TOKENS_KEY}:{client_id}",
        http_client=http_client,
        settings=cognito_config,
    )


def create_app(
    config: Optional[Config] = None,
    session_store: Optional[SessionStore] = None,
    provider_factory: Optional[ProviderFactory] = None,
) -> FastAPI:
    """
    Build the application

    Args:
        config: Configuration (defaults to get_config())
        session_store: Durable store for session mirrors (defaults to a file store)
        provider_factory: Identity provider per client ID (defaults to AUTH_PROVIDER)

    Returns:
        FastAPI: Application with its session registry created in the lifespan
    """
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events"""
        logger.info("LMS UI application starting up...")
        logger.info(f"Environment: {config.__class__.__name__}")
        logger.info(f"Identity provider: {config.AUTH_PROVIDER}")

        http_client = httpx.AsyncClient(timeout=config.API_TIMEOUT)
        store = session_store or FileSessionStore(config.SESSION_STORE_DIR)
        make_provider = provider_factory or build_provider_factory(config, store, http_client)
        role_lookup = ProfileRoleLookup(config.API_BASE_URL, http_client) if config.API_BASE_URL else None
        login_method = LoginMethod.NORMAL if config.AUTH_PROVIDER == "dev" else LoginMethod.COGNITO

        def make_manager(client_id: str) -> SessionManager:
            return SessionManager(
                make_provider(client_id),
                store,
                storage_key=f"{AUTH_STORAGE_KEY}:{client_id}",
                role_lookup=role_lookup,
                restore_timeout=config.SESSION_RESTORE_TIMEOUT,
                trust_persisted_session=config.TRUST_PERSISTED_SESSION,
                login_method=login_method,
            )

        app.state.config = config
        app.state.http_client = http_client
        app.state.provider_factory = make_provider
        app.state.session_registry = SessionRegistry(
            make_manager,
            cookie_name=config.SESSION_COOKIE_NAME,
            cookie_max_age=config.SESSION_COOKIE_MAX_AGE,
            cookie_secure=not config.DEBUG,
            idle_timeout=config.SESSION_IDLE_TIMEOUT,
        )

        yield

        logger.info("LMS UI application shutting down...")
        await app.state.session_registry.aclose()
        await http_client.aclose()

    app = FastAPI(
        title="LMS UI",
        description="Web front-end for the Learning Management System",
        version="1.0.0",
        debug=config.DEBUG,
        lifespan=lifespan
    )

    add_route_guard(app, cleanup_interval=config.SESSION_CLEANUP_INTERVAL)
    app.include_router(auth_router)
    _add_page_routes(app)
    return app


def _page_context(request: Request, title: str, **extra):
    context = {"title": f"{title} - LMS", "user": request.state.user}
    context.update(extra)
    return context


def _waiting_response() -> HTMLResponse:
    return HTMLResponse(WAITING_PAGE.format(refresh=1), headers={"Cache-Control": "no-store"})


def _add_page_routes(app: FastAPI):

    @app.get("/health")
    async def health_check():
        """Health check endpoint for load balancers"""
        return {
            "status": "healthy",
            "service": "LMS UI",
            "version": "1.0.0",
        }

    @app.get("/", response_class=HTMLResponse)
    async def root(request: Request):
        """Root endpoint - send users to their landing page or to login"""
        session = request.app.state.session_registry.get_session_from_request(request)
        if session is not None and session.is_settling:
            return _waiting_response()
        if session is not None and session.is_authenticated:
            return RedirectResponse(url=landing_page_for(session.user.role), status_code=302)
        return RedirectResponse(url="/login", status_code=302)

    @app.get("/login", response_class=HTMLResponse)
    async def login_page(request: Request):
        """Login page"""
        session = request.app.state.session_registry.get_session_from_request(request)
        if session is not None and session.is_authenticated:
            return RedirectResponse(url=landing_page_for(session.user.role), status_code=302)

        error_message = None
        if session is not None and session.error:
            # Shown once; the next visit starts clean
            error_message = session.error
            session.clear_error()
        return templates.TemplateResponse(
            request,
            "login.html",
            {
                "title": "Sign in - LMS",
                "require_new_password": session is not None and session.pending_challenge is not None,
                "error_message": error_message,
            }
        )

    @app.get("/reset-password", response_class=HTMLResponse)
    async def reset_password_page(request: Request):
        """Forgot-password page: request a code, then set a new password"""
        return templates.TemplateResponse(request, "reset_password.html", {"title": "Reset password - LMS"})

    @app.get("/home", response_class=HTMLResponse)
    async def home_page(request: Request):
        return templates.TemplateResponse(request, "page.html", _page_context(request, "Home"))

    @app.get("/profile", response_class=HTMLResponse)
    async def profile_page(request: Request):
        """Profile page backed by the LMS API"""
        profile, error_message = None, None
        backend = BackendClient(
            request.app.state.config.API_BASE_URL or "",
            request.state.session,
            http_client=request.app.state.http_client,
            timeout=request.app.state.config.API_TIMEOUT,
        )
        try:
            profile = await backend.get("/profile")
        except ApiError as e:
            error_message = e.message
        return templates.TemplateResponse(
            request,
            "page.html",
            _page_context(request, "Profile", profile=profile, error_message=error_message),
        )

    @app.get("/admin/{page:path}", response_class=HTMLResponse)
    async def admin_page(request: Request, page: str):
        return templates.TemplateResponse(request, "page.html", _page_context(request, f"Admin {page}"))

    @app.get("/lecturer/{page:path}", response_class=HTMLResponse)
    async def lecturer_page(request: Request, page: str):
        return templates.TemplateResponse(request, "page.html", _page_context(request, f"Lecturer {page}"))

    @app.get("/student/{page:path}", response_class=HTMLResponse)
    async def student_page(request: Request, page: str):
        return templates.TemplateResponse(request, "page.html", _page_context(request, f"Student {page}"))

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc: HTTPException):
        """Unknown pages redirect by authentication status"""
        if request.url.path.startswith("/auth/"):
            return JSONResponse({"detail": "Not Found"}, status_code=404)

        session = request.app.state.session_registry.get_session_from_request(request)
        if session is not None and session.is_settling:
            return _waiting_response()
        if session is not None and session.is_authenticated:
            return RedirectResponse(url=landing_page_for(session.user.role), status_code=302)
        return RedirectResponse(url="/login", status_code=302)


app = create_app()


# Development server
if __name__ == "__main__":
    _config = get_config()
    uvicorn.run(
        "lms_ui.main:app",
        host="0.0.0.0",
        port=8000,
        reload=_config.DEBUG,
        log_level="debug" if _config.DEBUG else "info"
    )
