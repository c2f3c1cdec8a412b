"""FastAPI application exposing the prompt library endpoints."""

from datetime import datetime
from typing import List, Optional

import logging
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from prometheus_client import Counter

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from . import optimizer, services
from .auth import get_current_principal, get_optional_principal, requires
from .config import settings
from .database import init_db
from .errors import AuthenticationError, PromptMasterError
from .policy import Capability, Principal
from .visibility import SCOPE_ALL, SEARCH_CATEGORY_ALL, ViewFilter


limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
app = FastAPI(title=settings.api_title)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
init_db()

logger = logging.getLogger(__name__)

SENSITIVE_RATE_LIMIT = settings.auth_rate_limit

# Prometheus counter to track API requests by method, route and status code
REQUEST_COUNTER = Counter(
    "api_requests_total",
    "Total API requests",
    ["method", "endpoint", "status"],
)


def _route_path(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log incoming requests and their outcomes while updating metrics."""
    logger.info("request %s %s", request.method, request.url.path)
    try:
        response = await call_next(request)
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=_route_path(request),
            status=str(response.status_code),
        ).inc()
        logger.info(
            "response %s %s status %s",
            request.method,
            request.url.path,
            response.status_code,
        )
        return response
    except Exception:
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=_route_path(request),
            status="500",
        ).inc()
        logger.exception(
            "error handling %s %s", request.method, request.url.path
        )
        raise


@app.exception_handler(PromptMasterError)
async def handle_service_error(request: Request, exc: PromptMasterError):
    headers = None
    if isinstance(exc, AuthenticationError):
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(
        status_code=exc.status_code, content={"detail": exc.message}, headers=headers
    )


@app.exception_handler(RequestValidationError)
async def handle_request_validation(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    detail = f"{location}: {message}" if location else message
    return JSONResponse(status_code=400, content={"detail": detail})


class CamelModel(BaseModel):
    """Schema base using camelCase field names on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserResponse(CamelModel):
    """Serialized user account."""

    id: str
    name: str
    avatar: str
    role: str
    is_first_login: bool = False
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None


class SessionResponse(CamelModel):
    """Session token together with the signed-in user."""

    token: str
    user: UserResponse


class CredentialsRequest(CamelModel):
    username: Optional[str] = None
    password: Optional[str] = None


class ChangePasswordRequest(CamelModel):
    new_password: Optional[str] = None


class PromptResponse(CamelModel):
    """Serialized prompt, annotated with the caller's favorite flag."""

    id: str
    title: str
    content: str
    description: str = ""
    category_id: str
    tags: List[str]
    created_at: datetime
    updated_at: datetime
    user_id: str
    author_name: str
    visibility: str
    is_favorite: bool = False


class PromptCreateRequest(CamelModel):
    """Request body for creating a prompt."""

    title: Optional[str] = None
    content: Optional[str] = None
    description: Optional[str] = None
    category_id: Optional[str] = None
    tags: Optional[List[str]] = None
    visibility: Optional[str] = None


class PromptUpdateRequest(PromptCreateRequest):
    """Partial update; omitted fields keep their current value."""


class FavoriteResponse(CamelModel):
    is_favorite: bool


class TagCountResponse(CamelModel):
    tag: str
    count: int


class CategoryResponse(CamelModel):
    id: str
    name: str
    type: str
    icon: str
    user_id: Optional[str] = None


class CategoryCreateRequest(CamelModel):
    name: Optional[str] = None
    icon: Optional[str] = None


class UserCreateRequest(CamelModel):
    name: Optional[str] = None
    role: Optional[str] = None


class SettingsResponse(CamelModel):
    allow_registration: bool


class SettingsUpdateRequest(CamelModel):
    allow_registration: Optional[bool] = None


class SuccessResponse(CamelModel):
    success: bool = True


class OptimizeRequest(CamelModel):
    prompt: Optional[str] = None


class OptimizeResponse(CamelModel):
    optimized: str


class IdeasRequest(CamelModel):
    topic: Optional[str] = None


class IdeasResponse(CamelModel):
    ideas: List[str]


@app.get("/health")
def health():
    return {"status": "ok"}


# -- auth -------------------------------------------------------------------


@app.post("/auth/login", response_model=SessionResponse)
@limiter.limit(SENSITIVE_RATE_LIMIT)
def login(request: Request, payload: CredentialsRequest):
    return services.authenticate(payload.username, payload.password)


@app.post("/auth/register", response_model=SessionResponse, status_code=201)
@limiter.limit(SENSITIVE_RATE_LIMIT)
def register(request: Request, payload: CredentialsRequest):
    return services.register_user(payload.username, payload.password)


@app.get("/auth/me", response_model=UserResponse)
def me(principal: Principal = Depends(get_current_principal)):
    return services.get_me(principal)


@app.post("/auth/change-password", response_model=SessionResponse)
@limiter.limit(SENSITIVE_RATE_LIMIT)
def change_password(
    request: Request,
    payload: ChangePasswordRequest,
    principal: Principal = Depends(get_current_principal),
):
    return services.change_password(principal, payload.new_password)


# -- prompts ----------------------------------------------------------------


@app.get("/prompts", response_model=List[PromptResponse])
def list_prompts(
    scope: Optional[str] = None,
    q: Optional[str] = None,
    search_category: Optional[str] = Query(None, alias="searchCategory"),
    principal: Principal = Depends(requires(Capability.USE_PERSONAL_SCOPES)),
):
    """Own + public prompts, or the fully filtered view when filters are given."""

    view = None
    if scope is not None or q is not None or search_category is not None:
        view = ViewFilter(
            scope=scope or SCOPE_ALL,
            search=q or "",
            search_category=search_category or SEARCH_CATEGORY_ALL,
        )
    return services.list_prompts(principal, view)


@app.get("/prompts/public", response_model=List[PromptResponse])
def list_public_prompts():
    return services.list_public_prompts()


@app.get("/prompts/{prompt_id}", response_model=PromptResponse)
def get_prompt(prompt_id: str, principal: Principal = Depends(get_optional_principal)):
    return services.get_prompt(principal, prompt_id)


@app.post("/prompts", response_model=PromptResponse, status_code=201)
def create_prompt(
    payload: PromptCreateRequest,
    principal: Principal = Depends(requires(Capability.CREATE_PROMPT)),
):
    return services.create_prompt(
        principal,
        title=payload.title,
        content=payload.content,
        category_id=payload.category_id,
        description=payload.description,
        tags=payload.tags,
        visibility=payload.visibility,
    )


@app.put("/prompts/{prompt_id}", response_model=PromptResponse)
def update_prompt(
    prompt_id: str,
    payload: PromptUpdateRequest,
    principal: Principal = Depends(get_current_principal),
):
    return services.update_prompt(
        principal,
        prompt_id,
        title=payload.title,
        content=payload.content,
        description=payload.description,
        category_id=payload.category_id,
        tags=payload.tags,
        visibility=payload.visibility,
    )


@app.delete("/prompts/{prompt_id}", response_model=SuccessResponse)
def delete_prompt(prompt_id: str, principal: Principal = Depends(get_current_principal)):
    services.delete_prompt(principal, prompt_id)
    return SuccessResponse()


@app.post("/prompts/{prompt_id}/favorite", response_model=FavoriteResponse)
def toggle_favorite(
    prompt_id: str, principal: Principal = Depends(requires(Capability.FAVORITE))
):
    return FavoriteResponse(is_favorite=services.toggle_favorite(principal, prompt_id))


@app.post("/prompts/{prompt_id}/fork", response_model=PromptResponse, status_code=201)
def fork_prompt(
    prompt_id: str, principal: Principal = Depends(requires(Capability.CREATE_PROMPT))
):
    return services.fork_prompt(principal, prompt_id)


@app.get("/tags/popular", response_model=List[TagCountResponse])
def popular_tags(principal: Principal = Depends(get_optional_principal)):
    """Top tags among prompts the caller can read."""

    return services.get_popular_tags(principal)


# -- categories -------------------------------------------------------------


@app.get("/categories", response_model=List[CategoryResponse])
def list_categories():
    return services.list_categories()


@app.post("/categories", response_model=CategoryResponse, status_code=201)
def create_category(
    payload: CategoryCreateRequest,
    principal: Principal = Depends(requires(Capability.CREATE_CATEGORY)),
):
    return services.create_category(principal, payload.name, payload.icon)


@app.delete("/categories/{category_id}", response_model=SuccessResponse)
def delete_category(
    category_id: str,
    principal: Principal = Depends(requires(Capability.DELETE_CATEGORY)),
):
    services.delete_category(principal, category_id)
    return SuccessResponse()


# -- users ------------------------------------------------------------------


@app.get("/users", response_model=List[UserResponse])
def list_users(principal: Principal = Depends(requires(Capability.MANAGE_USERS))):
    return services.list_users(principal)


@app.post("/users", response_model=UserResponse, status_code=201)
def create_user(
    payload: UserCreateRequest,
    principal: Principal = Depends(requires(Capability.MANAGE_USERS)),
):
    return services.create_user(principal, payload.name, payload.role)


@app.delete("/users/{user_id}", response_model=SuccessResponse)
def delete_user(
    user_id: str, principal: Principal = Depends(requires(Capability.MANAGE_USERS))
):
    services.delete_user(principal, user_id)
    return SuccessResponse()


# -- settings ---------------------------------------------------------------


@app.get("/settings", response_model=SettingsResponse)
def get_settings():
    return services.get_settings()


@app.put("/settings", response_model=SettingsResponse)
def update_settings(
    payload: SettingsUpdateRequest,
    principal: Principal = Depends(requires(Capability.MANAGE_SETTINGS)),
):
    return services.update_settings(principal, payload.allow_registration)


# -- AI ---------------------------------------------------------------------


@app.post("/ai/optimize", response_model=OptimizeResponse)
def optimize(
    payload: OptimizeRequest,
    principal: Principal = Depends(requires(Capability.USE_OPTIMIZER)),
):
    logger.info("optimize prompt user=%s", principal.id)
    return OptimizeResponse(optimized=optimizer.optimize_prompt(payload.prompt))


@app.post("/ai/ideas", response_model=IdeasResponse)
def ideas(
    payload: IdeasRequest,
    principal: Principal = Depends(requires(Capability.USE_OPTIMIZER)),
):
    return IdeasResponse(ideas=optimizer.generate_ideas(payload.topic))
