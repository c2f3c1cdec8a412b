"""HTTP client holding a cached copy of the library plus derived view state.

The server stays the source of truth: every mutation goes through the API
and the affected cache is refreshed afterwards.  Filtering for the UI runs
locally over the cached prompts using the same rules the server applies in
SQL, so changing scope or search text never needs a round-trip.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import requests

from .errors import (
    AuthorizationError,
    PromptMasterError,
    ServiceUnavailableError,
    ValidationError,
    error_for_status,
)
from .policy import GUEST, Capability, Principal, Role, can
from .visibility import (
    SCOPE_ALL,
    SCOPE_COMMUNITY,
    SEARCH_CATEGORY_ALL,
    ViewFilter,
    filter_prompts,
    popular_tags,
    resolve_scope,
    scope_counts,
)

logger = logging.getLogger(__name__)


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass(frozen=True)
class PromptRecord:
    """Client-side copy of a prompt as returned by the API."""

    id: str
    title: str
    content: str
    category_id: str
    user_id: str
    author_name: str
    visibility: str
    created_at: datetime
    updated_at: datetime
    description: str = ""
    tags: Tuple[str, ...] = ()
    is_favorite: bool = False

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "PromptRecord":
        return cls(
            id=data["id"],
            title=data["title"],
            content=data["content"],
            category_id=data["categoryId"],
            user_id=data["userId"],
            author_name=data["authorName"],
            visibility=data["visibility"],
            created_at=_parse_time(data["createdAt"]),
            updated_at=_parse_time(data["updatedAt"]),
            description=data.get("description") or "",
            tags=tuple(data.get("tags") or ()),
            is_favorite=bool(data.get("isFavorite", False)),
        )


@dataclass(frozen=True)
class CategoryRecord:
    id: str
    name: str
    type: str
    icon: str = "Tag"
    user_id: Optional[str] = None

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "CategoryRecord":
        return cls(
            id=data["id"],
            name=data["name"],
            type=data["type"],
            icon=data.get("icon") or "Tag",
            user_id=data.get("userId"),
        )


@dataclass
class ViewState:
    """Everything the main view renders, derived from the cache."""

    scope: str
    prompts: List[PromptRecord]
    popular_tags: List[Tuple[str, int]]
    counts: Dict[str, int] = field(default_factory=dict)


class PromptMasterClient:
    """Stateful API client for one signed-in (or guest) principal."""

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        timeout: float = 10,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.http = session or requests.Session()
        self.timeout = timeout
        self.token: Optional[str] = None
        self.principal: Optional[Principal] = None
        self.prompts: List[PromptRecord] = []
        self.categories: List[CategoryRecord] = []
        self.scope = SCOPE_ALL
        self.search = ""
        self.search_category = SEARCH_CATEGORY_ALL

    # -- transport ---------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        try:
            response = self.http.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("request failed %s %s", method, path, exc_info=exc)
            raise ServiceUnavailableError("Server unreachable") from exc

        if not response.ok:
            try:
                detail = response.json().get("detail") or response.reason
            except ValueError:
                detail = response.reason
            raise error_for_status(response.status_code, str(detail))
        return response.json()

    # -- session -----------------------------------------------------------

    @property
    def is_guest(self) -> bool:
        return self.principal is not None and self.principal.is_guest

    @property
    def needs_password_change(self) -> bool:
        return (
            self.principal is not None
            and not self.principal.is_guest
            and self.principal.is_first_login
        )

    def can(self, capability: Capability) -> bool:
        return self.principal is not None and can(self.principal, capability)

    def _require(self, capability: Capability) -> None:
        if not self.can(capability):
            raise AuthorizationError("Not authorized")

    def _start_session(self, data: Dict[str, Any]) -> Principal:
        self.token = data["token"]
        self.principal = self._principal_from(data["user"])
        self.scope = SCOPE_ALL
        self.refresh_prompts()
        self.refresh_categories()
        return self.principal

    @staticmethod
    def _principal_from(user: Dict[str, Any]) -> Principal:
        return Principal(
            id=user["id"],
            name=user["name"],
            role=Role(user["role"]),
            is_first_login=bool(user.get("isFirstLogin", False)),
        )

    def login(self, username: str, password: str) -> Principal:
        data = self._request(
            "POST", "/auth/login", json={"username": username, "password": password}
        )
        return self._start_session(data)

    def register(self, username: str, password: str) -> Principal:
        data = self._request(
            "POST", "/auth/register", json={"username": username, "password": password}
        )
        return self._start_session(data)

    def resume(self, token: str) -> Optional[Principal]:
        """Restore a session from a stored token; an invalid token logs out."""
        self.token = token
        try:
            self.principal = self._principal_from(self._request("GET", "/auth/me"))
            self.refresh_prompts()
        except PromptMasterError:
            logger.info("stored token rejected, logging out")
            self.logout()
            return None
        self.refresh_categories()
        return self.principal

    def enter_as_guest(self) -> Principal:
        self.token = None
        self.principal = GUEST
        self.scope = SCOPE_COMMUNITY
        self.refresh_prompts()
        self.refresh_categories()
        return GUEST

    def logout(self) -> None:
        self.token = None
        self.principal = None
        self.prompts = []
        self.scope = SCOPE_ALL
        self.search = ""
        self.search_category = SEARCH_CATEGORY_ALL

    def me(self) -> Dict[str, Any]:
        return self._request("GET", "/auth/me")

    def change_password(self, new_password: str) -> Principal:
        data = self._request(
            "POST", "/auth/change-password", json={"newPassword": new_password}
        )
        self.token = data["token"]
        self.principal = self._principal_from(data["user"])
        return self.principal

    # -- cache refresh -----------------------------------------------------

    def refresh_prompts(self) -> List[PromptRecord]:
        if self.principal is None:
            self.prompts = []
        elif self.principal.is_guest:
            data = self._request("GET", "/prompts/public")
            self.prompts = [PromptRecord.from_json(item) for item in data]
        else:
            data = self._request("GET", "/prompts")
            self.prompts = [PromptRecord.from_json(item) for item in data]
        return self.prompts

    def refresh_categories(self) -> List[CategoryRecord]:
        """Reload categories; failures keep whatever was cached."""
        try:
            data = self._request("GET", "/categories")
        except PromptMasterError as exc:
            logger.warning("category refresh failed: %s", exc.message)
            return self.categories
        self.categories = [CategoryRecord.from_json(item) for item in data]
        return self.categories

    # -- prompts -----------------------------------------------------------

    def save_prompt(
        self,
        title: str,
        content: str,
        category_id: str,
        description: str = "",
        tags: Optional[List[str]] = None,
        visibility: str = "private",
        prompt_id: Optional[str] = None,
    ) -> PromptRecord:
        """Create a prompt, or update ``prompt_id`` when given."""
        self._require(Capability.CREATE_PROMPT)
        body = {
            "title": title,
            "content": content,
            "description": description,
            "categoryId": category_id,
            "tags": list(tags or []),
            "visibility": visibility,
        }
        if prompt_id:
            data = self._request("PUT", f"/prompts/{prompt_id}", json=body)
        else:
            data = self._request("POST", "/prompts", json=body)
        self.refresh_prompts()
        return PromptRecord.from_json(data)

    def delete_prompt(self, prompt_id: str) -> None:
        self._require(Capability.CREATE_PROMPT)
        self._request("DELETE", f"/prompts/{prompt_id}")
        self.prompts = [p for p in self.prompts if p.id != prompt_id]

    def fork_prompt(self, prompt_id: str) -> PromptRecord:
        self._require(Capability.CREATE_PROMPT)
        data = self._request("POST", f"/prompts/{prompt_id}/fork")
        self.refresh_prompts()
        return PromptRecord.from_json(data)

    def toggle_favorite(self, prompt_id: str) -> bool:
        self._require(Capability.FAVORITE)
        state = bool(self._request("POST", f"/prompts/{prompt_id}/favorite")["isFavorite"])
        self.prompts = [
            replace(p, is_favorite=state) if p.id == prompt_id else p for p in self.prompts
        ]
        return state

    # -- categories --------------------------------------------------------

    def add_category(self, name: str, icon: Optional[str] = None) -> CategoryRecord:
        self._require(Capability.CREATE_CATEGORY)
        body: Dict[str, Any] = {"name": name}
        if icon:
            body["icon"] = icon
        category = CategoryRecord.from_json(self._request("POST", "/categories", json=body))
        self.refresh_categories()
        return category

    def delete_category(self, category_id: str) -> None:
        """Delete a category; its prompts come back under the fallback category."""
        self._require(Capability.DELETE_CATEGORY)
        self._request("DELETE", f"/categories/{category_id}")
        self.categories = [c for c in self.categories if c.id != category_id]
        self.refresh_prompts()
        if self.scope == category_id:
            self.scope = SCOPE_ALL
        if self.search_category == category_id:
            self.search_category = SEARCH_CATEGORY_ALL

    # -- users and settings ------------------------------------------------

    def list_users(self) -> List[Dict[str, Any]]:
        self._require(Capability.MANAGE_USERS)
        return self._request("GET", "/users")

    def add_user(self, name: str, role: str = "user") -> Dict[str, Any]:
        self._require(Capability.MANAGE_USERS)
        return self._request("POST", "/users", json={"name": name, "role": role})

    def delete_user(self, user_id: str) -> None:
        self._require(Capability.MANAGE_USERS)
        if user_id == self.principal.id:
            raise ValidationError("Cannot delete yourself")
        self._request("DELETE", f"/users/{user_id}")
        self.refresh_prompts()

    def get_settings(self) -> Dict[str, Any]:
        return self._request("GET", "/settings")

    def set_allow_registration(self, allowed: bool) -> bool:
        self._require(Capability.MANAGE_SETTINGS)
        data = self._request("PUT", "/settings", json={"allowRegistration": allowed})
        return bool(data["allowRegistration"])

    # -- AI ----------------------------------------------------------------

    def optimize_prompt(self, text: str) -> str:
        self._require(Capability.USE_OPTIMIZER)
        return self._request("POST", "/ai/optimize", json={"prompt": text})["optimized"]

    def generate_ideas(self, topic: str) -> List[str]:
        self._require(Capability.USE_OPTIMIZER)
        return self._request("POST", "/ai/ideas", json={"topic": topic})["ideas"]

    # -- derived view ------------------------------------------------------

    def select_scope(self, scope: str) -> None:
        self.scope = scope

    def set_search(self, text: str, category_id: Optional[str] = None) -> None:
        self.search = text
        if category_id is not None:
            self.search_category = category_id

    def select_tag(self, tag: str) -> None:
        """Search for a tag, or clear the search when it is already the tag."""
        self.search = "" if self.search == tag else tag

    def view(
        self,
        scope: Optional[str] = None,
        search: Optional[str] = None,
        search_category: Optional[str] = None,
    ) -> ViewState:
        """Derive the visible prompts, tag cloud and sidebar counts."""
        if self.principal is None:
            return ViewState(scope=SCOPE_ALL, prompts=[], popular_tags=[])
        selection = ViewFilter(
            scope=resolve_scope(self.principal, scope if scope is not None else self.scope),
            search=search if search is not None else self.search,
            search_category=(
                search_category if search_category is not None else self.search_category
            ),
        )
        return ViewState(
            scope=selection.scope,
            prompts=filter_prompts(self.principal, self.prompts, selection),
            popular_tags=popular_tags(self.principal, self.prompts),
            counts=scope_counts(
                self.principal, self.prompts, [c.id for c in self.categories]
            ),
        )
