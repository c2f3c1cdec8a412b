"""Visibility and filter rules for prompts.

The same rule is expressed twice: as plain predicates over already-fetched
prompt objects (used by the client view layer and for derived data such as
popular tags), and as SQLAlchemy clauses for server-side scoping.  Both
halves must select exactly the same prompts in the same order.

Prompt objects only need ``id``, ``title``, ``content``, ``tags``,
``category_id``, ``user_id``, ``visibility``, ``created_at`` and
``updated_at`` attributes, so ORM rows and client records both work.
"""

from collections import Counter
from dataclasses import dataclass
from typing import Collection, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, false, func, or_, select, true
from sqlalchemy.orm import Query, Session

from .database import Favorite, Prompt, PromptTag
from .policy import Principal

SCOPE_ALL = "all"
SCOPE_COMMUNITY = "community"
SCOPE_FAVORITES = "favorites"
SEARCH_CATEGORY_ALL = "all"

PUBLIC = "public"
PRIVATE = "private"
VISIBILITIES = (PUBLIC, PRIVATE)

POPULAR_TAG_LIMIT = 10


@dataclass(frozen=True)
class ViewFilter:
    """A view selection: scope plus the two search-bar filters."""

    scope: str = SCOPE_ALL
    search: str = ""
    search_category: str = SEARCH_CATEGORY_ALL


def resolve_scope(principal: Principal, scope: Optional[str]) -> str:
    """Guests only ever see the community scope, whatever they ask for."""
    if principal.is_guest:
        return SCOPE_COMMUNITY
    return scope or SCOPE_ALL


# -- predicates -------------------------------------------------------------


def is_readable(principal: Principal, prompt) -> bool:
    if prompt.visibility == PUBLIC:
        return True
    return not principal.is_guest and prompt.user_id == principal.id


def in_scope(
    principal: Principal, prompt, scope: str, favorite_ids: Collection[str] = ()
) -> bool:
    scope = resolve_scope(principal, scope)
    if scope == SCOPE_COMMUNITY:
        return prompt.visibility == PUBLIC
    if scope == SCOPE_ALL:
        return prompt.user_id == principal.id
    if not is_readable(principal, prompt):
        return False
    if scope == SCOPE_FAVORITES:
        return prompt.id in favorite_ids
    return prompt.category_id == scope


def matches_search(prompt, text: str) -> bool:
    needle = (text or "").lower()
    if not needle:
        return True
    return (
        needle in prompt.title.lower()
        or needle in prompt.content.lower()
        or any(needle in tag.lower() for tag in prompt.tags)
    )


def matches_search_category(prompt, search_category: str) -> bool:
    if not search_category or search_category == SEARCH_CATEGORY_ALL:
        return True
    return prompt.category_id == search_category


def _favorites_of(prompts: Iterable) -> set:
    return {p.id for p in prompts if getattr(p, "is_favorite", False)}


def filter_prompts(
    principal: Principal,
    prompts: Sequence,
    view: ViewFilter,
    favorite_ids: Optional[Collection[str]] = None,
) -> List:
    """Return the prompts visible under ``view``, preserving input order.

    When ``favorite_ids`` is omitted the favorite set is read from each
    prompt's ``is_favorite`` flag.
    """
    if favorite_ids is None:
        favorite_ids = _favorites_of(prompts)
    return [
        p
        for p in prompts
        if in_scope(principal, p, view.scope, favorite_ids)
        and matches_search(p, view.search)
        and matches_search_category(p, view.search_category)
    ]


def popular_tags(
    principal: Principal, prompts: Iterable, limit: int = POPULAR_TAG_LIMIT
) -> List[Tuple[str, int]]:
    """Most frequent tags among prompts readable by ``principal``.

    Ties keep the order in which tags were first met in ``prompts``.
    """
    counts: Counter = Counter()
    for prompt in prompts:
        if not is_readable(principal, prompt):
            continue
        for tag in prompt.tags:
            name = tag.strip().lower()
            if name:
                counts[name] += 1
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return ranked[:limit]


def scope_counts(
    principal: Principal,
    prompts: Sequence,
    category_ids: Iterable[str] = (),
    favorite_ids: Optional[Collection[str]] = None,
) -> Dict[str, int]:
    """Number of prompts in each sidebar scope, before search filters."""
    if favorite_ids is None:
        favorite_ids = _favorites_of(prompts)
    scopes = [SCOPE_COMMUNITY]
    if not principal.is_guest:
        scopes = [SCOPE_ALL, SCOPE_COMMUNITY, SCOPE_FAVORITES, *category_ids]
    return {
        scope: sum(1 for p in prompts if in_scope(principal, p, scope, favorite_ids))
        for scope in scopes
    }


def order_prompts(prompts: Iterable) -> List:
    """Sort newest-updated first, then newest-created, then by id."""
    ordered = sorted(prompts, key=lambda p: p.id)
    ordered.sort(key=lambda p: p.created_at, reverse=True)
    ordered.sort(key=lambda p: p.updated_at, reverse=True)
    return ordered


# -- SQL clauses ------------------------------------------------------------

ORDERING = (Prompt.updated_at.desc(), Prompt.created_at.desc(), Prompt.id.asc())


def readable_clause(principal: Principal):
    if principal.is_guest:
        return Prompt.visibility == PUBLIC
    return or_(Prompt.user_id == principal.id, Prompt.visibility == PUBLIC)


def favorited_clause(principal: Principal):
    if principal.is_guest:
        return false()
    return Prompt.id.in_(
        select(Favorite.prompt_id).where(Favorite.user_id == principal.id)
    )


def scope_clause(principal: Principal, scope: str):
    scope = resolve_scope(principal, scope)
    if scope == SCOPE_COMMUNITY:
        return Prompt.visibility == PUBLIC
    if scope == SCOPE_ALL:
        return Prompt.user_id == principal.id
    if scope == SCOPE_FAVORITES:
        return and_(readable_clause(principal), favorited_clause(principal))
    return and_(readable_clause(principal), Prompt.category_id == scope)


def search_clause(text: str):
    needle = (text or "").lower()
    if not needle:
        return true()
    return or_(
        func.lower(Prompt.title).contains(needle, autoescape=True),
        func.lower(Prompt.content).contains(needle, autoescape=True),
        Prompt.tag_rows.any(func.lower(PromptTag.name).contains(needle, autoescape=True)),
    )


def search_category_clause(search_category: str):
    if not search_category or search_category == SEARCH_CATEGORY_ALL:
        return true()
    return Prompt.category_id == search_category


def scoped_prompts_query(
    session: Session, principal: Principal, view: Optional[ViewFilter] = None
) -> Query:
    """Build the prompt query for ``principal``.

    Without a view this is the coarse listing (own + public); the client
    narrows it further.  With a view the full filter runs in SQL.
    """
    query = session.query(Prompt).filter(readable_clause(principal))
    if view is not None:
        query = query.filter(
            scope_clause(principal, view.scope),
            search_clause(view.search),
            search_category_clause(view.search_category),
        )
    return query.order_by(*ORDERING)
