from datetime import datetime, timedelta
from itertools import product

import pytest

from promptmaster.client import PromptRecord
from promptmaster.policy import GUEST, Principal, Role
from promptmaster.visibility import (
    ViewFilter,
    filter_prompts,
    order_prompts,
    popular_tags,
    scope_counts,
)


ADMIN = Principal(id="user1", name="Admin User", role=Role.ADMIN)
JANE = Principal(id="user2", name="Jane Doe", role=Role.USER)
BASE = datetime(2026, 1, 1, 12, 0, 0)


def make_prompt(pid, owner, visibility, category="coding", tags=(), title=None,
                content="", minutes=0, favorite=False):
    stamp = BASE + timedelta(minutes=minutes)
    return PromptRecord(
        id=pid,
        title=title or pid,
        content=content,
        category_id=category,
        user_id=owner,
        author_name=owner,
        visibility=visibility,
        created_at=stamp,
        updated_at=stamp,
        tags=tuple(tags),
        is_favorite=favorite,
    )


@pytest.fixture
def library():
    return [
        make_prompt("a1", "user1", "public", "coding", ["react"], title="React Builder", minutes=4),
        make_prompt("j1", "user2", "private", "coding", ["react"], content="secret react", minutes=3),
        make_prompt("j2", "user2", "public", "writing", ["ui"], minutes=2),
        make_prompt("a2", "user1", "private", "writing", ["notes", "React"], minutes=1),
    ]


def ids(prompts):
    return [p.id for p in prompts]


def test_community_is_exactly_public(library):
    for principal in (ADMIN, JANE, GUEST):
        result = filter_prompts(principal, library, ViewFilter(scope="community"))
        assert ids(result) == ["a1", "j2"]


def test_all_scope_is_exactly_owned(library):
    assert ids(filter_prompts(ADMIN, library, ViewFilter(scope="all"))) == ["a1", "a2"]
    assert ids(filter_prompts(JANE, library, ViewFilter(scope="all"))) == ["j1", "j2"]


def test_category_scope_is_own_plus_public_in_category(library):
    assert ids(filter_prompts(ADMIN, library, ViewFilter(scope="coding"))) == ["a1"]
    assert ids(filter_prompts(JANE, library, ViewFilter(scope="coding"))) == ["a1", "j1"]
    assert ids(filter_prompts(ADMIN, library, ViewFilter(scope="writing"))) == ["j2", "a2"]


def test_favorites_scope_ignores_unreadable_favorites(library):
    favorites = {"j1", "j2"}
    result = filter_prompts(ADMIN, library, ViewFilter(scope="favorites"), favorite_ids=favorites)
    assert ids(result) == ["j2"]


def test_favorites_read_from_records_by_default():
    prompts = [
        make_prompt("f1", "user1", "private", favorite=True),
        make_prompt("f2", "user2", "public"),
    ]
    assert ids(filter_prompts(ADMIN, prompts, ViewFilter(scope="favorites"))) == ["f1"]


def test_guest_any_scope_falls_back_to_public(library):
    for scope in ("all", "favorites", "coding", "writing", "community"):
        result = filter_prompts(GUEST, library, ViewFilter(scope=scope))
        assert ids(result) == ["a1", "j2"]


def test_private_prompts_of_others_never_leak(library):
    scopes = ["all", "community", "favorites", "coding", "writing", "other", "missing"]
    searches = ["", "react", "REACT", "ui", "secret", "zzz"]
    search_categories = ["all", "coding", "writing"]
    favorites = {p.id for p in library}
    for principal, scope, search, category in product(
        (ADMIN, JANE, GUEST), scopes, searches, search_categories
    ):
        view = ViewFilter(scope=scope, search=search, search_category=category)
        for prompt in filter_prompts(principal, library, view, favorite_ids=favorites):
            assert prompt.visibility == "public" or prompt.user_id == principal.id


def test_search_matches_title_content_and_tags(library):
    def search(text):
        return ids(filter_prompts(JANE, library, ViewFilter(scope="all", search=text)))

    assert search("SECRET") == ["j1"]
    assert search("ui") == ["j2"]
    assert search("") == ["j1", "j2"]
    assert ids(filter_prompts(ADMIN, library, ViewFilter(scope="all", search="builder"))) == ["a1"]
    assert ids(filter_prompts(ADMIN, library, ViewFilter(scope="all", search="react"))) == ["a1", "a2"]


def test_search_category_applies_on_top_of_scope(library):
    view = ViewFilter(scope="community", search_category="writing")
    assert ids(filter_prompts(ADMIN, library, view)) == ["j2"]
    assert ids(filter_prompts(GUEST, library, view)) == ["j2"]


def test_filtering_preserves_input_order(library):
    reversed_library = list(reversed(library))
    result = filter_prompts(ADMIN, reversed_library, ViewFilter(scope="community"))
    assert ids(result) == ["j2", "a1"]


def test_popular_tags_scenario_counts_only_readable():
    prompts = [
        make_prompt("p1", "user2", "public", tags=["react"], minutes=3),
        make_prompt("p2", "user3", "private", tags=["react"], minutes=2),
        make_prompt("p3", "user2", "public", tags=["ui"], minutes=1),
    ]
    community = filter_prompts(ADMIN, prompts, ViewFilter(scope="community"))
    assert ids(community) == ["p1", "p3"]
    assert popular_tags(ADMIN, prompts) == [("react", 1), ("ui", 1)]


def test_popular_tags_normalizes_and_ranks(library):
    assert popular_tags(ADMIN, library) == [("react", 2), ("ui", 1), ("notes", 1)]
    assert popular_tags(GUEST, library) == [("react", 1), ("ui", 1)]


def test_popular_tags_capped_at_ten_with_first_seen_ties():
    prompts = [
        make_prompt(f"p{i}", "user1", "public", tags=[f"tag{i}", " Common "], minutes=-i)
        for i in range(15)
    ]
    tags = popular_tags(ADMIN, prompts)
    assert len(tags) == 10
    assert tags[0] == ("common", 15)
    assert [tag for tag, _ in tags[1:]] == [f"tag{i}" for i in range(9)]
    counts = [count for _, count in tags]
    assert counts == sorted(counts, reverse=True)


def test_order_prompts_breaks_ties_by_created_then_id():
    a = make_prompt("b", "user1", "public", minutes=5)
    b = make_prompt("a", "user1", "public", minutes=5)
    c = make_prompt("c", "user1", "public", minutes=9)
    older_created = PromptRecord(**{**a.__dict__, "id": "d", "created_at": BASE})
    assert ids(order_prompts([a, older_created, b, c])) == ["c", "a", "b", "d"]


def test_scope_counts(library):
    counts = scope_counts(ADMIN, library, ["coding", "writing"], favorite_ids={"j2"})
    assert counts == {"all": 2, "community": 2, "favorites": 1, "coding": 1, "writing": 2}
    assert scope_counts(GUEST, library, ["coding"]) == {"community": 2}
