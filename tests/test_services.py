import pytest

from promptmaster import services
from promptmaster.database import Category, Favorite, Prompt
from promptmaster.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from promptmaster.models.user import User
from promptmaster.policy import Principal, Role


def test_create_prompt_defaults(session_local, jane):
    created = services.create_prompt(
        jane, title="Haiku", content="Write a haiku", category_id="writing",
        tags=[" Poetry ", "poetry", "", "Short"],
    )
    assert created["visibility"] == "private"
    assert created["user_id"] == "user2"
    assert created["author_name"] == "Jane Doe"
    assert created["tags"] == ["poetry", "short"]
    assert created["created_at"] == created["updated_at"]
    assert created["is_favorite"] is False


@pytest.mark.parametrize(
    "fields",
    [
        {"title": "", "content": "x", "category_id": "coding"},
        {"title": "t", "content": "  ", "category_id": "coding"},
        {"title": "t", "content": "x", "category_id": ""},
        {"title": "t", "content": "x", "category_id": "missing"},
        {"title": "t", "content": "x", "category_id": "coding", "visibility": "secret"},
    ],
)
def test_create_prompt_validation(session_local, jane, fields):
    with pytest.raises(ValidationError):
        services.create_prompt(jane, **fields)


def test_guest_cannot_create_prompt(session_local, guest):
    with pytest.raises(AuthorizationError):
        services.create_prompt(guest, title="t", content="x", category_id="coding")


def test_stale_token_owner_cannot_create(session_local):
    ghost = Principal(id="ghost", name="Ghost", role=Role.USER)
    with pytest.raises(AuthenticationError):
        services.create_prompt(ghost, title="t", content="x", category_id="coding")


def test_partial_update_keeps_other_fields(session_local, jane):
    created = services.create_prompt(
        jane, title="Old", content="Body", category_id="coding", tags=["a"], description="d"
    )
    updated = services.update_prompt(jane, created["id"], title="New")
    assert updated["title"] == "New"
    assert updated["content"] == "Body"
    assert updated["tags"] == ["a"]
    assert updated["description"] == "d"
    assert updated["updated_at"] >= created["updated_at"]


def test_admin_update_keeps_owner_and_author(session_local, admin):
    updated = services.update_prompt(admin, "demo3", visibility="private", tags=["X"])
    assert updated["user_id"] == "user2"
    assert updated["author_name"] == "Jane Doe"
    assert updated["visibility"] == "private"
    assert updated["tags"] == ["x"]


def test_non_owner_cannot_modify(session_local, jane):
    with pytest.raises(AuthorizationError):
        services.update_prompt(jane, "demo1", title="mine now")
    with pytest.raises(AuthorizationError):
        services.delete_prompt(jane, "demo1")
    with pytest.raises(NotFoundError):
        services.delete_prompt(jane, "does-not-exist")


def test_delete_prompt_removes_favorites(session_local, admin):
    services.delete_prompt(admin, "demo1")
    session = session_local()
    assert session.get(Prompt, "demo1") is None
    assert session.query(Favorite).filter(Favorite.prompt_id == "demo1").count() == 0
    session.close()


def test_get_prompt_hides_private_prompts_of_others(session_local, admin, jane, guest):
    assert services.get_prompt(admin, "demo2")["id"] == "demo2"
    with pytest.raises(NotFoundError):
        services.get_prompt(jane, "demo2")
    with pytest.raises(NotFoundError):
        services.get_prompt(guest, "demo2")
    assert services.get_prompt(guest, "demo3")["is_favorite"] is False


def test_fork_creates_private_copy(session_local, jane):
    forked = services.fork_prompt(jane, "demo1")
    assert forked["id"] != "demo1"
    assert forked["user_id"] == "user2"
    assert forked["author_name"] == "Jane Doe"
    assert forked["visibility"] == "private"
    assert forked["tags"] == ["react", "typescript", "tailwind", "ui"]
    with pytest.raises(NotFoundError):
        services.fork_prompt(jane, "demo2")


def test_toggle_favorite_sequence(session_local, jane):
    assert services.toggle_favorite(jane, "demo1") is True
    assert services.toggle_favorite(jane, "demo1") is False
    assert services.toggle_favorite(jane, "demo1") is True
    listing = {p["id"]: p for p in services.list_prompts(jane)}
    assert listing["demo1"]["is_favorite"] is True
    session = session_local()
    rows = session.query(Favorite).filter(Favorite.user_id == "user2").all()
    assert [(r.user_id, r.prompt_id) for r in rows] == [("user2", "demo1")]
    session.close()


def test_toggle_favorite_rejects_unreadable_and_guest(session_local, jane, guest):
    with pytest.raises(NotFoundError):
        services.toggle_favorite(jane, "demo2")
    with pytest.raises(AuthorizationError):
        services.toggle_favorite(guest, "demo1")


def test_favorite_flag_is_per_user(session_local, admin, jane):
    by_admin = {p["id"]: p["is_favorite"] for p in services.list_prompts(admin)}
    by_jane = {p["id"]: p["is_favorite"] for p in services.list_prompts(jane)}
    assert by_admin["demo1"] is True
    assert by_jane["demo1"] is False
    assert all(not p["is_favorite"] for p in services.list_public_prompts())


def test_list_prompts_excludes_private_of_others(session_local, jane):
    ids = [p["id"] for p in services.list_prompts(jane)]
    assert "demo2" not in ids
    assert set(ids) == {"demo1", "demo3"}


def test_delete_category_reassigns_prompts(session_local, admin):
    services.delete_category(admin, "image-gen")
    session = session_local()
    assert session.get(Category, "image-gen") is None
    assert session.get(Prompt, "demo3").category_id == "other"
    assert session.query(Prompt).filter(Prompt.category_id == "image-gen").count() == 0
    session.close()
    assert "image-gen" not in [c["id"] for c in services.list_categories()]


def test_delete_category_rules(session_local, admin, jane):
    with pytest.raises(ValidationError):
        services.delete_category(admin, "other")
    with pytest.raises(ValidationError):
        services.delete_category(jane, "other")
    with pytest.raises(AuthorizationError):
        services.delete_category(jane, "coding")
    with pytest.raises(NotFoundError):
        services.delete_category(admin, "nope")


def test_create_category(session_local, jane):
    created = services.create_category(jane, "  Marketing ")
    assert created["name"] == "Marketing"
    assert created["type"] == "user"
    assert created["icon"] == "Tag"
    assert created["user_id"] == "user2"
    with pytest.raises(ConflictError):
        services.create_category(jane, "marketing")
    with pytest.raises(ConflictError):
        services.create_category(jane, "编程")
    with pytest.raises(ValidationError):
        services.create_category(jane, "   ")


def test_list_categories_system_first_then_alphabetical(session_local, jane):
    services.create_category(jane, "zeta")
    services.create_category(jane, "Alpha")
    categories = services.list_categories()
    types = [c["type"] for c in categories]
    assert types == sorted(types, key=lambda t: t != "system")
    user_names = [c["name"] for c in categories if c["type"] == "user"]
    assert user_names == ["Alpha", "zeta"]


def test_create_user_defaults(session_local, admin):
    created = services.create_user(admin, " bob smith ")
    assert created["name"] == "bob smith"
    assert created["avatar"] == "BO"
    assert created["role"] == "user"
    assert created["is_first_login"] is True
    login = services.authenticate("BOB SMITH", "123456")
    assert login["user"]["is_first_login"] is True
    with pytest.raises(ConflictError):
        services.create_user(admin, "Bob Smith")
    with pytest.raises(ValidationError):
        services.create_user(admin, "carol", role="guest")


def test_delete_user_reassigns_prompts_and_drops_favorites(session_local, admin):
    jane_as_principal = Principal(id="user2", name="Jane Doe", role=Role.USER)
    services.toggle_favorite(jane_as_principal, "demo1")
    services.create_category(jane_as_principal, "Jane's")

    services.delete_user(admin, "user2")

    session = session_local()
    assert session.get(User, "user2") is None
    demo3 = session.get(Prompt, "demo3")
    assert demo3.user_id == "user1"
    assert demo3.author_name == "Admin User"
    assert session.query(Favorite).filter(Favorite.user_id == "user2").count() == 0
    assert session.query(Category).filter(Category.user_id == "user2").count() == 0
    session.close()


def test_admin_cannot_delete_self(session_local, admin):
    before = services.list_users(admin)
    with pytest.raises(ValidationError):
        services.delete_user(admin, "user1")
    assert services.list_users(admin) == before


def test_user_management_is_admin_only(session_local, jane):
    with pytest.raises(AuthorizationError):
        services.list_users(jane)
    with pytest.raises(AuthorizationError):
        services.create_user(jane, "mallory")
    with pytest.raises(AuthorizationError):
        services.delete_user(jane, "user1")


def test_popular_tags_service(session_local, jane, guest):
    tags = services.get_popular_tags(guest)
    assert {t["tag"] for t in tags} == {
        "react", "typescript", "tailwind", "ui", "midjourney", "portrait", "cyberpunk", "art",
    }
    assert "blog" not in {t["tag"] for t in services.get_popular_tags(jane)}
    assert len(tags) <= 10


def test_settings_round_trip(session_local, admin, jane):
    assert services.get_settings() == {"allow_registration": False}
    assert services.update_settings(admin, True) == {"allow_registration": True}
    assert services.update_settings(admin, None) == {"allow_registration": True}
    with pytest.raises(AuthorizationError):
        services.update_settings(jane, False)


def test_non_ascii_user_names_fold_case(session_local, admin):
    services.create_user(admin, "Émile")
    assert services.authenticate("Émile", "123456")["user"]["name"] == "Émile"
    assert services.authenticate("émile", "123456")["user"]["name"] == "Émile"
    with pytest.raises(ConflictError):
        services.create_user(admin, "ÉMILE")

    services.create_user(admin, "Иван")
    assert services.authenticate("иван", "123456")["user"]["name"] == "Иван"


def test_non_ascii_category_names_are_unique(session_local, jane):
    services.create_category(jane, "Éclair")
    with pytest.raises(ConflictError):
        services.create_category(jane, "Éclair")
    with pytest.raises(ConflictError):
        services.create_category(jane, "éclair")
