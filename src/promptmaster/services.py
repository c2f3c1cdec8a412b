"""Service layer for prompts, categories, users, credentials and settings.

Every function opens its own session, commits at most once and closes it,
so multi-step mutations (reassign then delete) are a single transaction.
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from prometheus_client import Counter
from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .auth import hash_password, issue_token, verify_password
from .config import settings
from .database import (
    FALLBACK_CATEGORY_ID,
    REGISTRATION_KEY,
    AppSetting,
    Category,
    Favorite,
    Prompt,
    SessionLocal,
    new_id,
)
from .errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PromptMasterError,
    StoreError,
    ValidationError,
)
from .models.user import User
from .policy import GUEST, Capability, Principal, Role, require
from .visibility import (
    PRIVATE,
    VISIBILITIES,
    ViewFilter,
    is_readable,
    popular_tags,
    scoped_prompts_query,
)


logger = logging.getLogger(__name__)

MIN_USERNAME_LENGTH = 3
MIN_PASSWORD_LENGTH = 4
DEFAULT_CATEGORY_ICON = "Tag"

PROMPT_CREATED_COUNTER = Counter("prompts_created_total", "Total prompts created")
PROMPT_DELETED_COUNTER = Counter("prompts_deleted_total", "Total prompts deleted")
FAVORITE_TOGGLE_COUNTER = Counter(
    "favorite_toggles_total", "Total favorite toggles", ["state"]
)
USER_CREATED_COUNTER = Counter(
    "users_created_total", "Total users created", ["source"]
)
LOGIN_FAILURE_COUNTER = Counter("login_failures_total", "Total rejected logins")


def _handle_service_error(session: Session, exc: Exception) -> None:
    """Rollback the transaction and re-raise as a typed service error."""
    session.rollback()
    if isinstance(exc, PromptMasterError):
        logger.info("request rejected: %s", exc.message)
        raise exc
    logger.exception("service layer error", exc_info=exc)
    if isinstance(exc, IntegrityError):
        raise ConflictError("Conflicting record") from exc
    if isinstance(exc, SQLAlchemyError):
        raise StoreError("Database error") from exc
    raise exc


# -- serialization ----------------------------------------------------------


def _serialize_user(user: User) -> Dict[str, object]:
    return {
        "id": user.id,
        "name": user.name,
        "avatar": user.avatar,
        "role": user.role,
        "is_first_login": bool(user.is_first_login),
        "created_at": user.created_at,
        "last_login_at": user.last_login_at,
    }


def _serialize_category(category: Category) -> Dict[str, object]:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type,
        "icon": category.icon or DEFAULT_CATEGORY_ICON,
        "user_id": category.user_id,
    }


def _serialize_prompt(prompt: Prompt, favorite_ids: Iterable[str] = ()) -> Dict[str, object]:
    return {
        "id": prompt.id,
        "title": prompt.title,
        "content": prompt.content,
        "description": prompt.description or "",
        "category_id": prompt.category_id,
        "tags": prompt.tags,
        "created_at": prompt.created_at,
        "updated_at": prompt.updated_at,
        "user_id": prompt.user_id,
        "author_name": prompt.author_name,
        "visibility": prompt.visibility,
        "is_favorite": prompt.id in favorite_ids,
    }


def _principal_for(user: User) -> Principal:
    return Principal(
        id=user.id,
        name=user.name,
        role=Role(user.role),
        is_first_login=bool(user.is_first_login),
    )


def _session_payload(user: User) -> Dict[str, object]:
    return {"token": issue_token(_principal_for(user)), "user": _serialize_user(user)}


# -- lookups ----------------------------------------------------------------


def _find_user_by_name(session: Session, name: str) -> Optional[User]:
    return session.query(User).filter(func.lower(User.name) == func.lower(name)).first()


def _load_member(session: Session, principal: Principal) -> User:
    """Return the principal's row; a token for a deleted user is no longer valid."""
    user = session.get(User, principal.id)
    if user is None:
        raise AuthenticationError("User no longer exists")
    return user


def _get_prompt(session: Session, prompt_id: str) -> Prompt:
    prompt = session.get(Prompt, prompt_id)
    if prompt is None:
        raise NotFoundError("Prompt not found")
    return prompt


def _require_category(session: Session, category_id: str) -> None:
    if session.get(Category, category_id) is None:
        raise ValidationError(f"Unknown category: {category_id}")


def _favorite_ids(session: Session, principal: Principal) -> set:
    if principal.is_guest:
        return set()
    rows = session.query(Favorite.prompt_id).filter(Favorite.user_id == principal.id)
    return {row[0] for row in rows}


def _validate_visibility(visibility: Optional[str]) -> None:
    if visibility is not None and visibility not in VISIBILITIES:
        raise ValidationError("visibility must be 'public' or 'private'")


def _validate_password(password: Optional[str]) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        )


def _registration_allowed(session: Session) -> bool:
    row = session.get(AppSetting, REGISTRATION_KEY)
    return row is not None and row.value == "true"


# -- credentials ------------------------------------------------------------


def authenticate(name: str, password: str) -> Dict[str, object]:
    """Check credentials and return a fresh token with the user.

    Unknown names and wrong passwords are rejected identically.
    """
    if not name or not name.strip() or not password:
        raise ValidationError("Username and password required")

    session: Session = SessionLocal()
    try:
        user = _find_user_by_name(session, name.strip())
        if user is None or not verify_password(password, user.password_hash):
            LOGIN_FAILURE_COUNTER.inc()
            raise AuthenticationError("Invalid credentials")
        user.last_login_at = datetime.utcnow()
        session.commit()
        logger.info("login user=%s", user.id)
        return _session_payload(user)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def register_user(name: str, password: str) -> Dict[str, object]:
    """Self-register a regular user while registration is open."""
    session: Session = SessionLocal()
    try:
        if not _registration_allowed(session):
            raise AuthorizationError("Registration is currently closed")
        name = (name or "").strip()
        if len(name) < MIN_USERNAME_LENGTH:
            raise ValidationError(
                f"Username must be at least {MIN_USERNAME_LENGTH} characters"
            )
        _validate_password(password)
        if _find_user_by_name(session, name):
            raise ConflictError("Username already exists")

        now = datetime.utcnow()
        user = User(
            id=new_id(),
            name=name,
            avatar=name[:2].upper(),
            role=Role.USER.value,
            password_hash=hash_password(password),
            is_first_login=False,
            created_at=now,
            last_login_at=now,
        )
        session.add(user)
        session.commit()
        USER_CREATED_COUNTER.labels(source="register").inc()
        logger.info("registered user=%s", user.id)
        return _session_payload(user)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def get_me(principal: Principal) -> Dict[str, object]:
    session: Session = SessionLocal()
    try:
        user = session.get(User, principal.id)
        if user is None:
            raise NotFoundError("User not found")
        return _serialize_user(user)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def change_password(principal: Principal, new_password: str) -> Dict[str, object]:
    """Set a new password, clear the first-login flag and re-issue the token."""
    _validate_password(new_password)
    session: Session = SessionLocal()
    try:
        user = _load_member(session, principal)
        user.password_hash = hash_password(new_password)
        user.is_first_login = False
        session.commit()
        logger.info("password changed user=%s", user.id)
        return _session_payload(user)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


# -- prompts ----------------------------------------------------------------


def list_prompts(
    principal: Principal, view: Optional[ViewFilter] = None
) -> List[Dict[str, object]]:
    """Own + public prompts with the caller's favorite flags, newest first.

    Passing ``view`` applies the complete scope/search filter in SQL instead
    of leaving the narrowing to the client.
    """
    session: Session = SessionLocal()
    try:
        favorite_ids = _favorite_ids(session, principal)
        prompts = scoped_prompts_query(session, principal, view).all()
        return [_serialize_prompt(p, favorite_ids) for p in prompts]
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def list_public_prompts() -> List[Dict[str, object]]:
    session: Session = SessionLocal()
    try:
        prompts = scoped_prompts_query(session, GUEST).all()
        return [_serialize_prompt(p) for p in prompts]
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def get_prompt(principal: Principal, prompt_id: str) -> Dict[str, object]:
    """Fetch one prompt; prompts the caller may not read look missing."""
    session: Session = SessionLocal()
    try:
        prompt = _get_prompt(session, prompt_id)
        if not is_readable(principal, prompt):
            raise NotFoundError("Prompt not found")
        return _serialize_prompt(prompt, _favorite_ids(session, principal))
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def create_prompt(
    principal: Principal,
    title: str,
    content: str,
    category_id: str,
    description: Optional[str] = None,
    tags: Optional[Iterable[str]] = None,
    visibility: Optional[str] = None,
) -> Dict[str, object]:
    """Create a prompt owned by ``principal``; private unless stated otherwise."""
    if not title or not title.strip() or not content or not content.strip() or not category_id:
        raise ValidationError("title, content, and categoryId are required")
    _validate_visibility(visibility)
    require(principal, Capability.CREATE_PROMPT)

    logger.info("create prompt user=%s category=%s", principal.id, category_id)
    session: Session = SessionLocal()
    try:
        owner = _load_member(session, principal)
        _require_category(session, category_id)
        now = datetime.utcnow()
        prompt = Prompt(
            id=new_id(),
            title=title,
            content=content,
            description=description or "",
            category_id=category_id,
            created_at=now,
            updated_at=now,
            user_id=owner.id,
            author_name=owner.name,
            visibility=visibility or PRIVATE,
        )
        prompt.set_tags(tags or [])
        session.add(prompt)
        session.commit()
        PROMPT_CREATED_COUNTER.inc()
        logger.info("created prompt id=%s user=%s", prompt.id, owner.id)
        return _serialize_prompt(prompt)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def update_prompt(
    principal: Principal,
    prompt_id: str,
    title: Optional[str] = None,
    content: Optional[str] = None,
    description: Optional[str] = None,
    category_id: Optional[str] = None,
    tags: Optional[Iterable[str]] = None,
    visibility: Optional[str] = None,
) -> Dict[str, object]:
    """Partially update a prompt; ``None`` leaves a field unchanged.

    Ownership and the denormalized author name never change here, even when
    an admin edits someone else's prompt.
    """
    if title is not None and not title.strip():
        raise ValidationError("title cannot be empty")
    if content is not None and not content.strip():
        raise ValidationError("content cannot be empty")
    _validate_visibility(visibility)

    session: Session = SessionLocal()
    try:
        prompt = _get_prompt(session, prompt_id)
        require(principal, Capability.MODIFY_PROMPT, owner_id=prompt.user_id)
        if category_id is not None:
            _require_category(session, category_id)
            prompt.category_id = category_id
        if title is not None:
            prompt.title = title
        if content is not None:
            prompt.content = content
        if description is not None:
            prompt.description = description
        if tags is not None:
            prompt.set_tags(tags)
        if visibility is not None:
            prompt.visibility = visibility
        prompt.updated_at = datetime.utcnow()
        session.commit()
        logger.info("updated prompt id=%s by=%s", prompt.id, principal.id)
        return _serialize_prompt(prompt, _favorite_ids(session, principal))
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def delete_prompt(principal: Principal, prompt_id: str) -> None:
    session: Session = SessionLocal()
    try:
        prompt = _get_prompt(session, prompt_id)
        require(principal, Capability.MODIFY_PROMPT, owner_id=prompt.user_id)
        session.query(Favorite).filter(Favorite.prompt_id == prompt_id).delete(
            synchronize_session=False
        )
        session.delete(prompt)
        session.commit()
        PROMPT_DELETED_COUNTER.inc()
        logger.info("deleted prompt id=%s by=%s", prompt_id, principal.id)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def fork_prompt(principal: Principal, prompt_id: str) -> Dict[str, object]:
    """Copy a readable prompt into the caller's library as a private prompt."""
    require(principal, Capability.CREATE_PROMPT)
    session: Session = SessionLocal()
    try:
        owner = _load_member(session, principal)
        source = _get_prompt(session, prompt_id)
        if not is_readable(principal, source):
            raise NotFoundError("Prompt not found")
        now = datetime.utcnow()
        prompt = Prompt(
            id=new_id(),
            title=source.title,
            content=source.content,
            description=source.description or "",
            category_id=source.category_id,
            created_at=now,
            updated_at=now,
            user_id=owner.id,
            author_name=owner.name,
            visibility=PRIVATE,
        )
        prompt.set_tags(source.tags)
        session.add(prompt)
        session.commit()
        PROMPT_CREATED_COUNTER.inc()
        logger.info("forked prompt source=%s id=%s user=%s", source.id, prompt.id, owner.id)
        return _serialize_prompt(prompt)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def toggle_favorite(principal: Principal, prompt_id: str) -> bool:
    """Flip the caller's favorite on a prompt and return the new state."""
    require(principal, Capability.FAVORITE)
    session: Session = SessionLocal()
    try:
        _load_member(session, principal)
        prompt = _get_prompt(session, prompt_id)
        if not is_readable(principal, prompt):
            raise NotFoundError("Prompt not found")
        existing = session.get(Favorite, (principal.id, prompt_id))
        if existing is not None:
            session.delete(existing)
            state = False
        else:
            session.add(Favorite(user_id=principal.id, prompt_id=prompt_id))
            state = True
        session.commit()
        FAVORITE_TOGGLE_COUNTER.labels(state=str(state).lower()).inc()
        return state
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def get_popular_tags(principal: Principal) -> List[Dict[str, object]]:
    session: Session = SessionLocal()
    try:
        prompts = scoped_prompts_query(session, principal).all()
        return [{"tag": tag, "count": count} for tag, count in popular_tags(principal, prompts)]
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


# -- categories -------------------------------------------------------------


def list_categories() -> List[Dict[str, object]]:
    """All categories: system first, then user ones, alphabetical within each."""
    session: Session = SessionLocal()
    try:
        categories = (
            session.query(Category)
            .order_by(
                case((Category.type == "system", 0), else_=1),
                func.lower(Category.name),
                Category.id,
            )
            .all()
        )
        return [_serialize_category(c) for c in categories]
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def create_category(
    principal: Principal, name: str, icon: Optional[str] = None
) -> Dict[str, object]:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Category name is required")
    require(principal, Capability.CREATE_CATEGORY)

    session: Session = SessionLocal()
    try:
        owner = _load_member(session, principal)
        duplicate = (
            session.query(Category)
            .filter(func.lower(Category.name) == func.lower(name))
            .first()
        )
        if duplicate is not None:
            raise ConflictError("Category already exists")
        category = Category(
            id=new_id(),
            name=name,
            type="user",
            icon=icon or DEFAULT_CATEGORY_ICON,
            user_id=owner.id,
        )
        session.add(category)
        session.commit()
        logger.info("created category id=%s user=%s", category.id, owner.id)
        return _serialize_category(category)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def delete_category(principal: Principal, category_id: str) -> None:
    """Move the category's prompts to the fallback category, then delete it."""
    if category_id == FALLBACK_CATEGORY_ID:
        raise ValidationError("The fallback category cannot be deleted")
    require(principal, Capability.DELETE_CATEGORY)

    session: Session = SessionLocal()
    try:
        category = session.get(Category, category_id)
        if category is None:
            raise NotFoundError("Category not found")
        moved = (
            session.query(Prompt)
            .filter(Prompt.category_id == category_id)
            .update({Prompt.category_id: FALLBACK_CATEGORY_ID}, synchronize_session=False)
        )
        session.delete(category)
        session.commit()
        logger.info("deleted category id=%s reassigned=%d", category_id, moved)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


# -- users ------------------------------------------------------------------


def list_users(principal: Principal) -> List[Dict[str, object]]:
    require(principal, Capability.MANAGE_USERS)
    session: Session = SessionLocal()
    try:
        users = session.query(User).order_by(User.created_at, User.name).all()
        return [_serialize_user(u) for u in users]
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def create_user(
    principal: Principal, name: str, role: Optional[str] = None
) -> Dict[str, object]:
    """Create a user with the default password; they must change it on login."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("User name is required")
    role = role or Role.USER.value
    if role not in (Role.ADMIN.value, Role.USER.value):
        raise ValidationError("role must be 'admin' or 'user'")
    require(principal, Capability.MANAGE_USERS)

    session: Session = SessionLocal()
    try:
        if _find_user_by_name(session, name):
            raise ConflictError("User already exists")
        user = User(
            id=new_id(),
            name=name,
            avatar=name[:2].upper(),
            role=role,
            password_hash=hash_password(settings.default_user_password),
            is_first_login=True,
            created_at=datetime.utcnow(),
        )
        session.add(user)
        session.commit()
        USER_CREATED_COUNTER.labels(source="admin").inc()
        logger.info("created user id=%s role=%s by=%s", user.id, role, principal.id)
        return _serialize_user(user)
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def delete_user(principal: Principal, user_id: str) -> None:
    """Delete a user, handing their prompts to the deleting admin."""
    require(principal, Capability.MANAGE_USERS)
    if user_id == principal.id:
        raise ValidationError("Cannot delete yourself")

    session: Session = SessionLocal()
    try:
        admin = _load_member(session, principal)
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        moved = (
            session.query(Prompt)
            .filter(Prompt.user_id == user_id)
            .update(
                {Prompt.user_id: admin.id, Prompt.author_name: admin.name},
                synchronize_session=False,
            )
        )
        session.query(Favorite).filter(Favorite.user_id == user_id).delete(
            synchronize_session=False
        )
        session.query(Category).filter(Category.user_id == user_id).update(
            {Category.user_id: None}, synchronize_session=False
        )
        session.delete(user)
        session.commit()
        logger.info(
            "deleted user id=%s by=%s reassigned=%d", user_id, admin.id, moved
        )
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


# -- settings ---------------------------------------------------------------


def get_settings() -> Dict[str, bool]:
    session: Session = SessionLocal()
    try:
        return {"allow_registration": _registration_allowed(session)}
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()


def update_settings(
    principal: Principal, allow_registration: Optional[bool] = None
) -> Dict[str, bool]:
    require(principal, Capability.MANAGE_SETTINGS)
    session: Session = SessionLocal()
    try:
        if allow_registration is not None:
            row = session.get(AppSetting, REGISTRATION_KEY)
            value = "true" if allow_registration else "false"
            if row is None:
                session.add(AppSetting(key=REGISTRATION_KEY, value=value))
            else:
                row.value = value
            session.commit()
            logger.info("allow_registration=%s by=%s", value, principal.id)
        return {"allow_registration": _registration_allowed(session)}
    except Exception as exc:
        _handle_service_error(session, exc)
    finally:
        session.close()
