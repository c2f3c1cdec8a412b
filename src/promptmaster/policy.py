"""Single capability check shared by route guards and client view gating."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import AuthorizationError


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"
    GUEST = "guest"


class Capability(str, Enum):
    READ_PUBLIC = "read_public"
    USE_PERSONAL_SCOPES = "use_personal_scopes"
    CREATE_PROMPT = "create_prompt"
    MODIFY_PROMPT = "modify_prompt"
    FAVORITE = "favorite"
    CREATE_CATEGORY = "create_category"
    DELETE_CATEGORY = "delete_category"
    MANAGE_USERS = "manage_users"
    MANAGE_SETTINGS = "manage_settings"
    USE_OPTIMIZER = "use_optimizer"


@dataclass(frozen=True)
class Principal:
    """The identity making a request, authenticated or guest."""

    id: str
    name: str
    role: Role
    is_first_login: bool = False

    @property
    def is_guest(self) -> bool:
        return self.role is Role.GUEST

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


GUEST = Principal(id="guest", name="Guest", role=Role.GUEST)

_MEMBER_CAPABILITIES = {
    Capability.READ_PUBLIC,
    Capability.USE_PERSONAL_SCOPES,
    Capability.CREATE_PROMPT,
    Capability.FAVORITE,
    Capability.CREATE_CATEGORY,
    Capability.USE_OPTIMIZER,
}

ROLE_CAPABILITIES = {
    Role.GUEST: frozenset({Capability.READ_PUBLIC}),
    Role.USER: frozenset(_MEMBER_CAPABILITIES),
    Role.ADMIN: frozenset(
        _MEMBER_CAPABILITIES
        | {
            Capability.DELETE_CATEGORY,
            Capability.MANAGE_USERS,
            Capability.MANAGE_SETTINGS,
        }
    ),
}


def can(
    principal: Principal, capability: Capability, owner_id: Optional[str] = None
) -> bool:
    """Return whether ``principal`` holds ``capability``.

    ``MODIFY_PROMPT`` is the one ownership-dependent capability: members may
    modify their own prompts, admins may modify any prompt.
    """
    if capability is Capability.MODIFY_PROMPT:
        if principal.is_guest:
            return False
        return principal.is_admin or (owner_id is not None and owner_id == principal.id)
    return capability in ROLE_CAPABILITIES[principal.role]


def require(
    principal: Principal, capability: Capability, owner_id: Optional[str] = None
) -> None:
    """Raise :class:`AuthorizationError` unless ``principal`` holds ``capability``."""
    if not can(principal, capability, owner_id):
        raise AuthorizationError("Not authorized")
