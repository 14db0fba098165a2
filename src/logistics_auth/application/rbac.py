"""Role-Based Access Control.

Holds the role and permission catalog and answers hierarchy and
permission questions. The ``admin`` role satisfies every role and
permission check; that rule lives here and nowhere else.

Lookups of unknown role codes never raise: they yield no permissions and
fail every check, so callers default to "no access".
"""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING, Any

import structlog

from logistics_auth.domain.model.roles import (
    ADMIN_ROLE,
    BLANKET_PERMISSION,
    DEFAULT_PERMISSIONS,
    DEFAULT_ROLE_LEVEL,
    DEFAULT_ROLES,
    PermissionInfo,
    Role,
)
from logistics_auth.errors import (
    PermissionExistsError,
    ProtectedRoleError,
    RoleError,
    RoleExistsError,
    RoleNotFoundError,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = structlog.get_logger(__name__)

_MUTABLE_ROLE_FIELDS = frozenset({"name", "description", "level", "permissions"})


class RolePermissionService:
    """Service for role-based access control checks and catalog management."""

    def __init__(
        self,
        roles: Iterable[Role] | None = None,
        permissions: Iterable[PermissionInfo] | None = None,
    ) -> None:
        """Initialize the catalog.

        Args:
            roles: Initial roles. If None, uses DEFAULT_ROLES.
            permissions: Initial permission catalog. If None, uses DEFAULT_PERMISSIONS.
        """
        self._roles: dict[str, Role] = {
            role.code: role for role in (DEFAULT_ROLES if roles is None else roles)
        }
        self._permissions: dict[str, PermissionInfo] = {
            p.code: p for p in (DEFAULT_PERMISSIONS if permissions is None else permissions)
        }

    # -------------------------------------------------------------------------
    # Role lookups
    # -------------------------------------------------------------------------

    def get_all_roles(self) -> list[Role]:
        return list(self._roles.values())

    def get_role_by_code(self, code: str) -> Role | None:
        return self._roles.get(code)

    def get_role_by_id(self, role_id: int) -> Role | None:
        return next((r for r in self._roles.values() if r.id == role_id), None)

    def get_role_permissions(self, code: str) -> frozenset[str]:
        """Get all permissions for a role (empty for unknown roles)."""
        role = self._roles.get(code)
        return role.permissions if role else frozenset()

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    def has_permission(self, role: str, permission: str) -> bool:
        """Check if a role grants a permission.

        True for ``admin``, for a direct grant, or for a role holding the
        blanket ``read:all`` permission.
        """
        if role == ADMIN_ROLE:
            return True
        granted = self.get_role_permissions(role)
        has_perm = permission in granted or BLANKET_PERMISSION in granted

        logger.debug(
            "Permission check",
            role=role,
            required=permission,
            granted=has_perm,
        )
        return has_perm

    def has_any_permission(self, role: str, permissions: Iterable[str]) -> bool:
        return any(self.has_permission(role, p) for p in permissions)

    def has_all_permissions(self, role: str, permissions: Iterable[str]) -> bool:
        return all(self.has_permission(role, p) for p in permissions)

    def has_role(self, user_role: str | None, required_role: str | None) -> bool:
        """Check if ``user_role`` satisfies ``required_role``.

        A role satisfies itself and every role at the same or a lower level;
        ``admin`` satisfies every role.
        """
        if not user_role or not required_role:
            return False
        if user_role == ADMIN_ROLE or user_role == required_role:
            return True

        user = self._roles.get(user_role)
        required = self._roles.get(required_role)
        if user is None or required is None:
            return False
        return user.level >= required.level

    def has_any_role(self, user_role: str | None, required_roles: Iterable[str]) -> bool:
        return any(self.has_role(user_role, r) for r in required_roles)

    def can_manage_role(self, manager_role: str, target_role: str) -> bool:
        """True iff the manager's level is strictly above the target's."""
        manager = self._roles.get(manager_role)
        target = self._roles.get(target_role)
        if manager is None or target is None:
            return False
        return manager.level > target.level

    def get_manageable_roles(self, code: str) -> list[Role]:
        role = self._roles.get(code)
        if role is None:
            return []
        return [r for r in self._roles.values() if r.level < role.level]

    # -------------------------------------------------------------------------
    # Role mutations
    # -------------------------------------------------------------------------

    def create_role(
        self,
        code: str,
        name: str,
        description: str = "",
        level: int | None = None,
        permissions: Iterable[str] = (),
    ) -> Role:
        """Add a role to the catalog.

        Raises:
            RoleExistsError: If the code is already taken
        """
        if code in self._roles:
            raise RoleExistsError()

        next_id = max((r.id for r in self._roles.values()), default=0) + 1
        role = Role(
            id=next_id,
            code=code,
            name=name,
            description=description,
            level=DEFAULT_ROLE_LEVEL if level is None else level,
            permissions=frozenset(permissions),
        )
        self._roles[code] = role

        logger.info("Role created", role=code, level=role.level)
        return role

    def update_role(self, code: str, **changes: Any) -> Role:
        """Replace fields of an existing role. The code itself is immutable.

        Raises:
            RoleNotFoundError: If the role does not exist
            RoleError: If an unknown or immutable field is given
        """
        role = self._roles.get(code)
        if role is None:
            raise RoleNotFoundError()

        unknown = set(changes) - _MUTABLE_ROLE_FIELDS
        if unknown:
            raise RoleError(f"cannot update role fields: {', '.join(sorted(unknown))}")

        if "permissions" in changes:
            changes["permissions"] = frozenset(changes["permissions"])

        updated = dataclasses.replace(role, **changes)
        self._roles[code] = updated

        logger.info("Role updated", role=code, fields=sorted(changes))
        return updated

    def delete_role(self, code: str) -> bool:
        """Remove a role.

        Raises:
            ProtectedRoleError: For the admin role
            RoleNotFoundError: If the role does not exist
        """
        if code == ADMIN_ROLE:
            raise ProtectedRoleError()
        if code not in self._roles:
            raise RoleNotFoundError()

        del self._roles[code]
        logger.info("Role deleted", role=code)
        return True

    # -------------------------------------------------------------------------
    # Permission catalog
    # -------------------------------------------------------------------------

    def get_all_permissions(self) -> list[PermissionInfo]:
        return list(self._permissions.values())

    def get_permission_by_code(self, code: str) -> PermissionInfo | None:
        return self._permissions.get(code)

    def create_permission(self, code: str, name: str, description: str = "") -> PermissionInfo:
        """Add a permission to the catalog.

        Raises:
            PermissionExistsError: If the code is already taken
        """
        if code in self._permissions:
            raise PermissionExistsError()
        permission = PermissionInfo(code=code, name=name, description=description)
        self._permissions[code] = permission
        return permission

    def validate_role_permissions(self, role: str, permissions: Iterable[str]) -> bool:
        """True if the role exists and every permission is in the catalog."""
        if role not in self._roles:
            return False
        return all(p in self._permissions for p in permissions)

    def get_assignable_permissions(self, role: str) -> list[PermissionInfo]:
        """Permissions a holder of ``role`` may grant to others.

        Admin may grant the whole catalog; other roles only what they hold.
        """
        found = self._roles.get(role)
        if found is None:
            return []
        if role == ADMIN_ROLE:
            return self.get_all_permissions()
        return [p for p in self._permissions.values() if p.code in found.permissions]

    def get_role_statistics(self) -> dict[str, Any]:
        roles = list(self._roles.values())
        roles_by_level: dict[int, int] = {}
        for role in roles:
            roles_by_level[role.level] = roles_by_level.get(role.level, 0) + 1

        return {
            "total_roles": len(roles),
            "total_permissions": len(self._permissions),
            "roles_by_level": roles_by_level,
            "average_permissions": (
                sum(len(r.permissions) for r in roles) / len(roles) if roles else 0.0
            ),
        }
