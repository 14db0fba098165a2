"""Role and permission catalog.

Roles carry a numeric ``level`` (higher = more privileged) and a set of
permission codes of the form ``resource:action[:scope]``. The default
catalog below is loaded once at process start; RolePermissionService may
extend it at runtime.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class RoleCode(str, Enum):
    """Built-in roles, highest level first."""

    ADMIN = "admin"
    MANAGER = "manager"
    SUPERVISOR = "supervisor"
    OPERATOR = "operator"
    DRIVER = "driver"
    WAREHOUSE_STAFF = "warehouse_staff"
    VIEWER = "viewer"


ADMIN_ROLE = RoleCode.ADMIN.value
DEFAULT_ROLE = RoleCode.VIEWER.value
DEFAULT_ROLE_LEVEL = 10

# Grants every permission check, not only reads.
BLANKET_PERMISSION = "read:all"


@dataclass(frozen=True)
class PermissionInfo:
    code: str
    name: str
    description: str = ""


@dataclass(frozen=True)
class Role:
    """Immutable role record.

    Attributes:
        id: Numeric identifier, unique within a catalog
        code: Unique key (e.g. ``manager``)
        name: Display name
        description: Human-readable description
        level: Hierarchy level, higher = more privileged
        permissions: Permission codes granted by the role
    """

    id: int
    code: str
    name: str
    description: str = ""
    level: int = DEFAULT_ROLE_LEVEL
    permissions: frozenset[str] = field(default_factory=frozenset)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "level": self.level,
            "permissions": sorted(self.permissions),
        }


DEFAULT_PERMISSIONS: tuple[PermissionInfo, ...] = (
    # Read
    PermissionInfo("read:all", "Read All", "Read access to all resources"),
    PermissionInfo("read:transport", "Read Transport", "Read transport data"),
    PermissionInfo("read:warehouse", "Read Warehouse", "Read warehouse data"),
    PermissionInfo("read:staff", "Read Staff", "Read staff data"),
    PermissionInfo("read:partners", "Read Partners", "Read partners data"),
    PermissionInfo("read:transport:own", "Read Own Transport", "Read own transport data"),
    # Write
    PermissionInfo("write:all", "Write All", "Write access to all resources"),
    PermissionInfo("write:transport", "Write Transport", "Write transport data"),
    PermissionInfo("write:warehouse", "Write Warehouse", "Write warehouse data"),
    PermissionInfo("write:staff", "Write Staff", "Write staff data"),
    PermissionInfo("write:transport:own", "Write Own Transport", "Write own transport data"),
    # Delete
    PermissionInfo("delete:all", "Delete All", "Delete access to all resources"),
    # Manage
    PermissionInfo("manage:users", "Manage Users", "Manage user accounts"),
    PermissionInfo("manage:settings", "Manage Settings", "Manage system settings"),
    PermissionInfo("manage:transport", "Manage Transport", "Manage transport operations"),
    PermissionInfo("manage:warehouse", "Manage Warehouse", "Manage warehouse operations"),
    PermissionInfo("manage:staff", "Manage Staff", "Manage staff operations"),
    PermissionInfo("manage:partners", "Manage Partners", "Manage partner operations"),
    PermissionInfo("manage:notifications", "Manage Notifications", "Manage notifications"),
    PermissionInfo("manage:system", "Manage System", "Manage system operations"),
    # View
    PermissionInfo("view:reports", "View Reports", "View system reports"),
    PermissionInfo("view:notifications", "View Notifications", "View notifications"),
    # Audit
    PermissionInfo("audit:all", "Audit All", "Audit all operations"),
    PermissionInfo("audit:transport", "Audit Transport", "Audit transport operations"),
    PermissionInfo("audit:warehouse", "Audit Warehouse", "Audit warehouse operations"),
)


DEFAULT_ROLES: tuple[Role, ...] = (
    Role(
        id=1,
        code=RoleCode.ADMIN.value,
        name="Administrator",
        description="Full system access",
        level=100,
        permissions=frozenset(
            {
                "read:all",
                "write:all",
                "delete:all",
                "manage:users",
                "manage:settings",
                "view:reports",
                "manage:transport",
                "manage:warehouse",
                "manage:staff",
                "manage:partners",
                "manage:notifications",
                "manage:system",
                "audit:all",
            }
        ),
    ),
    Role(
        id=2,
        code=RoleCode.MANAGER.value,
        name="Manager",
        description="Management level access",
        level=80,
        permissions=frozenset(
            {
                "read:all",
                "write:transport",
                "write:warehouse",
                "write:staff",
                "view:reports",
                "manage:transport",
                "manage:warehouse",
                "manage:staff",
                "manage:notifications",
                "audit:transport",
                "audit:warehouse",
            }
        ),
    ),
    Role(
        id=3,
        code=RoleCode.SUPERVISOR.value,
        name="Supervisor",
        description="Supervisory level access",
        level=60,
        permissions=frozenset(
            {
                "read:transport",
                "read:warehouse",
                "read:staff",
                "read:partners",
                "write:transport",
                "write:warehouse",
                "view:reports",
                "manage:notifications",
                "audit:transport",
            }
        ),
    ),
    Role(
        id=4,
        code=RoleCode.OPERATOR.value,
        name="Operator",
        description="Operational level access",
        level=40,
        permissions=frozenset(
            {
                "read:transport",
                "read:warehouse",
                "read:partners",
                "write:transport",
                "write:warehouse",
                "view:notifications",
            }
        ),
    ),
    Role(
        id=5,
        code=RoleCode.DRIVER.value,
        name="Driver",
        description="Driver level access",
        level=20,
        permissions=frozenset({"read:transport:own", "write:transport:own", "view:notifications"}),
    ),
    Role(
        id=6,
        code=RoleCode.WAREHOUSE_STAFF.value,
        name="Warehouse Staff",
        description="Warehouse staff access",
        level=20,
        permissions=frozenset(
            {"read:warehouse", "write:warehouse", "read:transport", "view:notifications"}
        ),
    ),
    Role(
        id=7,
        code=RoleCode.VIEWER.value,
        name="Viewer",
        description="Read-only access",
        level=10,
        permissions=frozenset({"read:transport", "read:warehouse", "view:notifications"}),
    ),
)
