"""Authorization guard for routes, components and actions.

Only registered routes and components are protected; anything else is
allowed. For a registered surface the guard checks, in order: an
authenticated principal, a completed second factor, the required roles
(any of), the required permissions (all of), then each middleware in
registration order, stopping at the first denial.

Guard checks return ``AccessDecision`` values instead of raising.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog

from logistics_auth.domain.clock import utc_now
from logistics_auth.domain.model.roles import ADMIN_ROLE

if TYPE_CHECKING:
    from collections.abc import Iterable

    from logistics_auth.application.rbac import RolePermissionService
    from logistics_auth.domain.clock import Clock
    from logistics_auth.domain.model.users import Principal

logger = structlog.get_logger(__name__)

REASON_NOT_AUTHENTICATED = "Not authenticated"
REASON_TWO_FACTOR_REQUIRED = "Two-factor authentication required"
REASON_INSUFFICIENT_ROLE = "Insufficient role"
REASON_INSUFFICIENT_PERMISSIONS = "Insufficient permissions"
REASON_NOT_OWNER = "Not resource owner"
REASON_SESSION_TIMEOUT = "Session timeout"
REASON_IP_NOT_ALLOWED = "IP not allowed"
REASON_DEVICE_NOT_ALLOWED = "Device not allowed"
REASON_OUTSIDE_HOURS = "Access outside allowed hours"
REASON_LOCATION_NOT_ALLOWED = "Location not allowed"


@dataclass(frozen=True)
class AccessDecision:
    """Outcome of an authorization check.

    Attributes:
        allowed: Whether access is granted
        reason: Denial reason (None when allowed)
        redirect_to: Where a denied route should send the client
        fallback_component: What a denied component should render instead
        required_permission: The permission an action needed
    """

    allowed: bool
    reason: str | None = None
    redirect_to: str | None = None
    fallback_component: str | None = None
    required_permission: str | None = None

    @classmethod
    def allow(cls) -> AccessDecision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str, redirect_to: str | None = None) -> AccessDecision:
        return cls(allowed=False, reason=reason, redirect_to=redirect_to)


@dataclass(frozen=True)
class AccessContext:
    """Request facts handed to middlewares.

    Attributes:
        target: Route, component or action being checked
        now: Time of the check
    """

    target: str
    now: datetime


Middleware = Callable[["Principal", AccessContext], AccessDecision]


@dataclass(frozen=True)
class RoutePolicy:
    required_roles: tuple[str, ...] = ()
    required_permissions: tuple[str, ...] = ()
    middleware: tuple[Middleware | str, ...] = ()
    redirect_to: str = "/unauthorized"


@dataclass(frozen=True)
class ComponentPolicy:
    required_roles: tuple[str, ...] = ()
    required_permissions: tuple[str, ...] = ()
    middleware: tuple[Middleware | str, ...] = ()
    fallback_component: str | None = None


@dataclass(frozen=True)
class ActionRule:
    """Permission an action needs, and whether the actor must own the resource."""

    permission: str
    require_ownership: bool = False


DEFAULT_ACTION_RULES: dict[str, ActionRule] = {
    "create:user": ActionRule("manage:users"),
    "read:user": ActionRule("read:all"),
    "update:user": ActionRule("manage:users"),
    "delete:user": ActionRule("manage:users"),
    "create:transport": ActionRule("write:transport"),
    "read:transport": ActionRule("read:transport"),
    "update:transport": ActionRule("write:transport"),
    "delete:transport": ActionRule("write:transport"),
    "read:transport:own": ActionRule("read:transport:own", require_ownership=True),
    "update:transport:own": ActionRule("write:transport:own", require_ownership=True),
    "create:warehouse": ActionRule("write:warehouse"),
    "read:warehouse": ActionRule("read:warehouse"),
    "update:warehouse": ActionRule("write:warehouse"),
    "delete:warehouse": ActionRule("write:warehouse"),
    "create:staff": ActionRule("write:staff"),
    "read:staff": ActionRule("read:staff"),
    "update:staff": ActionRule("write:staff"),
    "delete:staff": ActionRule("write:staff"),
    "create:partner": ActionRule("write:partners"),
    "read:partner": ActionRule("read:partners"),
    "update:partner": ActionRule("write:partners"),
    "delete:partner": ActionRule("write:partners"),
    "view:reports": ActionRule("view:reports"),
    "manage:settings": ActionRule("manage:settings"),
    "audit:all": ActionRule("audit:all"),
}


# =============================================================================
# BUILT-IN MIDDLEWARE FACTORIES
# =============================================================================


def session_timeout_middleware(
    timeout: timedelta = timedelta(hours=24),
    redirect_to: str = "/login?reason=timeout",
) -> Middleware:
    """Deny principals whose last activity is older than ``timeout``."""

    def check(user: Principal, context: AccessContext) -> AccessDecision:
        if user.last_activity is not None and context.now - user.last_activity > timeout:
            return AccessDecision.deny(REASON_SESSION_TIMEOUT, redirect_to)
        return AccessDecision.allow()

    return check


def _allow_list_middleware(
    allowed: Iterable[str],
    attribute: str,
    reason: str,
    redirect_to: str,
) -> Middleware:
    allowed_set = frozenset(allowed)

    def check(user: Principal, context: AccessContext) -> AccessDecision:
        if allowed_set and getattr(user, attribute) not in allowed_set:
            return AccessDecision.deny(reason, redirect_to)
        return AccessDecision.allow()

    return check


def ip_allowlist_middleware(
    allowed_ips: Iterable[str], redirect_to: str = "/unauthorized?reason=ip"
) -> Middleware:
    """Deny principals outside the allow-list. An empty list allows any address."""
    return _allow_list_middleware(allowed_ips, "ip_address", REASON_IP_NOT_ALLOWED, redirect_to)


def device_allowlist_middleware(
    allowed_devices: Iterable[str], redirect_to: str = "/unauthorized?reason=device"
) -> Middleware:
    return _allow_list_middleware(
        allowed_devices, "device_id", REASON_DEVICE_NOT_ALLOWED, redirect_to
    )


def location_allowlist_middleware(
    allowed_locations: Iterable[str], redirect_to: str = "/unauthorized?reason=location"
) -> Middleware:
    return _allow_list_middleware(
        allowed_locations, "location", REASON_LOCATION_NOT_ALLOWED, redirect_to
    )


def time_window_middleware(
    start_hour: int = 0,
    end_hour: int = 23,
    redirect_to: str = "/unauthorized?reason=time",
) -> Middleware:
    """Allow access only between ``start_hour`` and ``end_hour`` inclusive (UTC)."""
    if not (0 <= start_hour <= 23 and 0 <= end_hour <= 23):
        raise ValueError("hours must be between 0 and 23")

    def check(user: Principal, context: AccessContext) -> AccessDecision:
        hour = context.now.hour
        if hour < start_hour or hour > end_hour:
            return AccessDecision.deny(REASON_OUTSIDE_HOURS, redirect_to)
        return AccessDecision.allow()

    return check


# =============================================================================
# GUARD
# =============================================================================


class SecurityGuard:
    """Route, component and action authorization.

    Example:
        guard = SecurityGuard(rbac)
        guard.register_route("/reports", RoutePolicy(required_roles=("manager",)))
        decision = guard.can_access_route(principal, "/reports")
    """

    def __init__(
        self,
        rbac: RolePermissionService,
        *,
        default_redirect: str = "/unauthorized",
        login_redirect: str = "/login",
        two_factor_redirect: str = "/login/2fa",
        action_rules: dict[str, ActionRule] | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._rbac = rbac
        self.default_redirect = default_redirect
        self.login_redirect = login_redirect
        self.two_factor_redirect = two_factor_redirect
        self._action_rules = dict(DEFAULT_ACTION_RULES if action_rules is None else action_rules)
        self._clock = clock

        self._routes: dict[str, RoutePolicy] = {}
        self._components: dict[str, ComponentPolicy] = {}
        self._middlewares: dict[str, Middleware] = {}

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register_route(self, route: str, policy: RoutePolicy | None = None) -> None:
        self._check_middleware_names(policy.middleware if policy else ())
        self._routes[route] = policy or RoutePolicy(redirect_to=self.default_redirect)

    def register_component(self, name: str, policy: ComponentPolicy | None = None) -> None:
        self._check_middleware_names(policy.middleware if policy else ())
        self._components[name] = policy or ComponentPolicy()

    def register_middleware(self, name: str, middleware: Middleware) -> None:
        """Make ``middleware`` referable by ``name`` in policies."""
        self._middlewares[name] = middleware

    def get_middleware(self, name: str) -> Middleware | None:
        return self._middlewares.get(name)

    def _check_middleware_names(self, entries: Iterable[Middleware | str]) -> None:
        for entry in entries:
            if isinstance(entry, str) and entry not in self._middlewares:
                raise KeyError(f"Unknown middleware: {entry}")

    def _resolve(self, entry: Middleware | str) -> Middleware:
        if isinstance(entry, str):
            return self._middlewares[entry]
        return entry

    # -------------------------------------------------------------------------
    # Checks
    # -------------------------------------------------------------------------

    def _evaluate(
        self,
        user: Principal | None,
        target: str,
        required_roles: tuple[str, ...],
        required_permissions: tuple[str, ...],
        middleware: tuple[Middleware | str, ...],
        redirect_to: str | None,
    ) -> AccessDecision:
        if user is None:
            return AccessDecision.deny(REASON_NOT_AUTHENTICATED, self.login_redirect)

        if user.two_factor_pending:
            return AccessDecision.deny(REASON_TWO_FACTOR_REQUIRED, self.two_factor_redirect)

        if required_roles and not self._rbac.has_any_role(user.role, required_roles):
            return AccessDecision.deny(REASON_INSUFFICIENT_ROLE, redirect_to)

        if required_permissions and not self._rbac.has_all_permissions(
            user.role, required_permissions
        ):
            return AccessDecision.deny(REASON_INSUFFICIENT_PERMISSIONS, redirect_to)

        context = AccessContext(target=target, now=self._clock())
        for entry in middleware:
            decision = self._resolve(entry)(user, context)
            if not decision.allowed:
                return decision

        return AccessDecision.allow()

    def can_access_route(self, user: Principal | None, route: str) -> AccessDecision:
        policy = self._routes.get(route)
        if policy is None:
            return AccessDecision.allow()

        decision = self._evaluate(
            user,
            route,
            policy.required_roles,
            policy.required_permissions,
            policy.middleware,
            policy.redirect_to,
        )
        if not decision.allowed:
            logger.info(
                "Route access denied",
                route=route,
                user_id=user.id if user else None,
                reason=decision.reason,
            )
        return decision

    def can_access_component(self, user: Principal | None, name: str) -> AccessDecision:
        policy = self._components.get(name)
        if policy is None:
            return AccessDecision.allow()

        decision = self._evaluate(
            user,
            name,
            policy.required_roles,
            policy.required_permissions,
            policy.middleware,
            None,
        )
        if not decision.allowed and decision.fallback_component is None:
            decision = dataclasses.replace(decision, fallback_component=policy.fallback_component)
        return decision

    def can_perform_action(
        self,
        user: Principal | None,
        action: str,
        resource: Any = None,
    ) -> AccessDecision:
        """Check an action against the action table.

        Unmapped actions are allowed. For ownership actions the resource's
        ``created_by`` (attribute or mapping key) must equal the user's ID
        unless the user is admin; a resource without an owner passes.
        """
        rule = self._action_rules.get(action)
        if rule is None:
            return AccessDecision.allow()

        if user is None:
            return AccessDecision.deny(REASON_NOT_AUTHENTICATED)

        if user.two_factor_pending:
            return AccessDecision.deny(REASON_TWO_FACTOR_REQUIRED, self.two_factor_redirect)

        if not self._rbac.has_permission(user.role, rule.permission):
            return AccessDecision(
                allowed=False,
                reason=REASON_INSUFFICIENT_PERMISSIONS,
                required_permission=rule.permission,
            )

        if rule.require_ownership and resource is not None and not self._owns(user, resource):
            return AccessDecision(
                allowed=False,
                reason=REASON_NOT_OWNER,
                required_permission=rule.permission,
            )

        return AccessDecision.allow()

    def _owns(self, user: Principal, resource: Any) -> bool:
        if isinstance(resource, dict):
            owner = resource.get("created_by")
        else:
            owner = getattr(resource, "created_by", None)
        if not owner:
            return True
        return owner == user.id or self._rbac.has_role(user.role, ADMIN_ROLE)

    def can_perform_bulk_actions(
        self, user: Principal | None, actions: Iterable[str]
    ) -> dict[str, AccessDecision]:
        return {action: self.can_perform_action(user, action) for action in actions}

    def get_available_actions(self, user: Principal | None) -> list[str]:
        return [a for a in self._action_rules if self.can_perform_action(user, a).allowed]

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def get_security_statistics(self) -> dict[str, Any]:
        return {
            "total_routes": len(self._routes),
            "total_components": len(self._components),
            "total_middlewares": len(self._middlewares),
            "routes": list(self._routes),
            "components": list(self._components),
            "middlewares": list(self._middlewares),
        }

    def reset(self) -> None:
        """Forget all registered routes, components and middlewares."""
        self._routes.clear()
        self._components.clear()
        self._middlewares.clear()


__all__ = [
    "AccessContext",
    "AccessDecision",
    "ActionRule",
    "ComponentPolicy",
    "DEFAULT_ACTION_RULES",
    "Middleware",
    "RoutePolicy",
    "SecurityGuard",
    "device_allowlist_middleware",
    "ip_allowlist_middleware",
    "location_allowlist_middleware",
    "session_timeout_middleware",
    "time_window_middleware",
]
