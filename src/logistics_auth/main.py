"""Runtime wiring for the authentication core."""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from logistics_auth.adapters.memory import InMemoryTwoFactorStore, InMemoryUserService
from logistics_auth.adapters.persistence import SqlSessionStore
from logistics_auth.application.audit import AuditTrail
from logistics_auth.application.authentication import AuthenticationService
from logistics_auth.application.guard import (
    SecurityGuard,
    ip_allowlist_middleware,
    session_timeout_middleware,
)
from logistics_auth.application.rbac import RolePermissionService
from logistics_auth.application.sessions import SessionManager
from logistics_auth.config.loader import load_config
from logistics_auth.config.schema import PersistenceBackend
from logistics_auth.domain.clock import utc_now
from logistics_auth.observability.logging import setup_logging
from logistics_auth.security.password import PasswordService
from logistics_auth.security.tokens import TokenService
from logistics_auth.security.totp import TwoFactorAuthService

if TYPE_CHECKING:
    from pathlib import Path

    from logistics_auth.application.authentication import ResetNotifier
    from logistics_auth.application.ports import TwoFactorStore, UserService
    from logistics_auth.config.schema import AuthConfig
    from logistics_auth.domain.clock import Clock

logger = structlog.get_logger(__name__)


@dataclass
class AuthServices:
    """Shared, process-wide collaborators built from one configuration."""

    config: AuthConfig
    audit: AuditTrail
    tokens: TokenService
    passwords: PasswordService
    rbac: RolePermissionService
    guard: SecurityGuard
    sessions: SessionManager
    two_factor: TwoFactorAuthService
    users: UserService
    two_factor_store: TwoFactorStore
    session_store: SqlSessionStore | None = None


def build_services(
    config: AuthConfig,
    *,
    users: UserService | None = None,
    two_factor_store: TwoFactorStore | None = None,
    clock: Clock = utc_now,
) -> AuthServices:
    """Construct every service from ``config``.

    Args:
        config: Validated configuration
        users: Account backend; defaults to an in-memory one
        two_factor_store: 2FA secret storage; defaults to an in-memory one
        clock: Time source shared by all services
    """
    audit = AuditTrail(clock=clock)
    tokens = TokenService(
        secret=config.tokens.secret,
        algorithm=config.tokens.algorithm,
        issuer=config.tokens.issuer,
        audience=config.tokens.audience,
        access_ttl=config.tokens.access_ttl,
        refresh_ttl=config.tokens.refresh_ttl,
        clock=clock,
    )
    passwords = PasswordService(
        time_cost=config.passwords.time_cost,
        memory_cost=config.passwords.memory_cost,
        parallelism=config.passwords.parallelism,
        min_length=config.passwords.min_length,
        max_length=config.passwords.max_length,
    )
    rbac = RolePermissionService()

    guard = SecurityGuard(
        rbac,
        default_redirect=config.guard.default_redirect,
        login_redirect=config.guard.login_redirect,
        two_factor_redirect=config.guard.two_factor_redirect,
        clock=clock,
    )
    guard.register_middleware(
        "session_timeout", session_timeout_middleware(config.sessions.session_timeout)
    )
    guard.register_middleware("ip_allowlist", ip_allowlist_middleware(config.guard.allowed_ips))

    session_store = None
    if config.persistence.backend == PersistenceBackend.SQLITE:
        session_store = SqlSessionStore(db_path=config.persistence.db_path)

    sessions = SessionManager(
        tokens,
        audit,
        session_store,
        session_timeout=config.sessions.session_timeout,
        idle_timeout=config.sessions.idle_timeout,
        max_sessions_per_user=config.sessions.max_sessions_per_user,
        refresh_threshold=config.sessions.refresh_threshold,
        cleanup_interval=config.sessions.cleanup_interval_seconds,
        store_timeout=config.sessions.store_timeout_seconds,
        clock=clock,
    )

    two_factor_store = two_factor_store or InMemoryTwoFactorStore()
    two_factor = TwoFactorAuthService(
        two_factor_store,
        audit,
        issuer=config.two_factor.issuer,
        backup_code_count=config.two_factor.backup_code_count,
        backup_code_length=config.two_factor.backup_code_length,
        qr_code_base_url=config.two_factor.qr_code_base_url,
        clock=clock,
    )

    return AuthServices(
        config=config,
        audit=audit,
        tokens=tokens,
        passwords=passwords,
        rbac=rbac,
        guard=guard,
        sessions=sessions,
        two_factor=two_factor,
        users=users or InMemoryUserService(clock=clock),
        two_factor_store=two_factor_store,
        session_store=session_store,
    )


class AuthRuntime:
    """Lifecycle owner for the authentication core.

    Coordinates:
    - Session snapshot store (schema creation, pruning, shutdown)
    - Session restore after a restart
    - Background session cleanup
    """

    def __init__(
        self,
        config: AuthConfig,
        *,
        users: UserService | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config
        self._clock = clock
        self.services = build_services(config, users=users, clock=clock)
        self._shutdown_event = asyncio.Event()
        self._started = False

    async def start(self) -> None:
        """Prepare storage, restore sessions and start the cleanup sweep."""
        if self._started:
            return
        logger.info(
            "Starting authentication core",
            name=self.config.service.name,
            environment=self.config.service.environment,
            persistence=self.config.persistence.backend.value,
        )

        store = self.services.session_store
        if store is not None:
            await store.initialize()
            await store.delete_expired(self._clock())

        restored = await self.services.sessions.restore()
        await self.services.sessions.start()
        self._started = True
        logger.info("Authentication core started", restored_sessions=restored)

    async def stop(self) -> None:
        """Stop background work and release the store."""
        if not self._started:
            return
        logger.info("Stopping authentication core")

        await self.services.sessions.stop()
        if self.services.session_store is not None:
            await self.services.session_store.close()

        self._started = False
        logger.info("Authentication core stopped")

    @property
    def is_running(self) -> bool:
        return self._started

    def authentication_service(
        self, reset_notifier: ResetNotifier | None = None
    ) -> AuthenticationService:
        """New per-client AuthenticationService over the shared services."""
        s = self.services
        return AuthenticationService(
            users=s.users,
            passwords=s.passwords,
            tokens=s.tokens,
            rbac=s.rbac,
            sessions=s.sessions,
            guard=s.guard,
            two_factor=s.two_factor,
            audit=s.audit,
            reset_token_ttl=self.config.passwords.reset_token_ttl,
            reset_notifier=reset_notifier,
            clock=self._clock,
        )

    async def run_until_shutdown(self) -> None:
        """Run until shutdown signal received."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()


async def run_service(config_path: Path, override_path: Path | None = None) -> None:
    """Load configuration and run the core until SIGINT/SIGTERM."""
    config = load_config(config_path, override_path=override_path)
    setup_logging(config.logging.level, config.logging.format.value)

    runtime = AuthRuntime(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, runtime.request_shutdown)

    try:
        await runtime.start()
        await runtime.run_until_shutdown()
    finally:
        await runtime.stop()


def main() -> None:
    """CLI entry point - delegates to typer app."""
    from logistics_auth.cli.app import app  # noqa: PLC0415

    app()


if __name__ == "__main__":
    main()
