"""CLI application for the authentication core.

Provides commands for:
- run: Start the core (session restore and cleanup)
- validate: Validate configuration
- generate-example: Write an example configuration
- roles: Show the role catalog
- totp-secret: Generate 2FA enrollment material
- decode-token: Inspect a signed token
"""

from __future__ import annotations

import asyncio
import json
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from jose import JWTError, jwt
from rich.console import Console
from rich.table import Table

from logistics_auth import __version__
from logistics_auth.adapters.memory import InMemoryTwoFactorStore
from logistics_auth.application.audit import AuditTrail
from logistics_auth.application.rbac import RolePermissionService
from logistics_auth.config.loader import (
    ConfigurationError,
    generate_example_config,
    load_config,
)
from logistics_auth.main import run_service
from logistics_auth.security.tokens import TokenService
from logistics_auth.security.totp import TwoFactorAuthService

if TYPE_CHECKING:
    from logistics_auth.config.schema import AuthConfig


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"logistics-auth {__version__}")
        raise typer.Exit()


app = typer.Typer(
    name="logistics-auth",
    help="Logistics dashboard authentication and authorization core",
    add_completion=False,
)


@app.callback()
def main(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=version_callback,
            is_eager=True,
            help="Show version and exit",
        ),
    ] = False,
) -> None:
    """Logistics auth CLI."""
    pass


console = Console()

ConfigArgument = Annotated[
    Path,
    typer.Argument(
        help="Path to configuration YAML file",
        exists=True,
        file_okay=True,
        dir_okay=False,
        readable=True,
    ),
]


@app.command()
def run(
    config: ConfigArgument,
    override: Annotated[
        Path | None,
        typer.Option(
            "--override",
            "-o",
            help="Path to override configuration file",
            exists=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            "-l",
            help="Log level (DEBUG, INFO, WARNING, ERROR)",
        ),
    ] = None,
) -> None:
    """Start the authentication core.

    Restores persisted sessions and runs the cleanup sweep until interrupted.
    """
    if log_level:
        os.environ["AUTH_LOG_LEVEL"] = log_level

    console.print("[bold green]Starting authentication core[/bold green]")
    console.print(f"Configuration: {config}")

    try:
        asyncio.run(run_service(config, override_path=override))
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutdown requested[/yellow]")
    except ConfigurationError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(code=1) from e


@app.command()
def validate(
    config: ConfigArgument,
    verbose: Annotated[
        bool,
        typer.Option(
            "--verbose",
            "-v",
            help="Show detailed validation information",
        ),
    ] = False,
) -> None:
    """Validate a configuration file.

    Checks the configuration for errors without starting anything.
    """
    console.print(f"[bold]Validating:[/bold] {config}")

    try:
        auth_config = load_config(config)
    except ConfigurationError as e:
        console.print("[bold red]Validation failed:[/bold red]")
        console.print(str(e))
        raise typer.Exit(code=1) from e

    console.print("[bold green]Configuration valid![/bold green]")
    if verbose:
        _print_config_summary(auth_config)


@app.command("generate-example")
def generate_example(
    output: Annotated[
        Path,
        typer.Option(
            "--output",
            "-o",
            help="Output file path",
        ),
    ] = Path("auth-config.yaml"),
) -> None:
    """Generate an example configuration file."""
    output.write_text(generate_example_config())

    console.print(f"[bold green]Example configuration written:[/bold green] {output}")
    console.print("\nSet AUTH_TOKEN_SECRET (32+ characters), then run:")
    console.print(f"  [cyan]logistics-auth validate {output}[/cyan]")
    console.print(f"  [cyan]logistics-auth run {output}[/cyan]")


@app.command()
def roles(
    show_permissions: Annotated[
        bool,
        typer.Option(
            "--permissions",
            "-p",
            help="List each role's permission codes",
        ),
    ] = False,
) -> None:
    """Show the built-in role hierarchy."""
    rbac = RolePermissionService()

    table = Table(title="Roles")
    table.add_column("Code", style="cyan")
    table.add_column("Name")
    table.add_column("Level", style="green", justify="right")
    table.add_column("Permissions")

    for role in sorted(rbac.get_all_roles(), key=lambda r: r.level, reverse=True):
        perms = (
            ", ".join(sorted(role.permissions))
            if show_permissions
            else str(len(role.permissions))
        )
        table.add_row(role.code, role.name, str(role.level), perms)

    console.print(table)
    stats = rbac.get_role_statistics()
    console.print(
        f"{stats['total_roles']} roles, {stats['total_permissions']} permissions"
    )


@app.command("totp-secret")
def totp_secret(
    account: Annotated[str, typer.Argument(help="Account name shown in the authenticator")],
    issuer: Annotated[
        str,
        typer.Option("--issuer", "-i", help="Issuer shown in the authenticator"),
    ] = "MIA Logistics Manager",
) -> None:
    """Generate a TOTP secret with its provisioning URI and QR code URL."""
    service = TwoFactorAuthService(InMemoryTwoFactorStore(), AuditTrail(), issuer=issuer)
    setup = asyncio.run(service.generate_secret_key(account, account_name=account))

    console.print(f"[bold]Secret:[/bold] {setup.secret}")
    console.print(f"[bold]URI:[/bold] {setup.provisioning_uri}")
    console.print(f"[bold]QR code:[/bold] {setup.qr_code_url}")
    console.print(f"[bold]Current code:[/bold] {service.generate_totp_code(setup.secret)}")


@app.command("decode-token")
def decode_token(
    token: Annotated[str, typer.Argument(help="Encoded token")],
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Verify the signature with this configuration's secret",
            exists=True,
        ),
    ] = None,
) -> None:
    """Print a token's claims, optionally verifying it."""
    if config is not None:
        try:
            auth_config = load_config(config)
        except ConfigurationError as e:
            console.print(f"[bold red]Error:[/bold red] {e}")
            raise typer.Exit(code=1) from e

        tokens = TokenService(
            secret=auth_config.tokens.secret,
            algorithm=auth_config.tokens.algorithm,
            issuer=auth_config.tokens.issuer,
            audience=auth_config.tokens.audience,
        )
        result = tokens.verify_token(token)
        if not result.valid:
            console.print(f"[bold red]Invalid token:[/bold red] {result.error}")
            raise typer.Exit(code=1)
        claims = result.payload or {}
        console.print("[green]✓[/green] Signature and claims verified")
    else:
        try:
            claims = jwt.get_unverified_claims(token)
        except JWTError as e:
            console.print(f"[bold red]Malformed token:[/bold red] {e}")
            raise typer.Exit(code=1) from e
        console.print("[yellow]Signature not verified[/yellow]")

    console.print_json(json.dumps(claims))
    exp = claims.get("exp")
    if isinstance(exp, int | float) and not isinstance(exp, bool):
        expires = datetime.fromtimestamp(exp, tz=UTC)
        status = "expired" if expires <= datetime.now(UTC) else "valid until"
        console.print(f"{status} {expires.isoformat()}")


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"logistics-auth version [bold]{__version__}[/bold]")


def _print_config_summary(config: AuthConfig) -> None:
    """Print a summary of the configuration."""

    table = Table(title="Configuration Summary")
    table.add_column("Section", style="cyan")
    table.add_column("Details")

    table.add_row("Service", f"{config.service.name} ({config.service.environment})")
    table.add_row(
        "Tokens",
        f"{config.tokens.algorithm}, access {config.tokens.access_ttl_seconds}s, "
        f"refresh {config.tokens.refresh_ttl_seconds}s",
    )
    table.add_row(
        "Sessions",
        f"timeout {config.sessions.session_timeout_seconds}s, "
        f"idle {config.sessions.idle_timeout_seconds}s, "
        f"max {config.sessions.max_sessions_per_user}/user",
    )
    table.add_row("Two-factor", config.two_factor.issuer)
    table.add_row(
        "Persistence",
        f"{config.persistence.backend.value} ({config.persistence.db_path})",
    )

    console.print(table)


if __name__ == "__main__":
    app()
