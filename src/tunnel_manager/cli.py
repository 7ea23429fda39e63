"""Command-line interface: ``tunnel-manager``."""

import json
import signal
import threading
from typing import Any

import click
from pydantic import BaseModel

from . import __version__
from .common.exceptions import TunnelManagerError
from .common.logging import get_logger, setup_logging
from .config import get_settings
from .manager import TunnelManager, build_tunnel_manager

logger = get_logger(__name__)


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_to_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {key: _to_jsonable(item) for key, item in value.items()}
    return value


def _echo(value: Any) -> None:
    click.echo(json.dumps(_to_jsonable(value), indent=2, default=str))


def _manager(ctx: click.Context) -> TunnelManager:
    obj = ctx.ensure_object(dict)
    if "manager" not in obj:
        try:
            obj["manager"] = build_tunnel_manager(get_settings())
        except TunnelManagerError as e:
            hint = f"\n{e.recommendation}" if e.recommendation else ""
            raise click.ClickException(f"{e.message}{hint}") from e
    return obj["manager"]


def _exit_on_failure(result: dict[str, Any]) -> None:
    _echo(result)
    if not result.get("success", True):
        raise click.exceptions.Exit(1)


@click.group()
@click.version_option(__version__, prog_name="tunnel-manager")
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR or CRITICAL")
@click.option("--json-logs", is_flag=True, default=None, help="Render log lines as JSON")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None, json_logs: bool | None) -> None:
    """Public hostnames through one shared cloudflared tunnel."""
    ctx.ensure_object(dict)
    settings = get_settings()
    setup_logging(
        level=log_level or settings.log_level,
        json_format=settings.log_json if json_logs is None else json_logs,
        log_file=settings.log_file,
    )


@cli.command()
@click.option("--reconcile/--no-reconcile", default=True, help="Repair ingress drift at startup")
@click.option("--prune-every", default=3600.0, show_default=True, help="Seconds between health-sample pruning")
@click.pass_context
def serve(ctx: click.Context, reconcile: bool, prune_every: float) -> None:
    """Run the health monitor until interrupted."""
    manager = _manager(ctx)
    stop = threading.Event()

    def _handle_signal(signum: int, _frame: Any) -> None:
        logger.info("Shutdown signal received", signal=signum)
        stop.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    with manager:
        if reconcile:
            result = manager.reconcile_ingress()
            if not result["success"]:
                logger.error("Startup reconciliation failed", error=result["message"])
        while not stop.wait(prune_every):
            manager.prune_health_samples()


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show tunnel health."""
    _echo(_manager(ctx).get_status())


@cli.command()
@click.argument("subdomain")
@click.option("--port", "target_port", type=int, required=True, help="Port the service listens on")
@click.option("--owner", "owner_project", required=True, help="Project requesting the hostname")
@click.option("--domain", default=None, help="Zone to create the hostname in")
@click.pass_context
def request(
    ctx: click.Context, subdomain: str, target_port: int, owner_project: str, domain: str | None
) -> None:
    """Publish SUBDOMAIN for a local service."""
    _exit_on_failure(
        _manager(ctx).request_hostname(subdomain, target_port, owner_project, domain=domain)
    )


@cli.command()
@click.argument("hostname")
@click.option("--owner", "owner_project", required=True, help="Project asking for the deletion")
@click.option("--privileged", is_flag=True, help="Act as operator and skip the ownership check")
@click.pass_context
def delete(ctx: click.Context, hostname: str, owner_project: str, privileged: bool) -> None:
    """Retire HOSTNAME."""
    _exit_on_failure(_manager(ctx).delete_hostname(hostname, owner_project, privileged))


@cli.command(name="list")
@click.option("--owner", "owner_project", default=None, help="Caller's project")
@click.option("--domain", default=None)
@click.option("--privileged", is_flag=True, help="List every project's hostnames")
@click.pass_context
def list_hostnames(
    ctx: click.Context, owner_project: str | None, domain: str | None, privileged: bool
) -> None:
    """List hostnames visible to the caller."""
    _echo(_manager(ctx).list_hostnames(owner_project, domain, privileged))


@cli.command()
@click.option("--refresh", is_flag=True, help="Query the DNS provider first")
@click.pass_context
def domains(ctx: click.Context, refresh: bool) -> None:
    """List managed DNS zones."""
    manager = _manager(ctx)
    if refresh:
        try:
            manager.refresh_domains()
        except TunnelManagerError as e:
            raise click.ClickException(e.message) from e
    _echo(manager.list_domains())


@cli.command()
@click.option("--owner", "owner_project", default=None)
@click.option("--action", default=None, help="e.g. create_hostname, restart_tunnel")
@click.option("--limit", default=50, show_default=True)
@click.pass_context
def audit(ctx: click.Context, owner_project: str | None, action: str | None, limit: int) -> None:
    """Show recent audit entries."""
    _echo(_manager(ctx).get_audit_log(owner_project, action, limit))


@cli.command()
@click.option("--limit", default=20, show_default=True)
@click.pass_context
def health(ctx: click.Context, limit: int) -> None:
    """Show recent health samples."""
    _echo(_manager(ctx).get_health_history(limit))


@cli.command()
@click.pass_context
def restart(ctx: click.Context) -> None:
    """Restart the tunnel now."""
    _exit_on_failure(_manager(ctx).manual_restart())


@cli.command()
@click.pass_context
def reconcile(ctx: click.Context) -> None:
    """Repair drift between hostname records and ingress rules."""
    _exit_on_failure(_manager(ctx).reconcile_ingress())


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
