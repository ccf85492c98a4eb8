"""
Command line interface for tlsdeploy.

    tlsdeploy deploy --domain a.example --domain b.example \\
        --upstream 127.0.0.1:5000 --static-path /srv/app/static \\
        --cert-dir /etc/tlsdeploy/certs --service-name app \\
        --command "/srv/app/venv/bin/gunicorn app:app" --workdir /srv/app \\
        --user app --group app --env SECRET_KEY=...

Exit codes: 0 success, 1 validation/config error, 2 certificate authority
error, 3 health check failure.
"""

import asyncio
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .certificates import CertificateManager
from .config import config
from .health import HealthChecker
from .models import DeploymentRun, DeploymentTarget, ServiceDefinition, initialize_db
from .orchestrator import Orchestrator, RunResult
from .supervisor import ServiceState, ServiceSupervisor

console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    """Rotating file log in the data directory plus console output."""
    config.ensure_dirs()
    log_formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    file_handler = RotatingFileHandler(
        config.log_file,
        maxBytes=config.log_max_bytes,
        backupCount=config.log_backup_count,
    )
    file_handler.setFormatter(log_formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(log_formatter)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        handlers=[file_handler, console_handler],
        force=True,
    )


def parse_env(values: tuple[str, ...]) -> dict[str, str]:
    env = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"'{item}' is not KEY=VALUE", param_hint="--env")
        env[key] = value
    return env


def target_options(func):
    """Options shared by every command that needs a deployment target."""
    options = [
        click.option("--domain", "domains", multiple=True, required=True, help="Domain to serve (repeatable)"),
        click.option("--upstream", required=True, help="Backend address as host:port"),
        click.option("--static-path", required=True, type=click.Path(), help="Directory served under the static prefix"),
        click.option("--cert-dir", required=True, type=click.Path(), help="Where certificate bundles are stored"),
        click.option("--static-prefix", default="/static", show_default=True, help="Route prefix for static files"),
        click.option("--email", default=lambda: config.acme_email, help="ACME account contact"),
        click.option(
            "--health-file",
            default=lambda: config.health_static_file,
            help="File under the static prefix fetched by the health check",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def build_target(domains, upstream, static_path, cert_dir, static_prefix, email) -> DeploymentTarget:
    return DeploymentTarget(
        domains=list(domains),
        upstream=upstream,
        static_path=static_path,
        cert_dir=cert_dir,
        static_prefix=static_prefix,
        email=email or "",
    )


def print_result(result: RunResult):
    table = Table(title="Dry run" if result.dry_run else "Deployment steps")
    table.add_column("Step")
    table.add_column("Result")
    table.add_column("Changed")
    table.add_column("Detail", overflow="fold")

    for step in result.steps:
        status = "[green]ok[/green]" if step.success else "[red]failed[/red]"
        table.add_row(step.state.value, status, "yes" if step.changed else "no", step.message)
    console.print(table)

    for health in result.health.values():
        mark = "[green]✓[/green]" if health.ok else "[red]✗[/red]"
        console.print(f"{mark} {health.domain} {health.error or ''}")

    if result.exit_code == 0:
        console.print(f"[green]{result.summary()}[/green]")
    elif result.exit_code == 3:
        console.print(f"[yellow]{result.summary()}[/yellow]")
    else:
        console.print(f"[red]{result.summary()}[/red]")


async def run_with_signals(orchestrator: Orchestrator, kind: str) -> RunResult:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, orchestrator.abort)
    try:
        if kind == "renew":
            return await orchestrator.renew()
        return await orchestrator.deploy()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


class DeployGroup(click.Group):
    """Reports usage mistakes with exit code 1, keeping 2 for certificate authority errors."""

    def make_context(self, info_name, args, parent=None, **extra):
        try:
            return super().make_context(info_name, args, parent=parent, **extra)
        except click.UsageError as e:
            e.exit_code = 1
            raise

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except click.UsageError as e:
            e.exit_code = 1
            raise


@click.group(cls=DeployGroup)
@click.version_option(__version__)
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to the console")
def cli(verbose):
    """Deploy a backend behind Caddy with per-domain TLS certificates."""
    setup_logging(verbose)
    initialize_db(config.db_path)


@cli.command("deploy")
@target_options
@click.option("--service-name", help="systemd unit name for the backend")
@click.option("--command", "command_line", help="Command that runs the backend")
@click.option("--workdir", type=click.Path(), help="Backend working directory")
@click.option("--user", help="Unprivileged account to run the backend as")
@click.option("--group", help="Group to run the backend as")
@click.option("--env", "env_vars", multiple=True, help="KEY=VALUE passed to the backend (repeatable)")
@click.option("--dry-run", is_flag=True, help="Render and plan without changing anything")
def deploy_command(
    domains, upstream, static_path, cert_dir, static_prefix, email, health_file,
    service_name, command_line, workdir, user, group, env_vars, dry_run,
):
    """Render config, start the backend, issue certificates and reload Caddy."""
    target = build_target(domains, upstream, static_path, cert_dir, static_prefix, email)

    service = None
    if service_name:
        missing = [
            flag for flag, value in
            (("--command", command_line), ("--workdir", workdir), ("--user", user), ("--group", group))
            if not value
        ]
        if missing:
            raise click.UsageError(f"--service-name also needs {', '.join(missing)}")
        service = ServiceDefinition(
            name=service_name,
            working_directory=workdir,
            command=command_line,
            user=user,
            group=group,
            environment=parse_env(env_vars),
        )

    health = HealthChecker(static_prefix=static_prefix, static_file=health_file)
    orchestrator = Orchestrator(target, service=service, health=health, dry_run=dry_run)
    result = asyncio.run(run_with_signals(orchestrator, "deploy"))

    if dry_run and result.rendered:
        console.rule("Rendered Caddy config")
        console.print(result.rendered, markup=False, highlight=False)
    print_result(result)
    sys.exit(result.exit_code)


@cli.command("renew")
@target_options
def renew_command(domains, upstream, static_path, cert_dir, static_prefix, email, health_file):
    """Renew certificates within the renewal window. Safe to run from cron."""
    target = build_target(domains, upstream, static_path, cert_dir, static_prefix, email)
    health = HealthChecker(static_prefix=static_prefix, static_file=health_file)
    orchestrator = Orchestrator(target, health=health)
    result = asyncio.run(run_with_signals(orchestrator, "renew"))
    print_result(result)
    sys.exit(result.exit_code)


@cli.command("status")
@click.option("--service-name", help="systemd unit to query")
@click.option("--domain", "domains", multiple=True, help="Domain whose certificate to show")
@click.option("--cert-dir", type=click.Path(), help="Certificate directory")
def status_command(service_name, domains, cert_dir):
    """Show backend service state and certificate expiry."""
    if service_name:
        state = ServiceSupervisor().status(service_name)
        color = {ServiceState.RUNNING: "green", ServiceState.FAILED: "red"}.get(state, "yellow")
        console.print(f"Service {service_name}: [{color}]{state.value}[/{color}]")

    if domains and cert_dir:
        target = DeploymentTarget(domains=list(domains), upstream="", static_path="", cert_dir=cert_dir)
        manager = CertificateManager(target)
        table = Table(title="Certificates")
        table.add_column("Domain")
        table.add_column("Expires")
        table.add_column("Days left")
        for domain in domains:
            bundle = manager.load_bundle(domain)
            if bundle is None:
                table.add_row(domain, "[red]missing[/red]", "-")
            else:
                table.add_row(domain, bundle.expires_at.isoformat(), f"{bundle.days_left():.0f}")
        console.print(table)


@cli.command("history")
@click.option("--limit", default=10, show_default=True, help="Number of runs to show")
def history_command(limit):
    """Show recent runs."""
    runs = DeploymentRun.select().order_by(DeploymentRun.started_at.desc()).limit(limit)

    table = Table(title="Recent runs")
    table.add_column("ID")
    table.add_column("Kind")
    table.add_column("Domains")
    table.add_column("State")
    table.add_column("Exit")
    table.add_column("Started")
    table.add_column("Message", overflow="fold")
    for run in runs:
        table.add_row(
            str(run.id),
            run.kind,
            ", ".join(run.get_domains()),
            run.state,
            "" if run.exit_code is None else str(run.exit_code),
            run.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            run.message or "",
        )
    console.print(table)


def main():
    cli()


if __name__ == "__main__":
    main()
