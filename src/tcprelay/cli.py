"""tcprelay CLI - Command line interface."""

from __future__ import annotations

import asyncio
import sys
import time

import click
from rich.console import Console
from rich.table import Table

console = Console()

BANNER = """
 _                       _
| |_ ___ _ __  _ __ ___ | | __ _ _   _
| __/ __| '_ \\| '__/ _ \\| |/ _` | | | |
| || (__| |_) | | |  __/| | (_| | |_| |
 \\__\\___| .__/|_|  \\___||_|\\__,_|\\__, |
        |_|                      |___/
        Self-supervising TCP relay
"""


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx: click.Context):
    """tcprelay - Self-supervising TCP relay.

    Forwards every inbound TCP connection to a fixed upstream and restarts
    its own process when it detects sustained failure.
    """
    if ctx.invoked_subcommand is None:
        console.print(BANNER, style="cyan")
        console.print("Usage: tcprelay run --target-host db.internal --target-port 5432")
        console.print("       tcprelay status")
        console.print("       tcprelay config show")


@main.command()
@click.option("--target-host", envvar="TARGET_HOST", help="Upstream host (required)")
@click.option("--target-port", envvar="TARGET_PORT", type=int, help="Upstream port (default: 5432)")
@click.option("--listen-host", envvar="LISTEN_HOST", help="Listen address (default: 0.0.0.0)")
@click.option("--listen-port", envvar="LISTEN_PORT", type=int, help="Listen port (default: 5432)")
@click.option("--health-port", envvar="HEALTH_PORT", type=int, help="Health endpoint port (default: 5454)")
@click.option(
    "--log-level",
    envvar="LOG_LEVEL",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    help="Log level (default: info)",
)
@click.option(
    "--log-format",
    envvar="LOG_FORMAT",
    type=click.Choice(["console", "json"]),
    help="Log output format (default: console)",
)
def run(
    target_host: str | None,
    target_port: int | None,
    listen_host: str | None,
    listen_port: int | None,
    health_port: int | None,
    log_level: str | None,
    log_format: str | None,
):
    """Run the relay in the foreground.

    Options override the TARGET_HOST, TARGET_PORT, LISTEN_HOST, LISTEN_PORT
    and HEALTH_PORT environment variables.
    """
    from tcprelay.core.config import RelayConfig, set_config
    from tcprelay.core.exceptions import ConfigurationError, format_error_for_user
    from tcprelay.core.logging import configure_logging

    overrides = {
        "target_host": target_host,
        "target_port": target_port,
        "listen_host": listen_host,
        "listen_port": listen_port,
        "health_port": health_port,
        "log_level": log_level,
        "log_format": log_format,
    }
    config = RelayConfig(**{k: v for k, v in overrides.items() if v is not None})
    set_config(config)
    configure_logging(config.log_level, config.log_format)

    console.print(BANNER, style="cyan")

    try:
        config.validate_runtime()
    except ConfigurationError as e:
        console.print(f"[red]ERROR:[/red] {format_error_for_user(e)}")
        if config.restart.retry_on_misconfig and e.field == "target_host":
            _restart_after_misconfiguration(config)
        sys.exit(2)

    console.print(f"Listen: {config.listen_host}:{config.listen_port}", style="dim")
    console.print(f"Target: {config.target_host}:{config.target_port}", style="dim")
    console.print(f"Health: 0.0.0.0:{config.health_port} (/ping, /health, /metrics)", style="dim")
    console.print(f"Restart count: {config.restart.restart_count}", style="dim")

    sys.exit(_run_supervisor(config))


def _restart_after_misconfiguration(config) -> None:
    """Wait, then hand over to a fresh process in the hope the environment got fixed."""
    from tcprelay.supervisor.restart import RestartScheduler

    delay = config.timeouts.misconfig_retry_delay
    console.print(f"Restarting in {delay:g}s (RELAY_RETRY_ON_MISCONFIG is set)", style="yellow")
    time.sleep(delay)
    RestartScheduler(config.restart).trigger("Missing TARGET_HOST")


def _run_supervisor(config) -> int:
    import structlog

    from tcprelay.supervisor.root import SupervisorRoot

    logger = structlog.get_logger()
    root = SupervisorRoot(config)
    try:
        return asyncio.run(root.run())
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logger.critical("Uncaught exception", error=str(e), exc_info=e)
        root.escalate(f"Uncaught exception: {e}")
        return 1
    finally:
        root.uninstall_fault_handlers()


@main.command()
@click.option("--url", default="http://127.0.0.1:5454", envvar="TCPRELAY_HEALTH_URL", help="Health endpoint base URL")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def status(url: str, json_output: bool):
    """Show relay health.

    Queries the /health endpoint of a running relay.
    """
    import httpx

    try:
        with httpx.Client(timeout=5.0) as client:
            resp = client.get(f"{url.rstrip('/')}/health")
            health = resp.json()
    except Exception as e:
        console.print(f"[red]Error connecting to relay:[/red] {e}")
        sys.exit(1)

    if json_output:
        import json

        console.print(json.dumps(health, indent=2))
        return

    state = health.get("status", "unknown")
    colour = "green" if state == "healthy" else "red"
    console.print(f"\n[bold]Relay:[/bold] {url}")
    console.print(f"[bold]Status:[/bold] [{colour}]{state}[/{colour}]")

    table = Table()
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Active connections", str(health.get("activeConnections", 0)))
    table.add_row("Total connections", str(health.get("totalConnections", 0)))
    table.add_row("Consecutive errors", str(health.get("consecutiveErrors", 0)))
    table.add_row("Restart count", str(health.get("restartCount", 0)))
    table.add_row("Uptime", f"{float(health.get('uptime', 0)):.0f}s")
    table.add_row("Since last connection", f"{health.get('timeSinceActivity', 0) / 1000:.1f}s")
    table.add_row("Memory (RSS)", _format_bytes(health.get("memoryUsage", {}).get("rss", 0)))
    table.add_row("PID", str(health.get("pid", "")))
    console.print(table)

    if state != "healthy":
        sys.exit(1)


@main.command()
def version():
    """Show version information."""
    from tcprelay import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


def _format_bytes(num_bytes: int | float) -> str:
    """Format bytes into human readable string."""
    value: float = float(num_bytes)
    for unit in ["B", "KB", "MB", "GB"]:
        if abs(value) < 1024.0:
            return f"{value:.1f} {unit}"
        value /= 1024.0
    return f"{value:.1f} TB"


@main.group()
def config():
    """View configuration settings.

    Connection settings come from TARGET_HOST, TARGET_PORT, LISTEN_HOST,
    LISTEN_PORT and HEALTH_PORT; tuning knobs use the RELAY_ prefix.
    """
    pass


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--section", "-s", help="Show only specific section (relay, timeouts, restart, health)")
def config_show(json_output: bool, section: str | None):
    """Show current configuration settings.

    Values come from environment variables or defaults.
    """
    from tcprelay.core.config import get_config

    cfg = get_config()
    display = cfg.to_display_dict()

    if section:
        section = section.lower()
        if section not in display:
            console.print(f"[red]Unknown section:[/red] {section}")
            console.print(f"[dim]Available: {', '.join(display.keys())}[/dim]")
            sys.exit(1)
        display = {section: display[section]}

    if json_output:
        import json

        console.print(json.dumps(display, indent=2))
        return

    console.print("[bold]Current Configuration[/bold]\n")

    for section_name, settings in display.items():
        table = Table(title=section_name.replace("_", " ").title())
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        table.add_column("Env Variable", style="dim")

        for key, value in settings.items():
            env_var = key.upper() if section_name == "relay" else f"RELAY_{key.upper()}"
            value_str = str(value) if value is not None else "[dim]None[/dim]"
            table.add_row(key, value_str, env_var)

        console.print(table)
        console.print()


if __name__ == "__main__":
    main()
