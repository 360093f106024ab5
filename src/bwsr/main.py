import asyncio
import json
import logging
import platform
import subprocess
import sys
from contextlib import contextmanager
from enum import Enum
from importlib import metadata
from typing import Any, Dict, List, Optional

import typer
from rich import print
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from bwsr import __version__
from bwsr.browser.discovery import BROWSERS, discover_browser
from bwsr.config import get_settings
from bwsr.daemon.client import WatchdogClient
from bwsr.daemon.manager import DaemonManager
from bwsr.errors import BwsrError, NotFoundError
from bwsr.names import is_valid_session_name
from bwsr.profile import DEFAULT_PROFILE_NAME, Profile, ProfileManager

logger = logging.getLogger(__name__)

err_console = Console(stderr=True)

APP_HELP = """
bwsr: long-running browsers for short-lived commands.

A background watchdog keeps browser sessions alive between invocations. Each
session exposes a Chrome DevTools Protocol port that any CDP client can attach to.

QUICK START:
  bwsr start           # Start (or reuse) a browser session, prints its name
  bwsr cdp             # Print the CDP port of a running session
  bwsr list            # session, profile, port, status (tab separated)
  bwsr stop --all      # Stop every session

The watchdog starts automatically and exits on its own once no sessions remain.
"""

PROFILE_HELP = """
Manage launch profiles.

A profile is a named launch configuration (browser, headless mode, viewport,
locale, extra arguments...) stored as TOML under ~/.bwsr/profiles/.
"""

app = typer.Typer(name="bwsr", help=APP_HELP, no_args_is_help=True)
profile_app = typer.Typer(name="profile", help=PROFILE_HELP, no_args_is_help=True)
daemon_app = typer.Typer(name="daemon", help="Background watchdog management.", no_args_is_help=True)

app.add_typer(profile_app, name="profile")
app.add_typer(daemon_app, name="daemon")


class BrowserChoice(str, Enum):
    chromium = "chromium"
    firefox = "firefox"
    webkit = "webkit"


class ColorSchemeChoice(str, Enum):
    light = "light"
    dark = "dark"
    no_preference = "no-preference"


@contextmanager
def cli_errors():
    """Report bwsr errors as a one-line message and exit non-zero."""
    try:
        yield
    except BwsrError as e:
        err_console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(code=1)


def _profile_manager() -> ProfileManager:
    paths = get_settings().paths
    paths.ensure_directories()
    return ProfileManager(paths.profiles)


@app.callback()
def main(
    debug: bool = typer.Option(False, "--debug", help="Log client activity to stderr."),
):
    """bwsr command line."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


# ============================================================================
# Session Commands
# ============================================================================

@app.command()
def start(
    profile: str = typer.Option(DEFAULT_PROFILE_NAME, "--profile", "-p", help="Profile to launch with."),
    session: Optional[str] = typer.Option(None, "--session", "-s", help="Session name (generated if omitted)."),
    force: bool = typer.Option(False, "--force", "-f", help="Start a new session even if one is running."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Print session, port and profile."),
):
    """
    Start a browser session and print its name.

    Without --session or --force, an already running session is reused.

    Examples:
        bwsr start                          # Reuse or start a session
        bwsr start --session scraper        # Start a session named 'scraper'
        bwsr start --profile work --force   # Always start a new one
    """
    with cli_errors():
        if session and not is_valid_session_name(session):
            err_console.print(
                f"[red]Invalid session name '{escape(session)}'.[/red] "
                "Use lowercase letters, digits and single hyphens."
            )
            raise typer.Exit(code=1)

        client = WatchdogClient(get_settings())

        if not session and not force:
            running = asyncio.run(client.list())
            if running.instances:
                instance = running.instances[0]
                if verbose:
                    print(f"Session: [bold]{instance.session}[/bold]")
                    print(f"CDP: {instance.debug_port}")
                    print(f"Profile: {instance.profile}")
                    print("[dim](already running, use --force to start another)[/dim]")
                else:
                    typer.echo(instance.session)
                return

        manager = _profile_manager()
        if not manager.exists(profile):
            if profile != DEFAULT_PROFILE_NAME:
                raise NotFoundError(
                    f"Profile '{profile}' not found. Create it with: bwsr profile create {profile}"
                )
            manager.ensure_default()
            err_console.print("[dim]Created default profile (chromium, headless)[/dim]")

        started = asyncio.run(client.start(profile, session))

    if verbose:
        print(f"Session: [bold]{started.session}[/bold]")
        print(f"CDP: {started.debug_port}")
        print(f"Profile: {profile}")
    else:
        typer.echo(started.session)


@app.command()
def stop(
    session: Optional[str] = typer.Argument(None, help="Session to stop."),
    stop_all: bool = typer.Option(False, "--all", "-a", help="Stop every session."),
):
    """
    Stop a session.

    With no name, stops the only running session. When several are running,
    lists them instead.
    """
    with cli_errors():
        client = WatchdogClient(get_settings())

        if stop_all:
            asyncio.run(client.stop_all())
            return

        if not session:
            running = asyncio.run(client.list())
            if not running.instances:
                err_console.print("[yellow]No sessions running[/yellow]")
                raise typer.Exit(code=1)

            if len(running.instances) > 1:
                err_console.print("Multiple sessions running. Specify which to stop:")
                for instance in running.instances:
                    err_console.print(f"  bwsr stop {instance.session}")
                err_console.print("  bwsr stop --all")
                raise typer.Exit(code=1)

            session = running.instances[0].session

        asyncio.run(client.stop(session))


@app.command("list")
def list_sessions(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """
    List running sessions.

    One line per session: name, profile, CDP port and status, tab separated.
    Prints nothing when no sessions are running.
    """
    with cli_errors():
        running = asyncio.run(WatchdogClient(get_settings()).list())

    if json_output:
        typer.echo(json.dumps(running.model_dump(mode="json", by_alias=True)["instances"], indent=2))
        return

    for instance in running.instances:
        typer.echo(f"{instance.session}\t{instance.profile}\t{instance.debug_port}\t{instance.status}")


@app.command()
def cdp(
    session: Optional[str] = typer.Argument(None, help="Session (default: any running session)."),
    url: bool = typer.Option(False, "--url", help="Print the full HTTP endpoint instead of the port."),
):
    """Print the CDP port of a session."""
    with cli_errors():
        endpoint = asyncio.run(WatchdogClient(get_settings()).cdp(session))

    if url:
        typer.echo(f"http://127.0.0.1:{endpoint.debug_port}")
    else:
        typer.echo(str(endpoint.debug_port))


# ============================================================================
# Profile Commands
# ============================================================================

def _parse_viewport(value: str) -> Dict[str, int]:
    width, sep, height = value.lower().partition("x")
    if not sep or not width.isdigit() or not height.isdigit():
        raise typer.BadParameter(f"Expected WIDTHxHEIGHT, got '{value}'", param_hint="--viewport")
    return {"width": int(width), "height": int(height)}


@profile_app.command("create")
def profile_create(
    name: str = typer.Argument(..., help="Profile name."),
    browser: BrowserChoice = typer.Option(BrowserChoice.chromium, "--browser", "-b", help="Browser engine."),
    headed: bool = typer.Option(False, "--headed", help="Show the browser window."),
):
    """Create a new profile."""
    with cli_errors():
        _profile_manager().create(name, Profile(browser=browser.value, headless=not headed))
    print(f"[green]Created profile '{name}'[/green]")


@profile_app.command("show")
def profile_show(name: str = typer.Argument(..., help="Profile name.")):
    """Show a profile as TOML."""
    with cli_errors():
        document = _profile_manager().render(name)
    typer.echo(document, nl=False)


@profile_app.command("list")
def profile_list():
    """List profile names."""
    with cli_errors():
        names = _profile_manager().list()
    for name in names:
        typer.echo(name)


@profile_app.command("set")
def profile_set(
    name: str = typer.Argument(..., help="Profile name."),
    browser: Optional[BrowserChoice] = typer.Option(None, "--browser", "-b"),
    executable: Optional[str] = typer.Option(None, "--executable", help="Path to the browser executable."),
    headless: Optional[bool] = typer.Option(None, "--headless/--headed"),
    viewport: Optional[str] = typer.Option(None, "--viewport", help="WIDTHxHEIGHT, e.g. 1280x720."),
    locale: Optional[str] = typer.Option(None, "--locale"),
    timezone: Optional[str] = typer.Option(None, "--timezone"),
    color_scheme: Optional[ColorSchemeChoice] = typer.Option(None, "--color-scheme"),
    user_agent: Optional[str] = typer.Option(None, "--user-agent"),
    proxy: Optional[str] = typer.Option(None, "--proxy", help="Proxy server, e.g. http://localhost:8080."),
    arg: Optional[List[str]] = typer.Option(None, "--arg", help="Extra launch argument (repeatable, appended)."),
):
    """
    Update profile settings.

    Only the given settings change; --arg appends to the existing arguments.

    Examples:
        bwsr profile set work --headed --viewport 1440x900
        bwsr profile set work --arg=--disable-gpu
    """
    updates: Dict[str, Any] = {}
    if browser is not None:
        updates["browser"] = browser.value
    if executable is not None:
        updates["executable"] = executable
    if headless is not None:
        updates["headless"] = headless
    if viewport is not None:
        updates["viewport"] = _parse_viewport(viewport)
    if locale is not None:
        updates["locale"] = locale
    if timezone is not None:
        updates["timezone"] = timezone
    if color_scheme is not None:
        updates["color_scheme"] = color_scheme.value
    if user_agent is not None:
        updates["user_agent"] = user_agent
    if proxy is not None:
        updates["proxy"] = proxy

    if not updates and not arg:
        err_console.print("[yellow]Nothing to set[/yellow]")
        raise typer.Exit(code=1)

    with cli_errors():
        manager = _profile_manager()
        if updates:
            manager.set(name, updates)
        if arg:
            manager.append(name, arg)
    print(f"[green]Updated profile '{name}'[/green]")


@profile_app.command("unset")
def profile_unset(
    name: str = typer.Argument(..., help="Profile name."),
    keys: List[str] = typer.Argument(..., help="Settings to clear, e.g. viewport locale."),
):
    """Clear profile settings back to their defaults."""
    with cli_errors():
        _profile_manager().unset(name, keys)
    print(f"[green]Updated profile '{name}'[/green]")


@profile_app.command("remove")
def profile_remove(name: str = typer.Argument(..., help="Profile name.")):
    """Delete a profile. Running sessions are not affected."""
    with cli_errors():
        removed = _profile_manager().remove(name)
    if not removed:
        err_console.print(f"[yellow]Profile '{escape(name)}' not found[/yellow]")
        raise typer.Exit(code=1)
    print(f"[green]Removed profile '{name}'[/green]")


# ============================================================================
# Daemon Commands
# ============================================================================

@daemon_app.command("status")
def daemon_status(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show whether the watchdog is running."""
    status = DaemonManager(get_settings()).status()

    if json_output:
        typer.echo(json.dumps(status, indent=2))
        return

    if status["running"]:
        print("[bold green]Watchdog is running[/bold green]")
        print(f"  PID: {status.get('pid')}")
        print(f"  Sessions: {status.get('sessions', 0)}")
        print(f"  Socket: {status['socket']}")
    else:
        print("[dim]Watchdog is not running[/dim]")
        if status.get("message"):
            print(f"  {status['message']}")
        if status.get("error"):
            print(f"  Error: {escape(status['error'])}")


@daemon_app.command("stop")
def daemon_stop():
    """
    Stop the watchdog and every session it owns.

    Sends SIGTERM for graceful shutdown. If the watchdog doesn't stop within
    3 seconds, it will be force killed with SIGKILL.
    """
    result = DaemonManager(get_settings()).stop()

    if result["success"]:
        print(f"[green]{result['message']}[/green]")
    else:
        print(f"[yellow]{result['message']}[/yellow]")


@daemon_app.command("logs")
def daemon_logs(
    follow: bool = typer.Option(False, "--follow", "-f", help="Follow log output"),
    lines: int = typer.Option(20, "--lines", "-n", help="Number of lines to show"),
):
    """Show watchdog logs."""
    log_file = get_settings().paths.log_file

    if not log_file.exists():
        print("[yellow]No watchdog log file found[/yellow]")
        print(f"[dim]Expected at: {log_file}[/dim]")
        return

    if follow:
        try:
            subprocess.run(["tail", "-f", "-n", str(lines), str(log_file)])
        except KeyboardInterrupt:
            pass
        return

    content = log_file.read_text(errors="replace").splitlines()
    for line in content[-lines:]:
        typer.echo(line)


# ============================================================================
# Diagnostics
# ============================================================================

@app.command()
def doctor():
    """Check the runtime, profiles, browsers and watchdog."""
    settings = get_settings()
    paths = settings.paths
    issues: List[str] = []

    table = Table(title="bwsr doctor", show_header=True)
    table.add_column("Check")
    table.add_column("Result")

    py_version = platform.python_version()
    if sys.version_info >= (3, 11):
        table.add_row("Python", f"[green]{py_version}[/green]")
    else:
        table.add_row("Python", f"[red]{py_version} (requires >= 3.11)[/red]")
        issues.append("Upgrade Python to 3.11 or later")

    try:
        table.add_row("Playwright", f"[green]{metadata.version('playwright')}[/green]")
    except metadata.PackageNotFoundError:
        table.add_row("Playwright", "[red]not installed[/red]")
        issues.append("Install Playwright: pip install playwright")

    table.add_row("Config dir", str(paths.root))
    with cli_errors():
        manager = _profile_manager()
        created = manager.ensure_default()
        profiles = manager.list()
    note = " (default created)" if created else ""
    table.add_row("Profiles", f"{', '.join(profiles)}{note}")

    found = 0
    for browser in BROWSERS:
        path = discover_browser(browser)
        if path:
            found += 1
            table.add_row(browser, f"[green]{path}[/green]")
        else:
            table.add_row(browser, "[dim]not found[/dim]")
    if not found:
        issues.append("Install a browser: playwright install chromium")

    status = DaemonManager(settings).status()
    if status["running"]:
        table.add_row("Watchdog", f"[green]running[/green] ({status.get('sessions', 0)} session(s))")
    else:
        table.add_row("Watchdog", "[dim]not running (starts automatically on 'bwsr start')[/dim]")

    print(table)

    if issues:
        print("\n[bold yellow]Setup required:[/bold yellow]")
        for issue in issues:
            print(f"  - {issue}")
        raise typer.Exit(code=1)

    print("\n[green]All checks passed.[/green]")


@app.command()
def version():
    """Print the bwsr version."""
    typer.echo(f"bwsr v{__version__}")


if __name__ == "__main__":
    app()
