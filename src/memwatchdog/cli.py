"""Command-line interface for Memory Watchdog."""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from .config import Settings
from .configurator import ROLES, configure_for_role

logger = logging.getLogger("memwatchdog")

settings_option = click.option(
    "-s", "--settings", "settings_path",
    type=click.Path(exists=True),
    help="YAML file of settings overriding the environment",
)
role_option = click.option(
    "-r", "--role",
    type=click.Choice(ROLES),
    required=True,
    help="Process role to configure for",
)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Configure console (and optionally file) logging for the CLI."""
    level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(level)
    if logger.handlers:
        return

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        try:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path)
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except PermissionError:
            logger.warning(f"Cannot write to log file: {log_file}")


def _load_settings(settings_path: Optional[str]) -> Settings:
    if settings_path:
        return Settings.from_yaml(settings_path)
    return Settings.from_env()


@click.group()
@click.version_option(package_name="memory-watchdog")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Also log to this file")
def main(verbose: bool, log_file: Optional[str]):
    """Memory Watchdog - supervise worker memory and restart leaky workers."""
    setup_logging("DEBUG" if verbose else "WARNING", log_file)


@main.command()
@settings_option
def validate(settings_path: Optional[str]):
    """Validate settings from the environment (and settings file)."""
    try:
        settings = _load_settings(settings_path)
    except Exception as e:
        click.echo(f"❌ Error loading settings: {e}", err=True)
        sys.exit(1)

    errors = settings.validate()
    if errors:
        click.echo("❌ Settings have errors:", err=True)
        for error in errors:
            click.echo(f"  - {error}", err=True)
        sys.exit(1)

    click.echo("✅ Settings are valid")
    for key, value in settings.to_dict().items():
        click.echo(f"  {key}={value}")


@main.command()
@settings_option
@role_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def describe(settings_path: Optional[str], role: str, as_json: bool):
    """Show the watchdog configuration a worker of ROLE would run."""
    try:
        configuration = configure_for_role(role, _load_settings(settings_path))
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    data = configuration.to_dict()
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"Memory Watchdog ({role} worker)")
    click.echo("=" * 50)
    click.echo(f"Handler: {data['handler']}")
    click.echo(f"Sleep interval: {data['sleep_interval_seconds']}s")
    click.echo(f"Heap dumps on violation: {data['write_heap_dumps_on_violation']}")
    click.echo(f"Event reporter: {data['event_reporter']}")

    if not data["monitors"]:
        click.echo("\nNo monitors configured, the watchdog will do nothing")
    for monitor in data["monitors"]:
        click.echo(f"\n- {monitor['name']} ({monitor['type']})")
        click.echo(f"   Max strikes: {monitor['max_strikes']}")
        for option, value in monitor["options"].items():
            click.echo(f"   {option}: {value}")


@main.command()
@settings_option
@role_option
def check(settings_path: Optional[str], role: str):
    """Evaluate each monitor of ROLE once against this process.

    No strikes are kept and no handler is invoked.
    """
    try:
        configuration = configure_for_role(role, _load_settings(settings_path))
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    violations = 0
    for entry in configuration.monitors:
        try:
            result = entry.monitor.call()
        except Exception as e:
            click.echo(f"⚠️  {entry.name}: error: {e}")
            continue

        icon = "🔴" if result.violated else "🟢"
        violations += int(result.violated)
        details = ", ".join(f"{k}={v}" for k, v in result.payload.items() if k != "message")
        click.echo(f"{icon} {entry.name}: {details}")

    if violations:
        sys.exit(2)


@main.command()
@click.option("-o", "--output", type=click.Path(), help="Output file path")
def init(output: str):
    """Generate a sample settings file."""
    sample_settings = '''# Memory Watchdog settings
# Every key can also be set as an environment variable; values here win.

# Request a diagnostic heap dump when a monitor breaches
MEMWD_DUMP_HEAP: false

# Web (request-serving) workers
MEMWD_SLEEP_TIME_SEC: 60          # seconds between checks
MEMWD_MAX_STRIKES: 5              # consecutive violations tolerated
WEB_WORKER_MAX_MEMORY: 1200       # RSS limit in MB
# Use heap fragmentation + unique memory growth instead of the RSS limit
MEMWD_DISABLE_WEB_WORKER_KILLER: false
MEMWD_MAX_HEAP_FRAG: 0.5
MEMWD_MAX_MEM_GROWTH: 3.0

# Background job workers (limits in KB, 0 disables)
JOB_MEMORY_KILLER_CHECK_INTERVAL: 3
JOB_MEMORY_KILLER_MAX_RSS: 2000000
JOB_MEMORY_KILLER_GRACE_TIME: 300
JOB_MEMORY_KILLER_HARD_LIMIT_RSS: 0

# Post every watchdog event to a telemetry endpoint
# MEMWD_EVENT_WEBHOOK_URL: https://telemetry.example.com/events
'''

    if output:
        Path(output).write_text(sample_settings)
        click.echo(f"✅ Sample settings written to: {output}")
    else:
        click.echo(sample_settings)


if __name__ == "__main__":
    main()
