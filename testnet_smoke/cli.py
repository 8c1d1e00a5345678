from __future__ import annotations

import logging
from pathlib import Path

import typer
import yaml

from testnet_smoke.config import SmokeConfig, parse_compose_command
from testnet_smoke.errors import ReadinessTimeout, SmokeException, StreamEnded
from testnet_smoke.logging_config import configure_logging, level_for_verbosity
from testnet_smoke.proc import CommandError
from testnet_smoke.providers import load_manifest, render_required_providers
from testnet_smoke.smoke import SmokeRunner

configure_logging()
logger = logging.getLogger(__name__)
app = typer.Typer(help="Testnet smoke check and provider pins", pretty_exceptions_show_locals=False)
providers_app = typer.Typer(help="Provider version pins")
app.add_typer(providers_app, name="providers")


def _exit_for_domain_error(exc: Exception) -> None:
    logger.warning("CLI command failed: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1)


@app.callback()
def main(
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Log at DEBUG, including service output."),
) -> None:
    level = level_for_verbosity(verbose)
    if level is not None:
        configure_logging(level=level)


@app.command("run")
def run(
    compose_dir: Path | None = typer.Option(
        None, "--compose-dir", help="Directory holding the compose file (default: validator-testnet)."
    ),
    compose_command: str | None = typer.Option(
        None, "--compose-command", help="Compose executable, e.g. 'docker compose' (default: docker-compose)."
    ),
    timeout: float | None = typer.Option(None, "--timeout", help="Seconds to wait for each service."),
    startup_delay: float | None = typer.Option(None, "--startup-delay", help="Seconds to wait after 'up'."),
    settle_delay: float | None = typer.Option(None, "--settle-delay", help="Seconds to wait after the checks."),
    teardown: bool | None = typer.Option(
        None, "--teardown/--no-teardown", help="Run 'down' once the checks finish."
    ),
) -> None:
    try:
        config = SmokeConfig.from_env().with_overrides(
            compose_dir=compose_dir,
            compose_command=parse_compose_command(compose_command) if compose_command is not None else None,
            step_timeout=timeout,
            startup_delay=startup_delay,
            settle_delay=settle_delay,
            teardown=teardown,
        )
        runner = SmokeRunner(config)
        runner.run()
    except ReadinessTimeout as e:
        logger.error("%s", e)
        typer.echo("ERROR: Timeout!", err=True)
        raise typer.Exit(code=1)
    except StreamEnded as e:
        logger.error("%s", e)
        typer.echo("ERROR: eof!", err=True)
        raise typer.Exit(code=1)
    except (SmokeException, CommandError) as e:
        _exit_for_domain_error(e)

    typer.echo("PASSED!")


@providers_app.command("check")
def providers_check(
    manifest_path: Path | None = typer.Argument(None, help="Provider manifest (default: the bundled one)."),
) -> None:
    try:
        manifest = load_manifest(manifest_path)
    except SmokeException as e:
        _exit_for_domain_error(e)
    typer.echo(yaml.safe_dump(manifest.as_dict(), sort_keys=False), nl=False)


@providers_app.command("render")
def providers_render(
    manifest_path: Path | None = typer.Argument(None, help="Provider manifest (default: the bundled one)."),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write to this file instead of stdout."),
) -> None:
    try:
        manifest = load_manifest(manifest_path)
    except SmokeException as e:
        _exit_for_domain_error(e)

    rendered = render_required_providers(manifest)
    if output is None:
        typer.echo(rendered, nl=False)
        return
    try:
        output.write_text(rendered, encoding="utf-8")
    except OSError as e:
        _exit_for_domain_error(e)
    logger.info("Wrote %d provider pins to %s", len(manifest.providers), output)


if __name__ == "__main__":
    app()
