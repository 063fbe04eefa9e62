"""Entry-point for the Study Assistant service."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import uvicorn
import typer

from study_assistant.bootstrap import initialize_app
from study_assistant.logging_utils import DEFAULT_LOG_FORMAT, configure_logging, get_log_file_path
from study_assistant.services.auth import AuthService, RegistrationError
from study_assistant.services.legacy import migrate_legacy_summaries
from study_assistant.services.storage import StudyRepository
from study_assistant.web import create_app
from study_assistant.web.server import normalize_root_path


LOGGER = logging.getLogger("study_assistant.cli")


cli = typer.Typer(add_completion=False, help="Study Assistant management commands")


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _prepare_logging(storage_root: Path) -> None:
    log_file = get_log_file_path(storage_root)
    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    configure_logging(handlers=[file_handler, stream_handler])


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None)


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="STUDY_ASSISTANT_ROOT_PATH",
    ),
) -> None:
    """Run the Study Assistant API."""

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)

    repository = StudyRepository(app_config)
    normalized_root = normalize_root_path(root_path)
    app = create_app(repository, config=app_config, root_path=normalized_root)

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server
    LOGGER.info("Serving Study Assistant on http://%s:%s%s", host, port, normalized_root or "/")
    server.run()


@cli.command("create-user")
def create_user(
    email: str = typer.Option(..., help="Login email address"),
    username: str = typer.Option(..., help="Display name"),
    password: str = typer.Option(
        ...,
        prompt=True,
        hide_input=True,
        confirmation_prompt=True,
        help="Account password",
    ),
) -> None:
    """Create an account without going through the signup endpoint."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    service = AuthService(
        StudyRepository(config),
        secret=config.session_secret,
        ttl_hours=config.session_ttl_hours,
    )
    try:
        user = service.register(username, email, password)
    except RegistrationError as error:
        typer.echo(f"Could not create user: {error}", err=True)
        raise typer.Exit(code=1) from error
    typer.echo(f"Created user {user.email} (id={user.id}).")


@cli.command("migrate-summaries")
def migrate_summaries() -> None:
    """Rewrite summaries stored in the legacy single-chapter format."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    report = migrate_legacy_summaries(StudyRepository(config))
    typer.echo(
        f"Scanned {report.scanned} summaries: "
        f"{report.upgraded} upgraded, {report.unparseable} left unchanged."
    )


if __name__ == "__main__":
    cli()
