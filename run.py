"""Entry-point for the Lesson Portal application."""

from __future__ import annotations

import inspect
import logging
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from lesson_portal.bootstrap import initialize_app
from lesson_portal.logging_utils import (
    build_file_and_stream_handlers,
    configure_logging,
    get_log_file_path,
)
from lesson_portal.services.accounts import Role, hash_password
from lesson_portal.services.storage import LessonRepository
from lesson_portal.services.validation import sanitize_text, validate_email, validate_password
from lesson_portal.ui.overview import LessonOverviewUI
from lesson_portal.web import create_app
from lesson_portal.web.server import get_max_upload_bytes


LOGGER = logging.getLogger("lesson_portal.cli")


cli = typer.Typer(add_completion=False, help="Lesson Portal management commands")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _prepare_logging(storage_root: Path) -> None:
    configure_logging(handlers=build_file_and_stream_handlers(get_log_file_path(storage_root)))


def _normalize_root_path(root_path: Optional[str]) -> str:
    if root_path is None:
        return ""
    normalized = root_path.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


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
        envvar="LESSON_PORTAL_ROOT_PATH",
    ),
) -> None:
    """Run the FastAPI lesson API."""

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)

    repository = LessonRepository(app_config)
    normalized_root = _normalize_root_path(root_path)
    app = create_app(repository, config=app_config, root_path=normalized_root)

    config_kwargs = {}
    max_upload_bytes = get_max_upload_bytes()
    if max_upload_bytes > 0:
        config_signature = inspect.signature(uvicorn.Config.__init__)
        if "limit_max_request_size" in config_signature.parameters:
            config_kwargs["limit_max_request_size"] = max_upload_bytes
        else:
            LOGGER.warning(
                "Ignoring max upload size limit; uvicorn.Config does not support "
                "'limit_max_request_size'.",
            )

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
        **config_kwargs,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server
    LOGGER.info("Serving Lesson Portal on http://%s:%s%s/", host, port, normalized_root)
    server.run()


@cli.command()
def overview(
    class_group: Optional[int] = typer.Option(None, "--class", "-c", help="Only show one class"),
) -> None:
    """Render an overview of stored lessons."""

    config = initialize_app()
    _prepare_logging(config.storage_root)
    LessonOverviewUI(LessonRepository(config)).run(class_group=class_group)


@cli.command("add-user")
def add_user(
    user_no: str = typer.Argument(..., help="Login used for HTTP Basic authentication"),
    role: str = typer.Option("student", "--role", "-r", help="admin, teacher or student"),
    name: str = typer.Option("", "--name", "-n", help="Display name"),
    class_group: Optional[int] = typer.Option(None, "--class", "-c", help="Class of a student"),
    password: str = typer.Option(
        ...,
        prompt=True,
        hide_input=True,
        confirmation_prompt=True,
        help="Account password",
    ),
) -> None:
    """Create an account that can sign in to the API."""

    try:
        parsed_role = Role.parse(role)
    except ValueError as error:
        raise typer.BadParameter(str(error), param_hint="--role") from error

    if parsed_role is Role.STUDENT and class_group is None:
        raise typer.BadParameter("Students must belong to a class.", param_hint="--class")

    login = user_no.strip()
    if not login or sanitize_text(login) != login:
        raise typer.BadParameter("Login contains characters that are not allowed.", param_hint="USER_NO")
    if "@" in login and not validate_email(login):
        raise typer.BadParameter("Login looks like an e-mail address but is not valid.", param_hint="USER_NO")

    verdict = validate_password(password)
    if not verdict.valid:
        raise typer.BadParameter(verdict.error or "Invalid password", param_hint="--password")

    config = initialize_app()
    repository = LessonRepository(config)
    if repository.find_user_by_login(login) is not None:
        raise typer.BadParameter(f"User '{login}' already exists.", param_hint="USER_NO")

    user_id = repository.add_user(
        login,
        sanitize_text(name) or login,
        hash_password(password),
        parsed_role,
        class_group=class_group,
    )
    typer.echo(f"Created {parsed_role.name.lower()} '{login}' with id {user_id}.")


@cli.command("list-users")
def list_users() -> None:
    """Print the registered accounts."""

    config = initialize_app()
    table = Table(title="Users")
    table.add_column("ID", justify="right")
    table.add_column("Login")
    table.add_column("Name")
    table.add_column("Role")
    table.add_column("Class", justify="right")
    for user in LessonRepository(config).iter_users():
        table.add_row(
            str(user.id),
            user.user_no,
            user.user_name,
            user.role.name.lower(),
            "" if user.class_group is None else str(user.class_group),
        )
    Console().print(table)


if __name__ == "__main__":
    cli()
