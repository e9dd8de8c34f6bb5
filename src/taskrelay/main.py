"""CLI entrypoint for taskrelay."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from taskrelay import __version__
from taskrelay.engine.controllers import (
    AddCommand,
    CheckpointCommand,
    CommandResult,
    EditCommand,
    InitCommand,
    LogCommand,
    NextCommand,
    TaskCommand,
    WorkflowCliController,
    WorkflowCommand,
)
from taskrelay.engine.errors import WorkflowError
from taskrelay.engine.models import TaskCategory

click.rich_click.USE_MARKDOWN = True
CONTROLLER = WorkflowCliController()
CATEGORY_CHOICE = click.Choice([category.value for category in TaskCategory], case_sensitive=False)


@click.group()
@click.version_option(version=__version__, prog_name="taskrelay")
@click.option(
    "--root",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Project root holding `.taskrelay/`. Defaults to TASKRELAY_ROOT or the cwd.",
)
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
@click.pass_context
def taskrelay(ctx: click.Context, root: Path | None, verbose: bool) -> None:
    """Dependency-aware task relay for agent-dispatched work.

    Typical loop: `init` a task list, `next` to dispatch, `checkpoint` to
    report back, then `review` and `finish` once every task is terminal.
    """

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["root"] = root


@taskrelay.command("init")
@click.option(
    "--file",
    "definition_file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Read the Markdown task list from this file instead of stdin.",
)
@click.option("--force", is_flag=True, default=False, help="Replace a running workflow.")
@click.pass_context
def init_command(ctx: click.Context, definition_file: Path | None, force: bool) -> None:
    """Create a workflow from a Markdown task list.

    Format: a `# Name` heading, an optional description line, then tasks like
    `1. [backend] Title (deps: 2, 3)` with indented description lines.
    """

    if definition_file is not None:
        definition = definition_file.read_text("utf-8")
    else:
        definition = _read_stdin()
        if definition is None:
            raise click.UsageError("Provide the task list on stdin or with --file.")
    _run(lambda: CONTROLLER.init(InitCommand(root=_root(ctx), definition=definition, force=force)))


@taskrelay.command("next")
@click.option("--batch", is_flag=True, default=False, help="Dispatch every runnable task at once.")
@click.pass_context
def next_command(ctx: click.Context, batch: bool) -> None:
    """Dispatch the next runnable task (or batch) with its context."""

    _run(lambda: CONTROLLER.next(NextCommand(root=_root(ctx), batch=batch)))


@taskrelay.command("checkpoint")
@click.argument("task_id")
@click.argument("detail", nargs=-1)
@click.option("--failed", is_flag=True, default=False, help="Report the attempt as failed.")
@click.option(
    "--file",
    "detail_file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Read the result detail from this file.",
)
@click.option(
    "--files",
    "files",
    multiple=True,
    help="Path to include in the task commit. Can be repeated.",
)
@click.pass_context
def checkpoint_command(  # noqa: PLR0913
    ctx: click.Context,
    task_id: str,
    detail: tuple[str, ...],
    failed: bool,
    detail_file: Path | None,
    files: tuple[str, ...],
) -> None:
    """Report the outcome of an active task.

    The first line of DETAIL becomes the task summary. Pass `FAILED` (or
    `--failed` with a reason) to record a failed attempt.
    """

    if detail_file is not None:
        text = detail_file.read_text("utf-8")
    elif detail:
        text = " ".join(detail)
    else:
        text = _read_stdin() or ""
    _run(
        lambda: CONTROLLER.checkpoint(
            CheckpointCommand(
                root=_root(ctx),
                task_id=task_id,
                detail=text,
                files=files,
                failed=failed,
            ),
        ),
    )


@taskrelay.command("skip")
@click.argument("task_id")
@click.pass_context
def skip_command(ctx: click.Context, task_id: str) -> None:
    """Skip a task manually; its dependents will be cascade-skipped."""

    _run(lambda: CONTROLLER.skip(TaskCommand(root=_root(ctx), task_id=task_id)))


@taskrelay.command("edit")
@click.argument("task_id")
@click.option("--title", default=None, help="New title.")
@click.option("--desc", "description", default=None, help="New description.")
@click.option("--category", type=CATEGORY_CHOICE, default=None, help="New category.")
@click.option(
    "--deps",
    default=None,
    help="Comma-separated dependency ids; an empty string clears them.",
)
@click.pass_context
def edit_command(  # noqa: PLR0913
    ctx: click.Context,
    task_id: str,
    title: str | None,
    description: str | None,
    category: str | None,
    deps: str | None,
) -> None:
    """Change a pending task."""

    _run(
        lambda: CONTROLLER.edit(
            EditCommand(
                root=_root(ctx),
                task_id=task_id,
                title=title,
                description=description,
                category=category,
                deps=_split_deps(deps) if deps is not None else None,
            ),
        ),
    )


@taskrelay.command("add")
@click.argument("title")
@click.option(
    "--category",
    type=CATEGORY_CHOICE,
    default=TaskCategory.GENERAL.value,
    show_default=True,
    help="Task category.",
)
@click.option("--desc", "description", default="", help="Task description.")
@click.option("--deps", default="", help="Comma-separated dependency ids.")
@click.pass_context
def add_command(
    ctx: click.Context,
    title: str,
    category: str,
    description: str,
    deps: str,
) -> None:
    """Append a task to the running workflow."""

    _run(
        lambda: CONTROLLER.add(
            AddCommand(
                root=_root(ctx),
                title=title,
                category=category,
                description=description,
                deps=_split_deps(deps),
            ),
        ),
    )


@taskrelay.command("show")
@click.argument("task_id")
@click.pass_context
def show_command(ctx: click.Context, task_id: str) -> None:
    """Show one task with its fail history and produced output."""

    _run(lambda: CONTROLLER.show(TaskCommand(root=_root(ctx), task_id=task_id)))


@taskrelay.command("log")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=30,
    show_default=True,
    help="How many latest history entries to print.",
)
@click.pass_context
def log_command(ctx: click.Context, limit: int) -> None:
    """Print the workflow history."""

    _run(lambda: CONTROLLER.log(LogCommand(root=_root(ctx), limit=limit)))


@taskrelay.command("status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    """Show workflow progress."""

    _run(lambda: CONTROLLER.status(WorkflowCommand(root=_root(ctx))))


@taskrelay.command("pause")
@click.pass_context
def pause_command(ctx: click.Context) -> None:
    """Stop dispatching and return active tasks to pending."""

    _run(lambda: CONTROLLER.pause(WorkflowCommand(root=_root(ctx))))


@taskrelay.command("resume")
@click.pass_context
def resume_command(ctx: click.Context) -> None:
    """Recover after an interruption; interrupted tasks are reset to pending."""

    _run(lambda: CONTROLLER.resume(WorkflowCommand(root=_root(ctx))))


@taskrelay.command("review")
@click.pass_context
def review_command(ctx: click.Context) -> None:
    """Record that code review passed; required before `finish` can complete."""

    _run(lambda: CONTROLLER.review(WorkflowCommand(root=_root(ctx))))


@taskrelay.command("finish")
@click.pass_context
def finish_command(ctx: click.Context) -> None:
    """Verify, commit and clear a workflow whose tasks are all terminal."""

    result = _call(lambda: CONTROLLER.finish(WorkflowCommand(root=_root(ctx))))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Workflow is not finished yet.")


def _root(ctx: click.Context) -> Path | None:
    return ctx.obj.get("root") if ctx.obj else None


def _split_deps(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _read_stdin() -> str | None:
    stream = click.get_text_stream("stdin")
    if stream.isatty():
        return None
    return stream.read()


def _call(action: Callable[[], CommandResult]) -> CommandResult:
    try:
        return action()
    except WorkflowError as error:
        raise click.ClickException(str(error)) from error


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except WorkflowError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskrelay()
