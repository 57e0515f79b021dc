import typer

from aiqueue.cli.enums import EntryStatusFilter


def older_than_callback(ctx: typer.Context, value: float):
    if ctx.resilient_parsing:
        return
    if value <= 0:
        raise typer.BadParameter(
            message=f"'{value}' is not a valid age, it must be a positive number of seconds",
            param_hint="--older-than",
        )
    return value


def status_callback(ctx: typer.Context, value: str | None):
    if ctx.resilient_parsing or value is None:
        return value
    if value not in EntryStatusFilter.__members__.values():
        supported = ", ".join(EntryStatusFilter.__members__.values())
        raise typer.BadParameter(
            message=f"'{value}' is not a valid status, supported statuses are: {supported}",
            param_hint="--status, -s",
        )
    return value
