"""
Main CLI application using Typer.
"""

import calendar
import logging
from pathlib import Path
from typing import Optional, Annotated, Tuple

import pendulum
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from ..adapters.sql_store import SqlStore
from ..config import AppConfig, get_default_config_path
from ..domain.exceptions import SchedulingError, SlotNoLongerAvailableError
from ..domain.models import ExceptionKind, MinuteRange, format_clock_time, parse_clock_time
from ..services.booking_engine import BookingEngine, build_booking_engine

app = typer.Typer(
    name="slotbooker",
    help="Publish working hours and book appointments without double bookings",
    add_completion=False
)

console = Console()

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to config file. Defaults to ./config.yaml")
]


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _open_engine(config_file: Optional[Path]) -> Tuple[AppConfig, BookingEngine]:
    """
    Load the config, make sure the schema exists and sync the configured
    books into the database.
    """
    config_path = config_file or get_default_config_path()
    config = AppConfig.load_from_yaml(config_path)
    _configure_logging(config.log_level)

    store = SqlStore.from_url(config.database_url)
    store.create_schema()
    for book_config in config.books:
        store.save_book(book_config.to_book())

    return config, build_booking_engine(config, store)


def _parse_date(value: str) -> pendulum.Date:
    try:
        return pendulum.from_format(value, "YYYY-MM-DD").date()
    except Exception as e:
        console.print(f"[red]Could not parse date {value!r} (expected YYYY-MM-DD): {e}[/red]")
        raise typer.Exit(1)


def _parse_month(value: str) -> Tuple[int, int]:
    try:
        parsed = pendulum.from_format(value, "YYYY-MM")
    except Exception as e:
        console.print(f"[red]Could not parse month {value!r} (expected YYYY-MM): {e}[/red]")
        raise typer.Exit(1)
    return parsed.year, parsed.month


def _parse_range(start: str, end: str) -> MinuteRange:
    try:
        return MinuteRange(start=parse_clock_time(start), end=parse_clock_time(end))
    except ValueError as e:
        console.print(f"[red]Invalid time range: {e}[/red]")
        raise typer.Exit(1)


def _fail(error: Exception) -> None:
    console.print(f"[bold red]Error:[/bold red] {error}")
    raise typer.Exit(1)


@app.command("init-db")
def init_db(config_file: ConfigOption = None):
    """
    Create the database schema and load the books from the config file.
    """
    try:
        config, engine = _open_engine(config_file)
    except (FileNotFoundError, ValueError) as e:
        _fail(e)

    console.print(
        f"\n[green]✓ Database ready[/green] ({config.database_url}), "
        f"{len(engine.list_books())} book(s) loaded.\n"
    )


@app.command()
def books(config_file: ConfigOption = None):
    """
    List all books and their weekly hours.
    """
    try:
        _, engine = _open_engine(config_file)
    except (FileNotFoundError, ValueError) as e:
        _fail(e)

    all_books = engine.list_books()
    if not all_books:
        console.print("[yellow]No books defined in the config file.[/yellow]")
        return

    table = Table(title="Books", show_header=True, header_style="bold cyan")
    table.add_column("ID", style="bold yellow")
    table.add_column("Name")
    table.add_column("Active")
    table.add_column("Weekly hours", style="dim")

    for book in all_books:
        hours = ", ".join(
            f"{name[:3].capitalize()} {time_range}"
            for name, time_range in book.template.to_names().items()
        )
        table.add_row(book.id, book.name, "yes" if book.is_active else "no", hours or "-")

    console.print()
    console.print(table)
    console.print()


@app.command()
def slots(
    book_id: Annotated[str, typer.Argument(help="Book id")],
    day: Annotated[str, typer.Argument(help="Date (YYYY-MM-DD)")],
    duration: Annotated[Optional[int], typer.Option("--duration", "-d", help="Appointment length in minutes")] = None,
    granularity: Annotated[Optional[int], typer.Option("--granularity", "-g", help="Step between start times in minutes")] = None,
    config_file: ConfigOption = None,
):
    """
    Show free intervals and bookable start times for one day.

    Examples:

        slotbooker slots flash 2024-11-25

        slotbooker slots flash 2024-11-25 --duration 90 --granularity 15
    """
    target = _parse_date(day)
    try:
        config, engine = _open_engine(config_file)
        minutes = duration or config.defaults.duration_minutes
        free = engine.get_day_availability(book_id, target)
        starts = engine.get_bookable_starts(book_id, target, minutes, granularity)
    except (FileNotFoundError, ValueError, SchedulingError) as e:
        _fail(e)

    console.print(f"\n[bold cyan]{book_id}[/bold cyan] on {target.format('dddd, YYYY-MM-DD')}")
    if not free:
        console.print("[yellow]⚠ No free time on this day.[/yellow]\n")
        return

    console.print("Free intervals:")
    for interval in free:
        console.print(f"  {interval} ({interval.duration_minutes()} min)")

    if starts:
        console.print(f"\n[bold green]✓ {len(starts)} start time(s) for {minutes} min:[/bold green]")
        console.print("  " + "  ".join(format_clock_time(start) for start in starts))
    else:
        console.print(f"\n[yellow]⚠ No interval is long enough for {minutes} min.[/yellow]")
    console.print()


@app.command()
def month(
    book_id: Annotated[str, typer.Argument(help="Book id")],
    year_month: Annotated[str, typer.Argument(help="Month (YYYY-MM)")],
    duration: Annotated[Optional[int], typer.Option("--duration", "-d", help="Appointment length in minutes")] = None,
    config_file: ConfigOption = None,
):
    """
    Show which days of a month still have an opening.
    """
    year, month_number = _parse_month(year_month)
    try:
        config, engine = _open_engine(config_file)
        minutes = duration or config.defaults.duration_minutes
        availability = engine.get_month_availability(book_id, year, month_number, minutes)
    except (FileNotFoundError, ValueError, SchedulingError) as e:
        _fail(e)

    table = Table(
        title=f"{book_id} · {calendar.month_name[month_number]} {year} · {minutes} min",
        show_header=True,
        header_style="bold cyan"
    )
    for name in ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"):
        table.add_column(name, justify="center")

    for week in calendar.Calendar().monthdatescalendar(year, month_number):
        cells = []
        for day in week:
            if day.month != month_number:
                cells.append("")
            elif availability.get(day):
                cells.append(f"[bold green]{day.day}[/bold green]")
            else:
                cells.append(f"[dim]{day.day}[/dim]")
        table.add_row(*cells)

    console.print()
    console.print(table)
    open_days = sum(availability.values())
    console.print(f"[green]{open_days}[/green] of {len(availability)} day(s) open.\n")


@app.command()
def reserve(
    book_id: Annotated[str, typer.Argument(help="Book id")],
    day: Annotated[str, typer.Argument(help="Date (YYYY-MM-DD)")],
    start: Annotated[str, typer.Argument(help="Start time (HH:MM)")],
    end: Annotated[str, typer.Argument(help="End time (HH:MM)")],
    config_file: ConfigOption = None,
):
    """
    Reserve a slot. The reservation starts out PENDING.
    """
    target = _parse_date(day)
    try:
        start_minute, end_minute = parse_clock_time(start), parse_clock_time(end)
    except ValueError as e:
        _fail(e)

    try:
        _, engine = _open_engine(config_file)
        reservation = engine.create_reservation(book_id, target, start_minute, end_minute)
    except SlotNoLongerAvailableError as e:
        console.print(f"[bold red]✗ {e}[/bold red]")
        if e.alternative is not None:
            console.print(f"  Earliest free slot of the same length that day: [bold]{e.alternative}[/bold]")
        raise typer.Exit(1)
    except (FileNotFoundError, ValueError, SchedulingError) as e:
        _fail(e)

    console.print(Panel.fit(
        f"[bold green]✓ Reserved[/bold green]\n\n"
        f"[bold]ID:[/bold] {reservation.id}\n"
        f"[bold]When:[/bold] {reservation.format_display()}",
        title=book_id
    ))


@app.command()
def cancel(
    reservation_id: Annotated[str, typer.Argument(help="Reservation id")],
    config_file: ConfigOption = None,
):
    """
    Cancel a reservation and free its time.
    """
    try:
        _, engine = _open_engine(config_file)
        reservation = engine.cancel_reservation(reservation_id)
    except (FileNotFoundError, ValueError, SchedulingError) as e:
        _fail(e)

    console.print(f"\n[green]✓ Cancelled[/green] {reservation.format_display()}\n")


@app.command()
def confirm(
    reservation_id: Annotated[str, typer.Argument(help="Reservation id")],
    config_file: ConfigOption = None,
):
    """
    Confirm a pending reservation.
    """
    try:
        _, engine = _open_engine(config_file)
        reservation = engine.confirm_reservation(reservation_id)
    except (FileNotFoundError, ValueError, SchedulingError) as e:
        _fail(e)

    console.print(f"\n[green]✓ Confirmed[/green] {reservation.format_display()}\n")


@app.command()
def block(
    book_id: Annotated[str, typer.Argument(help="Book id")],
    day: Annotated[str, typer.Argument(help="Date (YYYY-MM-DD)")],
    start: Annotated[str, typer.Argument(help="Start time (HH:MM)")],
    end: Annotated[str, typer.Argument(help="End time (HH:MM)")],
    notes: Annotated[Optional[str], typer.Option("--notes", "-n", help="Why the time is blocked")] = None,
    config_file: ConfigOption = None,
):
    """
    Block time on a day, e.g. lunch or an errand.
    """
    target = _parse_date(day)
    time_range = _parse_range(start, end)
    try:
        _, engine = _open_engine(config_file)
        created = engine.add_block(book_id, target, time_range, notes)
    except (FileNotFoundError, ValueError, SchedulingError) as e:
        _fail(e)

    console.print(f"\n[green]✓ Blocked[/green] {created.time_range} on {target.isoformat()} (id {created.id})\n")


@app.command()
def exception(
    book_id: Annotated[str, typer.Argument(help="Book id")],
    day: Annotated[str, typer.Argument(help="Date (YYYY-MM-DD)")],
    hours: Annotated[Optional[str], typer.Option("--hours", help="Custom hours HH:MM-HH:MM instead of closing the day")] = None,
    reason: Annotated[Optional[str], typer.Option("--reason", "-r", help="Reason shown to the artist")] = None,
    config_file: ConfigOption = None,
):
    """
    Close a day, or replace its hours with --hours.

    Examples:

        slotbooker exception flash 2024-12-24 --reason "Christmas Eve"

        slotbooker exception flash 2024-12-23 --hours 10:00-14:00
    """
    target = _parse_date(day)
    custom_hours = None
    if hours:
        try:
            start, end = hours.split("-")
        except ValueError:
            console.print("[red]--hours must look like HH:MM-HH:MM[/red]")
            raise typer.Exit(1)
        custom_hours = _parse_range(start, end)

    kind = ExceptionKind.CUSTOM_HOURS if custom_hours else ExceptionKind.UNAVAILABLE
    try:
        _, engine = _open_engine(config_file)
        created = engine.add_exception(book_id, target, kind, custom_hours, reason)
    except (FileNotFoundError, ValueError, SchedulingError) as e:
        _fail(e)

    detail = f" {created.custom_hours}" if created.custom_hours else ""
    console.print(f"\n[green]✓ {created.kind.value}{detail}[/green] on {target.isoformat()} (id {created.id})\n")


@app.command()
def version():
    """
    Show version information.
    """
    from .. import __version__
    console.print(f"\n[bold cyan]slotbooker[/bold cyan] version [bold]{__version__}[/bold]\n")


if __name__ == "__main__":
    app()
