"""Interactive CLI application."""
import asyncio
import logging

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, FloatPrompt, IntPrompt, Prompt
from rich.table import Table

from prep_tracker.config import Settings, configure_logging, get_settings
from prep_tracker.events import (
    AchievementUnlocked, ConflictNeedsChoice, StorageDegraded, SyncItemDropped, SyncStatusChanged,
)
from prep_tracker.service import BlobProgressService, get_or_create_device_id
from prep_tracker.tracker import ProgressTracker, build_tracker

logger = logging.getLogger(__name__)

console = Console()

MS_PER_MINUTE = 60 * 1000
STATUS_COLORS = {
    "syncing": "cyan",
    "synced": "green",
    "failed": "red",
    "online": "green",
    "offline": "yellow",
}


def show_welcome():
    console.print(Panel(
        "[bold]Interview Prep Tracker[/bold]\n[dim]Offline-first progress sync[/dim]",
        title="Welcome", border_style="blue",
    ))


def show_menu():
    console.print("\n[bold]Commands:[/bold]")
    commands = [
        ("status", "Progress and sync status"),
        ("day", "Mark a track day complete"),
        ("question", "Log a studied question"),
        ("session", "Log study time"),
        ("sync", "Sync with the server now"),
        ("conflicts", "Resolve pending conflicts"),
        ("online", "Go online"),
        ("offline", "Go offline"),
        ("clear", "Delete offline progress"),
        ("quit", "Exit"),
    ]
    for cmd, desc in commands:
        console.print(f"  [cyan]{cmd:<14}[/cyan] {desc}")


def render_event(event) -> None:
    """EventBus listener that prints tracker notifications."""
    if isinstance(event, AchievementUnlocked):
        console.print(Panel(
            f"[bold]{event.title}[/bold]\n{event.description}",
            title="Achievement Unlocked", border_style="yellow",
        ))
    elif isinstance(event, SyncStatusChanged):
        color = STATUS_COLORS.get(event.status, "white")
        detail = f" [dim]({event.detail})[/dim]" if event.detail else ""
        console.print(f"[{color}]Sync: {event.status}[/{color}]{detail}")
    elif isinstance(event, ConflictNeedsChoice):
        conflict = event.conflict
        console.print(
            f"[yellow]Conflict on {conflict.type} '{conflict.field}' needs your choice. "
            f"Use 'conflicts' to resolve.[/yellow]"
        )
    elif isinstance(event, SyncItemDropped):
        console.print(
            f"[red]Gave up syncing {event.type} {event.operation} "
            f"after {event.attempts} attempts.[/red]"
        )
    elif isinstance(event, StorageDegraded):
        console.print(f"[red]Offline storage unavailable ({event.reason}). "
                      f"Progress is kept in memory only.[/red]")


async def ask(prompt_cls, *args, **kwargs):
    """Run a blocking rich prompt in a worker thread."""
    return await asyncio.to_thread(prompt_cls.ask, *args, **kwargs)


def _format_value(value, limit: int = 60) -> str:
    text = str(value)
    return text if len(text) <= limit else text[:limit - 3] + "..."


async def cmd_status(tracker: ProgressTracker):
    doc = tracker.get_current_progress()
    status = await tracker.get_sync_status()

    console.print(Panel(
        f"User [bold]{doc.userId}[/bold]\n"
        f"Streak: [bold]{doc.streaks.current}[/bold] days (longest {doc.streaks.longest})\n"
        f"Study time: [bold]{doc.statistics.totalStudyTime / MS_PER_MINUTE:.0f}[/bold] min  |  "
        f"Questions: [bold]{len(doc.statistics.questionsStudied)}[/bold]  |  "
        f"Completion: [bold]{doc.statistics.completionRate:.1f}%[/bold]",
        title="Progress", border_style="blue",
    ))

    if doc.tracks:
        table = Table(title="Tracks")
        table.add_column("Track", style="cyan")
        table.add_column("Completed", justify="right")
        table.add_column("Current Day", justify="right")
        for name, track in sorted(doc.tracks.items()):
            table.add_row(name, f"{len(track.completedDays)}/{track.totalDays}", str(track.currentDay))
        console.print(table)

    unlocked = [a for a in doc.achievements.values() if a.unlocked]
    if unlocked:
        console.print("\n[bold]Achievements:[/bold]")
        for achievement in unlocked:
            console.print(f"  [yellow]★[/yellow] {achievement.title} [dim]{achievement.description}[/dim]")

    queue = status["queueStatus"]
    online = "[green]online[/green]" if status["isOnline"] else "[yellow]offline[/yellow]"
    synced = "[green]yes[/green]" if status["fullySynced"] else "[yellow]no[/yellow]"
    console.print(f"\n  {online}  |  Last sync: [bold]{status['lastSyncTime'] or 'never'}[/bold]  |  "
                  f"Queued: [bold]{queue['count']}[/bold]  |  Dropped: [bold]{status['droppedItems']}[/bold]  |  "
                  f"Fully synced: {synced}")
    if status["pendingConflicts"]:
        console.print("  [yellow]Conflicts are waiting for your choice.[/yellow]")


async def cmd_day(tracker: ProgressTracker):
    track = await ask(Prompt, "Track", default="algorithms")
    day = await ask(IntPrompt, "Day number", default=1)
    minutes = await ask(FloatPrompt, "Minutes studied", default=0.0)
    await tracker.track_day_completion(track, day, study_time=minutes * MS_PER_MINUTE)
    console.print(f"[green]{track} day {day} complete![/green]")


async def cmd_question(tracker: ProgressTracker):
    question_id = await ask(Prompt, "Question id")
    category = await ask(Prompt, "Category", default="general")
    difficulty = await ask(Prompt, "Difficulty", choices=["easy", "medium", "hard"], default="medium")
    seconds = await ask(FloatPrompt, "Seconds spent", default=0.0)
    doc = await tracker.track_question_studied(question_id, category, difficulty, seconds * 1000)
    console.print(f"[green]Logged. {len(doc.statistics.questionsStudied)} questions studied.[/green]")


async def cmd_session(tracker: ProgressTracker):
    session_type = await ask(Prompt, "Session type", choices=["study", "practice", "review"], default="study")
    minutes = await ask(FloatPrompt, "Minutes", default=25.0)
    await tracker.track_session_time(session_type, minutes * MS_PER_MINUTE)
    console.print(f"[green]Logged {minutes:.0f} minutes of {session_type}.[/green]")


async def cmd_sync(tracker: ProgressTracker):
    if not tracker.is_online:
        console.print("[yellow]You are offline. Changes are queued until you go online.[/yellow]")
        return
    await tracker.sync()


async def cmd_conflicts(tracker: ProgressTracker):
    pending = tracker.resolver.get_pending_conflicts()
    if not pending:
        console.print("[green]No pending conflicts.[/green]")
        return
    for conflict in pending:
        table = Table(title=f"{conflict.type}: {conflict.field}")
        table.add_column("Side")
        table.add_column("Value")
        table.add_column("Modified")
        table.add_row("local", _format_value(conflict.local_value), str(conflict.local_timestamp))
        table.add_row("server", _format_value(conflict.server_value), str(conflict.server_timestamp))
        console.print(table)
        choice = await ask(Prompt, "Keep", choices=["local", "server", "merge", "skip"], default="skip")
        if choice == "skip":
            continue
        await tracker.resolve_pending_conflict(conflict, choice)
        console.print(f"[green]Resolved {conflict.field} with {choice}.[/green]")


async def cmd_clear(tracker: ProgressTracker):
    if not await ask(Confirm, "Delete all offline progress for this user?", default=False):
        return
    user_id = tracker.user_id
    await tracker.clear_offline_data()
    await tracker.initialize(user_id)
    console.print("[green]Offline progress cleared.[/green]")


async def setup_tracker(config: Settings) -> ProgressTracker:
    tracker = build_tracker(config)
    tracker.events.subscribe(render_event)
    await tracker.initialize()
    if config.sync_backend == "blob":
        device_id = await get_or_create_device_id(tracker.store)
        default_service = tracker.service
        tracker.use_service(BlobProgressService(
            config.sync_data_url,
            device_id,
            timeout=config.request_timeout,
            retry_attempts=config.retry_attempts,
            retry_max_wait=config.retry_max_wait,
        ))
        await default_service.aclose()
    return tracker


COMMANDS = {
    "status": cmd_status,
    "day": cmd_day,
    "question": cmd_question,
    "session": cmd_session,
    "sync": cmd_sync,
    "conflicts": cmd_conflicts,
    "clear": cmd_clear,
}


async def run(config: Settings) -> None:
    tracker = await setup_tracker(config)
    show_welcome()
    await tracker.sync()

    stop = asyncio.Event()
    auto_sync = asyncio.create_task(tracker.run_auto_sync(stop))
    try:
        while True:
            show_menu()
            choice = (await ask(Prompt, "\n[bold]>[/bold]", default="status")).strip().lower()
            try:
                if choice in COMMANDS:
                    await COMMANDS[choice](tracker)
                elif choice == "online":
                    await tracker.set_online(True)
                elif choice == "offline":
                    await tracker.set_online(False)
                elif choice in ("quit", "exit", "q"):
                    console.print("[dim]Progress saved. Good luck with your interviews![/dim]")
                    break
                else:
                    console.print("[red]Unknown command. Try again.[/red]")
            except KeyboardInterrupt:
                console.print("\n[dim]Use 'quit' to exit.[/dim]")
            except Exception as e:
                logger.debug(f"Command {choice} failed", exc_info=True)
                console.print(f"[red]Error: {e}[/red]")
    finally:
        stop.set()
        await auto_sync
        await tracker.save_before_unload()
        await tracker.service.aclose()


def main():
    config = get_settings()
    configure_logging(config.log_level)
    asyncio.run(run(config))


if __name__ == "__main__":
    main()
