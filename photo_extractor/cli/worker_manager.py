"""
Worker and Queue Management CLI
Runs scan workers and inspects the job queue
"""

import asyncio
import signal
import structlog
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from photo_extractor.core.config import ApplicationConfig
from photo_extractor.core.components import build_components

logger = structlog.get_logger()
console = Console()


async def run_worker_command() -> int:
    """Process scan jobs until interrupted"""
    config = ApplicationConfig()
    components = await build_components(config)
    worker = components.build_worker()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:
            # Windows event loops
            pass

    console.print(Panel.fit(
        f"[bold blue]Scan worker {worker.worker_id}[/bold blue]\n"
        f"Queue: {config.redis.queue_name}\n"
        f"Concurrency: {config.worker.worker_concurrency}\n"
        f"Matcher: {'mock' if config.worker.mock_mode or not config.worker.matcher_url else 'remote'}",
        title="Worker"
    ))

    try:
        await worker.run()
    finally:
        await components.close()

    console.print(
        f"[green]Worker stopped[/green] processed={worker.processed} failed={worker.failed}"
    )
    return 0


async def queue_stats_command() -> int:
    """Show job counts per state"""
    config = ApplicationConfig()
    components = await build_components(config)

    try:
        stats = await components.queue.stats()
    except Exception as e:
        console.print(f"[red]Could not read queue: {e}[/red]")
        return 1
    finally:
        await components.close()

    table = Table(title=f"Queue: {config.redis.queue_name}")
    table.add_column("State", style="cyan")
    table.add_column("Jobs", justify="right", style="magenta")

    for state in ("waiting", "active", "delayed", "completed", "failed"):
        table.add_row(state, str(stats[state]))
    table.add_row("[bold]total[/bold]", f"[bold]{stats['total']}[/bold]")

    console.print(table)
    return 0


async def clean_jobs_command() -> int:
    """Delete finished jobs past their retention period"""
    config = ApplicationConfig()
    components = await build_components(config)

    try:
        removed = await components.queue.clean()
    finally:
        await components.close()

    console.print(
        f"[green]Removed {removed['completed']} completed and "
        f"{removed['failed']} failed jobs[/green]"
    )
    return 0
