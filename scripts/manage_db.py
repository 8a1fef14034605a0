#!/usr/bin/env python3
"""
Database management script for the webhook indexer metadata store.
"""

import asyncio
import sys
from pathlib import Path

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

import typer
from rich.console import Console
from rich.table import Table

from webhook_indexer.core.database import init_database, close_database, DatabaseManager
from webhook_indexer.core.logging import setup_logging, get_logger
from webhook_indexer.models.indexer import IndexerStatus
from webhook_indexer.services.metadata_store import IndexerStore

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="Database management commands")


@app.command()
def init():
    """Initialize database with tables."""
    async def _init():
        setup_logging()
        await init_database()
        await DatabaseManager.create_tables()
        await close_database()
        console.print("✅ Database initialized successfully!")

    asyncio.run(_init())


@app.command()
def reset():
    """Reset database (drop all tables)."""
    confirm = typer.confirm("Are you sure you want to drop all tables?")
    if not confirm:
        console.print("❌ Operation cancelled")
        return

    async def _reset():
        setup_logging()
        await init_database()
        await DatabaseManager.drop_tables()
        await close_database()
        console.print("🗑️ All tables dropped!")

    asyncio.run(_reset())


@app.command()
def health():
    """Check database health."""
    async def _health() -> bool:
        setup_logging()
        await init_database()
        try:
            return await DatabaseManager.health_check()
        finally:
            await close_database()

    if asyncio.run(_health()):
        console.print("✅ Database is healthy!")
    else:
        console.print("❌ Database health check failed!")
        raise typer.Exit(code=1)


@app.command()
def status():
    """Show indexer counts per status."""

    table = Table(title="Indexer Status")
    table.add_column("Status", style="cyan")
    table.add_column("Indexers", style="green", justify="right")

    async def _status():
        setup_logging()
        await init_database()
        try:
            is_healthy = await DatabaseManager.health_check()
            if not is_healthy:
                console.print("❌ Database is unreachable")
                return False

            counts = await IndexerStore().count_by_status()
            for indexer_status in IndexerStatus:
                table.add_row(indexer_status.value, str(counts.get(indexer_status.value, 0)))
            table.add_row("total", str(sum(counts.values())))
            console.print(table)
            return True
        finally:
            await close_database()

    if not asyncio.run(_status()):
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
