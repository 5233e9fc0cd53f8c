#!/usr/bin/env python3
"""
Utility script to view recent audit log entries and check the hash chain.
Usage: python scripts/view_audit_logs.py [limit]
"""

import json
import os
import sys

from rich import print as rprint
from rich.console import Console
from rich.table import Table

# Add project root to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from warden.audit.logger import AuditLogger
from warden.config import settings
from warden.database import get_engine, get_session_factory
from warden.errors import StorageFailure

console = Console()


def _short(value, width: int = 50) -> str:
    text = json.dumps(value, sort_keys=True) if value else ""
    return text if len(text) <= width else text[:width - 3] + "..."


def view_logs(limit: int = 20) -> int:
    audit = AuditLogger(get_session_factory(get_engine(settings.DATABASE_URL)))

    try:
        entries = audit.recent(limit)
        chain = audit.verify_chain()
    except StorageFailure as e:
        rprint(f"[red]Error fetching logs: {e}[/red]")
        return 1

    if not entries:
        rprint("[yellow]No logs found.[/yellow]")
        return 0

    table = Table(title=f"Audit Logs (Limit: {limit})")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Time", style="cyan", no_wrap=True)
    table.add_column("Action", style="magenta")
    table.add_column("Performed By", style="yellow")
    table.add_column("Target", style="yellow")
    table.add_column("Details", style="white")
    table.add_column("Hash", style="blue")

    for entry in entries:
        table.add_row(
            str(entry.sequence),
            entry.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            entry.action.value,
            entry.performed_by_id or "system",
            entry.target_user_id or "-",
            _short(entry.details),
            entry.hash[:12],
        )

    console.print(table)
    rprint(f"\n[dim]Showing {len(entries)} of {chain.event_count} events.[/dim]")

    if chain.is_valid:
        rprint("[green]Hash chain intact.[/green]")
        return 0
    rprint(f"[red]Hash chain broken at entry {chain.broken_at}[/red]")
    return 2


if __name__ == "__main__":
    limit = 20
    if len(sys.argv) > 1:
        try:
            limit = int(sys.argv[1])
        except ValueError:
            rprint(f"[red]Invalid limit: {sys.argv[1]}[/red]")
            sys.exit(1)

    sys.exit(view_logs(limit))
