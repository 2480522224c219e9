"""
CLI command handlers: database setup, expiry sweep, seat balance
"""
import asyncio

from examhub.database import AsyncSessionLocal, close_db, init_db
from examhub.services import entitlement_ledger_service as ledger
from examhub.tasks.expiry_sweep import run_sweep_once


class InitDbCommand:
    """Create missing tables."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def execute(self, args) -> int:
        print("=== Database Init ===")
        if self.dry_run:
            print("[DRY RUN] Would create missing tables")
            return 0
        asyncio.run(self._run())
        print("✓ Tables created")
        return 0

    async def _run(self) -> None:
        try:
            await init_db()
        finally:
            await close_db()


class SweepCommand:
    """Run the attempt expiry sweep once."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def execute(self, args) -> int:
        print("=== Expiry Sweep ===")
        if self.dry_run:
            print("[DRY RUN] Would expire overdue attempts")
            return 0
        count = asyncio.run(self._run(args.limit))
        print(f"✓ {count} attempts expired and scored")
        return 0

    async def _run(self, limit) -> int:
        try:
            return await run_sweep_once(AsyncSessionLocal, limit=limit)
        finally:
            await close_db()


class BalanceCommand:
    """Show an academy's available seats for one exam."""

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def execute(self, args) -> int:
        seats, entries = asyncio.run(self._run(args.academy, args.exam, args.entries))
        print(f"Academy {args.academy}, exam {args.exam}: {seats} seats available")
        for entry in entries:
            print(
                f"  #{entry.id} {entry.payment_reference}: "
                f"{entry.quantity_consumed}/{entry.quantity_purchased} used, {entry.status.value}"
            )
        return 0

    async def _run(self, academy_id: int, exam_id: int, with_entries: bool):
        try:
            async with AsyncSessionLocal() as db:
                seats = await ledger.available_seats(academy_id, exam_id, db)
                entries = []
                if with_entries:
                    entries = await ledger.list_purchases(academy_id, db, exam_id=exam_id)
                return seats, entries
        finally:
            await close_db()
