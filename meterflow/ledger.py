import asyncio
import logging
import uuid
import weakref
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiosqlite

from .db import utc_now
from .errors import InsufficientFunds, ValidationError
from .pricing import to_money


logger = logging.getLogger("uvicorn.error")


class Ledger:
    """Account balances plus an append-only entry log.

    Every mutation reads the balance, writes the new balance and appends the
    entry inside one BEGIN IMMEDIATE transaction, so writers to the same
    account never interleave their read-modify-write.
    """

    def __init__(self, path: str, *, money_places: int = 6):
        self.path = path
        self.money_places = money_places
        # Entries vanish once no writer holds or waits on the lock.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    def _amount(self, value: Any) -> Decimal:
        try:
            amount = to_money(value, self.money_places)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if amount <= 0:
            raise ValidationError(f"Ledger amount must be positive, got {amount}")
        return amount

    def _row_to_entry(self, row: aiosqlite.Row) -> Dict[str, Any]:
        return {
            "entry_id": row["entry_id"],
            "account_id": row["account_id"],
            "type": row["type"],
            "amount": Decimal(row["amount"]),
            "balance_before": Decimal(row["balance_before"]),
            "balance_after": Decimal(row["balance_after"]),
            "related_generation_id": row["related_generation_id"],
            "description": row["description"] or "",
            "created_at": row["created_at"],
        }

    async def _read_balance(self, db: aiosqlite.Connection, account_id: str) -> Optional[Decimal]:
        cursor = await db.execute("SELECT balance FROM accounts WHERE account_id=?", (account_id,))
        row = await cursor.fetchone()
        await cursor.close()
        if not row:
            return None
        return Decimal(row["balance"])

    async def _existing_debit(self, db: aiosqlite.Connection, generation_id: str) -> Optional[aiosqlite.Row]:
        cursor = await db.execute(
            "SELECT * FROM ledger_entries WHERE type='debit' AND related_generation_id=?",
            (generation_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return row

    async def _apply(
        self,
        db: aiosqlite.Connection,
        account_id: str,
        entry_type: str,
        before: Decimal,
        after: Decimal,
        amount: Decimal,
        related_generation_id: Optional[str],
        description: str,
        exists: bool,
    ) -> Dict[str, Any]:
        now = utc_now()
        if exists:
            await db.execute(
                "UPDATE accounts SET balance=?, updated_at=? WHERE account_id=?",
                (str(after), now, account_id),
            )
        else:
            await db.execute(
                "INSERT INTO accounts(account_id, balance, created_at, updated_at) VALUES (?,?,?,?)",
                (account_id, str(after), now, now),
            )
        entry_id = str(uuid.uuid4())
        await db.execute(
            "INSERT INTO ledger_entries(entry_id, account_id, type, amount, balance_before, balance_after, "
            "related_generation_id, description, created_at) VALUES (?,?,?,?,?,?,?,?,?)",
            (
                entry_id,
                account_id,
                entry_type,
                str(amount),
                str(before),
                str(after),
                related_generation_id,
                description,
                now,
            ),
        )
        return {
            "entry_id": entry_id,
            "account_id": account_id,
            "type": entry_type,
            "amount": amount,
            "balance_before": before,
            "balance_after": after,
            "related_generation_id": related_generation_id,
            "description": description,
            "created_at": now,
        }

    async def debit(
        self,
        account_id: str,
        amount: Any,
        related_generation_id: Optional[str] = None,
        description: str = "",
    ) -> Dict[str, Any]:
        """Take ``amount`` from an account.

        A second debit naming the same generation returns the first entry
        instead of charging again.

        Raises:
            InsufficientFunds: If the balance would go negative. Nothing is written.
        """
        value = self._amount(amount)
        async with self._lock_for(account_id):
            async with aiosqlite.connect(self.path) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("BEGIN IMMEDIATE")
                if related_generation_id:
                    existing = await self._existing_debit(db, related_generation_id)
                    if existing:
                        await db.execute("ROLLBACK")
                        logger.info(
                            "Ledger debit for generation %s already committed (entry %s)",
                            related_generation_id,
                            existing["entry_id"],
                        )
                        return self._row_to_entry(existing)
                current = await self._read_balance(db, account_id)
                before = current if current is not None else Decimal("0")
                after = before - value
                if after < 0:
                    await db.execute("ROLLBACK")
                    raise InsufficientFunds(account_id, value, before)
                entry = await self._apply(
                    db,
                    account_id,
                    "debit",
                    before,
                    after,
                    value,
                    related_generation_id,
                    description,
                    current is not None,
                )
                await db.commit()
        logger.info("Ledger debit %s from %s (balance %s -> %s)", value, account_id, before, after)
        return entry

    async def credit(
        self,
        account_id: str,
        amount: Any,
        related_generation_id: Optional[str] = None,
        description: str = "",
        *,
        entry_type: str = "credit",
    ) -> Dict[str, Any]:
        if entry_type not in ("credit", "reward"):
            raise ValidationError(f"Unsupported credit entry type: {entry_type}")
        value = self._amount(amount)
        async with self._lock_for(account_id):
            async with aiosqlite.connect(self.path) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("BEGIN IMMEDIATE")
                current = await self._read_balance(db, account_id)
                before = current if current is not None else Decimal("0")
                after = before + value
                entry = await self._apply(
                    db,
                    account_id,
                    entry_type,
                    before,
                    after,
                    value,
                    related_generation_id,
                    description,
                    current is not None,
                )
                await db.commit()
        logger.info("Ledger %s %s to %s (balance %s -> %s)", entry_type, value, account_id, before, after)
        return entry

    async def reward(
        self,
        account_id: str,
        amount: Any,
        related_generation_id: Optional[str] = None,
        description: str = "",
    ) -> Dict[str, Any]:
        return await self.credit(
            account_id,
            amount,
            related_generation_id,
            description,
            entry_type="reward",
        )

    async def get_account(self, account_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT account_id, balance, created_at, updated_at FROM accounts WHERE account_id=?",
                (account_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        if not row:
            return None
        return {
            "account_id": row["account_id"],
            "balance": Decimal(row["balance"]),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    async def balance(self, account_id: str) -> Decimal:
        account = await self.get_account(account_id)
        return account["balance"] if account else Decimal("0")

    async def list_entries(self, account_id: str, limit: int = 500) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM ledger_entries WHERE account_id=? ORDER BY id ASC LIMIT ?",
                (account_id, limit),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_entry(row) for row in rows]

    async def find_debit(self, generation_id: str) -> Optional[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            row = await self._existing_debit(db, generation_id)
        return self._row_to_entry(row) if row else None

    async def list_generation_entries(self, generation_id: str) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM ledger_entries WHERE related_generation_id=? ORDER BY id ASC",
                (generation_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_entry(row) for row in rows]
