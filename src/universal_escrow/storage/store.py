"""Persistent escrow collection with per-id atomic read-modify-write.

Two layers keep mutations on one escrow serialized:

* an ``asyncio.Lock`` per escrow id for callers sharing this process, and
* a ``version`` column checked on every write, so a writer in another
  process (a second CLI invocation, another API worker) is detected and the
  mutation is re-applied to the fresh record.

Reads never lock.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar, Union

from universal_escrow.core.errors import ConcurrencyError, NotFound
from universal_escrow.storage.database import Database
from universal_escrow.storage.models import Escrow, EscrowKind, EscrowStatus

logger = logging.getLogger("universal_escrow.storage.store")

T = TypeVar("T")

Mutation = Callable[[Escrow], Union[T, Awaitable[T]]]


class EscrowStore:
    """Escrow records keyed by id, backed by :class:`Database`."""

    def __init__(self, db: Database, max_retries: int = 5) -> None:
        self.db = db
        self.max_retries = max_retries
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _locked(self, escrow_id: str) -> AsyncIterator[None]:
        """Hold the in-process lock for ``escrow_id``.

        The lock is dropped once nobody holds or waits on it.
        """
        lock = self._locks.get(escrow_id)
        if lock is None:
            lock = self._locks[escrow_id] = asyncio.Lock()
        self._lock_users[escrow_id] = self._lock_users.get(escrow_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[escrow_id] -= 1
            if not self._lock_users[escrow_id]:
                del self._lock_users[escrow_id]
                del self._locks[escrow_id]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _load(self, escrow_id: str) -> tuple[Escrow, int] | None:
        row = await self.db.fetch_one(
            "SELECT data, version FROM escrows WHERE id = ?", (escrow_id,)
        )
        if row is None:
            return None
        return Escrow.from_json(row["data"]), row["version"]

    async def get(self, escrow_id: str) -> Optional[Escrow]:
        loaded = await self._load(escrow_id)
        return loaded[0] if loaded else None

    async def require(self, escrow_id: str) -> Escrow:
        escrow = await self.get(escrow_id)
        if escrow is None:
            raise NotFound(f"Escrow {escrow_id} not found.", escrow_id=escrow_id)
        return escrow

    async def version_of(self, escrow_id: str) -> Optional[int]:
        row = await self.db.fetch_one(
            "SELECT version FROM escrows WHERE id = ?", (escrow_id,)
        )
        return row["version"] if row else None

    async def list(
        self,
        kind: EscrowKind | str | None = None,
        status: EscrowStatus | str | None = None,
        party_address: str | None = None,
        property_address: str | None = None,
    ) -> list[Escrow]:
        """List escrows, newest first, optionally filtered.

        ``property_address`` is a case-insensitive substring match on the
        address real-estate escrows keep in their metadata.
        """
        clauses: list[str] = []
        params: list[str] = []
        if kind:
            clauses.append("e.kind = ?")
            params.append(EscrowKind(kind).value)
        if status:
            clauses.append("e.status = ?")
            params.append(EscrowStatus(status).value)
        if party_address:
            clauses.append(
                "EXISTS (SELECT 1 FROM escrow_parties p "
                "WHERE p.escrow_id = e.id AND p.address = ?)"
            )
            params.append(party_address.lower())
        if property_address:
            clauses.append(
                "instr(lower(json_extract(e.data, '$.metadata.property_address')), ?) > 0"
            )
            params.append(property_address.lower())

        sql = "SELECT e.data FROM escrows e"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY e.seq DESC"
        rows = await self.db.fetch_all(sql, tuple(params))
        return [Escrow.from_json(r["data"]) for r in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert(self, escrow: Escrow) -> Escrow:
        """Persist a new record.  Parties are indexed once; they never change."""
        async with self.db.transaction() as conn:
            await conn.execute(
                "INSERT INTO escrows (id, kind, status, version, data, created_at, updated_at) "
                "VALUES (?, ?, ?, 1, ?, ?, ?)",
                (
                    escrow.id,
                    escrow.kind.value,
                    escrow.status.value,
                    escrow.to_json(),
                    escrow.created_at.isoformat(),
                    escrow.updated_at.isoformat(),
                ),
            )
            await conn.executemany(
                "INSERT INTO escrow_parties (escrow_id, role, address) VALUES (?, ?, ?)",
                [
                    (escrow.id, p.role, p.address.lower() if p.address else None)
                    for p in escrow.parties
                ],
            )
        logger.info(f"Escrow {escrow.id} stored ({escrow.kind.value}, {escrow.amount})")
        return escrow

    async def _swap(self, escrow: Escrow, expected_version: int) -> bool:
        cursor = await self.db.execute(
            "UPDATE escrows SET status = ?, data = ?, updated_at = ?, version = version + 1 "
            "WHERE id = ? AND version = ?",
            (
                escrow.status.value,
                escrow.to_json(),
                escrow.updated_at.isoformat(),
                escrow.id,
                expected_version,
            ),
        )
        return cursor.rowcount == 1

    async def mutate(self, escrow_id: str, fn: Mutation) -> tuple[Escrow, T]:
        """Apply ``fn`` to a private copy of the record and persist it atomically.

        ``fn`` may be sync or async.  If it raises, nothing is written and the
        exception propagates.  If another process wrote the record in the
        meantime, the record is reloaded and ``fn`` re-applied, so ``fn`` must
        depend only on the record it is given.

        Returns the stored record and whatever ``fn`` returned.
        """
        async with self._locked(escrow_id):
            for attempt in range(1, self.max_retries + 1):
                loaded = await self._load(escrow_id)
                if loaded is None:
                    raise NotFound(f"Escrow {escrow_id} not found.", escrow_id=escrow_id)
                current, version = loaded

                working = current.model_copy(deep=True)
                result = fn(working)
                if asyncio.iscoroutine(result):
                    result = await result

                if await self._swap(working, version):
                    return working, result

                logger.warning(
                    f"Escrow {escrow_id} changed underneath us "
                    f"(version {version}); retry {attempt}/{self.max_retries}"
                )

        raise ConcurrencyError(
            f"Escrow {escrow_id} kept changing; gave up after {self.max_retries} attempts.",
            escrow_id=escrow_id,
            attempts=self.max_retries,
        )
