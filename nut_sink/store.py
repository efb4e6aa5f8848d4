"""Ledger Store: durable proof ledger on async SQLAlchemy + SQLite."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from pathlib import Path
from typing import Any, cast

from sqlalchemy import (
    BigInteger,
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    case,
    func,
    select,
    update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from .types import (
    PENDING,
    SPENT,
    UNSPENT,
    Proof,
    ProofState,
    StoredProof,
    WalletId,
)

logger = logging.getLogger(__name__)

metadata = MetaData()

proofs_table = Table(
    "proofs",
    metadata,
    Column("secret", String, primary_key=True),
    Column("wallet_id", String, nullable=False),
    Column("mint_url", String, nullable=False),
    Column("unit", String, nullable=False),
    Column("keyset_id", String, nullable=False),
    Column("amount", BigInteger, nullable=False),
    Column("C", String, nullable=False),
    Column("state", String, nullable=False, default=UNSPENT),
    Column("created_at", Float, nullable=False),
    Column("updated_at", Float, nullable=False),
    Index("ix_proofs_wallet_state", "wallet_id", "state"),
)

keyset_counters_table = Table(
    "keyset_counters",
    metadata,
    Column("keyset_id", String, primary_key=True),
    Column("counter", Integer, nullable=False, default=0),
)


class LedgerStore:
    """Proofs keyed by wallet identity, with UNSPENT/PENDING/SPENT tags.

    Every mutation runs in its own transaction. Proof rows are never
    deleted; spent proofs stay for audit and reconciliation.
    """

    def __init__(self, database_path: str | Path, *, busy_timeout: float = 30.0) -> None:
        self.database_path = str(database_path)
        self.engine: AsyncEngine = create_async_engine(
            f"sqlite+aiosqlite:///{self.database_path}",
            connect_args={"timeout": busy_timeout},
        )

    async def init(self) -> None:
        """Create tables if they do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()

    async def __aenter__(self) -> LedgerStore:
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.dispose()

    # ───────────────────────── Proofs ─────────────────────────────────

    async def put(self, wallet_id: WalletId, proofs: list[Proof]) -> int:
        """Insert new proofs as UNSPENT in one transaction.

        Secrets already in the ledger are left untouched.

        Returns:
            Number of rows actually inserted
        """
        if not proofs:
            return 0
        now = time.time()
        rows = [
            {
                "secret": p["secret"],
                "wallet_id": str(wallet_id),
                "mint_url": wallet_id.mint_url,
                "unit": wallet_id.unit,
                "keyset_id": p["id"],
                "amount": int(p["amount"]),
                "C": p["C"],
                "state": UNSPENT,
                "created_at": now,
                "updated_at": now,
            }
            for p in proofs
        ]
        stmt = sqlite_insert(proofs_table).on_conflict_do_nothing(index_elements=["secret"])
        async with self.engine.begin() as conn:
            existing = set(
                (
                    await conn.execute(
                        select(proofs_table.c.secret).where(
                            proofs_table.c.secret.in_([row["secret"] for row in rows])
                        )
                    )
                ).scalars()
            )
            rows = [row for row in rows if row["secret"] not in existing]
            if rows:
                await conn.execute(stmt, rows)
        logger.debug("Stored %d/%d proofs for %s", len(rows), len(proofs), wallet_id)
        return len(rows)

    async def list_proofs(
        self, wallet_id: WalletId, states: Iterable[ProofState] | None = None
    ) -> list[StoredProof]:
        stmt = select(proofs_table).where(proofs_table.c.wallet_id == str(wallet_id))
        if states is not None:
            stmt = stmt.where(proofs_table.c.state.in_(list(states)))
        stmt = stmt.order_by(proofs_table.c.amount.desc(), proofs_table.c.secret)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
        return [_row_to_proof(row) for row in rows]

    async def list_unspent(self, wallet_id: WalletId) -> list[StoredProof]:
        return await self.list_proofs(wallet_id, [UNSPENT])

    async def get_balance(self, wallet_id: WalletId) -> int:
        stmt = select(func.coalesce(func.sum(proofs_table.c.amount), 0)).where(
            proofs_table.c.wallet_id == str(wallet_id),
            proofs_table.c.state == UNSPENT,
        )
        async with self.engine.connect() as conn:
            return int((await conn.execute(stmt)).scalar_one())

    async def reserve(self, wallet_id: WalletId, secrets: list[str]) -> bool:
        """Atomically move the given proofs from UNSPENT to PENDING.

        The update is guarded on ``state = 'UNSPENT'``; unless every targeted
        proof matched, the transaction is rolled back and nothing changes.
        """
        wanted = set(secrets)
        if not wanted:
            return False
        stmt = (
            update(proofs_table)
            .where(
                proofs_table.c.wallet_id == str(wallet_id),
                proofs_table.c.secret.in_(wanted),
                proofs_table.c.state == UNSPENT,
            )
            .values(state=PENDING, updated_at=time.time())
        )
        async with self.engine.connect() as conn:
            trans = await conn.begin()
            result = await conn.execute(stmt)
            if result.rowcount != len(wanted):
                await trans.rollback()
                logger.debug(
                    "Reservation conflict for %s: %d of %d proofs available",
                    wallet_id,
                    result.rowcount,
                    len(wanted),
                )
                return False
            await trans.commit()
        return True

    async def commit(
        self, wallet_id: WalletId, secrets: list[str], outcome: ProofState
    ) -> int:
        """Finalize a reserved batch as SPENT or back to UNSPENT."""
        if outcome not in (SPENT, UNSPENT):
            raise ValueError(f"Invalid commit outcome: {outcome}")
        if not secrets:
            return 0
        stmt = (
            update(proofs_table)
            .where(
                proofs_table.c.wallet_id == str(wallet_id),
                proofs_table.c.secret.in_(set(secrets)),
                proofs_table.c.state == PENDING,
            )
            .values(state=outcome, updated_at=time.time())
        )
        async with self.engine.begin() as conn:
            result = await conn.execute(stmt)
        return result.rowcount

    async def mark_spent(self, wallet_id: WalletId, secrets: list[str]) -> int:
        """Mark proofs SPENT regardless of their current state."""
        return await self.set_states(wallet_id, {secret: SPENT for secret in secrets})

    async def set_states(self, wallet_id: WalletId, states: dict[str, ProofState]) -> int:
        """Overwrite proof states, for reconciliation against the mint."""
        if not states:
            return 0
        now = time.time()
        changed = 0
        async with self.engine.begin() as conn:
            for state in (UNSPENT, PENDING, SPENT):
                secrets = [s for s, st in states.items() if st == state]
                if not secrets:
                    continue
                result = await conn.execute(
                    update(proofs_table)
                    .where(
                        proofs_table.c.wallet_id == str(wallet_id),
                        proofs_table.c.secret.in_(secrets),
                        proofs_table.c.state != state,
                    )
                    .values(state=state, updated_at=now)
                )
                changed += result.rowcount
        return changed

    async def list_stale_pending(
        self, older_than: float, wallet_id: WalletId | None = None
    ) -> list[StoredProof]:
        """PENDING proofs not touched for ``older_than`` seconds."""
        stmt = select(proofs_table).where(
            proofs_table.c.state == PENDING,
            proofs_table.c.updated_at <= time.time() - older_than,
        )
        if wallet_id is not None:
            stmt = stmt.where(proofs_table.c.wallet_id == str(wallet_id))
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt.order_by(proofs_table.c.updated_at))).mappings().all()
        return [_row_to_proof(row) for row in rows]

    async def list_wallets(self) -> dict[WalletId, dict[str, int]]:
        """Every wallet in the ledger with its amount per state."""
        stmt = select(
            proofs_table.c.mint_url,
            proofs_table.c.unit,
            *(
                func.coalesce(
                    func.sum(case((proofs_table.c.state == state, proofs_table.c.amount), else_=0)),
                    0,
                ).label(state)
                for state in (UNSPENT, PENDING, SPENT)
            ),
        ).group_by(proofs_table.c.mint_url, proofs_table.c.unit)
        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
        return {
            WalletId(row["mint_url"], row["unit"]): {
                state: int(row[state]) for state in (UNSPENT, PENDING, SPENT)
            }
            for row in rows
        }

    # ───────────────────────── Derivation counters ─────────────────────────────

    async def reserve_counter(self, keyset_id: str, n: int) -> int:
        """Claim ``n`` consecutive derivation counters for a keyset.

        Returns:
            First counter of the claimed range
        """
        async with self.engine.begin() as conn:
            await conn.execute(
                sqlite_insert(keyset_counters_table)
                .values(keyset_id=keyset_id, counter=0)
                .on_conflict_do_nothing(index_elements=["keyset_id"])
            )
            await conn.execute(
                update(keyset_counters_table)
                .where(keyset_counters_table.c.keyset_id == keyset_id)
                .values(counter=keyset_counters_table.c.counter + n)
            )
            counter = (
                await conn.execute(
                    select(keyset_counters_table.c.counter).where(
                        keyset_counters_table.c.keyset_id == keyset_id
                    )
                )
            ).scalar_one()
        return int(counter) - n

    async def get_counter(self, keyset_id: str) -> int:
        async with self.engine.connect() as conn:
            counter = (
                await conn.execute(
                    select(keyset_counters_table.c.counter).where(
                        keyset_counters_table.c.keyset_id == keyset_id
                    )
                )
            ).scalar_one_or_none()
        return int(counter or 0)

    async def advance_counter(self, keyset_id: str, counter: int) -> int:
        """Move a keyset counter forward to at least ``counter``; never backwards."""
        async with self.engine.begin() as conn:
            await conn.execute(
                sqlite_insert(keyset_counters_table)
                .values(keyset_id=keyset_id, counter=counter)
                .on_conflict_do_update(
                    index_elements=["keyset_id"],
                    set_={"counter": func.max(keyset_counters_table.c.counter, counter)},
                )
            )
            current = (
                await conn.execute(
                    select(keyset_counters_table.c.counter).where(
                        keyset_counters_table.c.keyset_id == keyset_id
                    )
                )
            ).scalar_one()
        return int(current)


def _row_to_proof(row: Any) -> StoredProof:
    return cast(
        StoredProof,
        {
            "id": row["keyset_id"],
            "amount": int(row["amount"]),
            "secret": row["secret"],
            "C": row["C"],
            "mint": row["mint_url"],
            "unit": row["unit"],
            "state": row["state"],
        },
    )
