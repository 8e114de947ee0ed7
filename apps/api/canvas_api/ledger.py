from __future__ import annotations

import json
import logging
import math
import numbers
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection

from .config import settings
from .db import get_engine
from .models import LEDGER_ID, LedgerCounter, UsageEntry
from .storage import atomic_write_json, file_lock, iso_now, read_json

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 20


class UsageRecord(BaseModel):
    timestamp: str
    tokens: int = Field(gt=0)
    label: str


class LedgerState(BaseModel):
    used: int = Field(default=0, ge=0)
    history: list[UsageRecord] = Field(default_factory=list)


@dataclass(frozen=True)
class TokenSnapshot:
    allowance: int
    used: int
    remaining: int

    @classmethod
    def from_used(cls, allowance: int, used: int) -> "TokenSnapshot":
        return cls(allowance=allowance, used=used, remaining=max(0, allowance - used))

    def to_dict(self) -> dict[str, int]:
        return {"allowance": self.allowance, "used": self.used, "remaining": self.remaining}


class LedgerStore:
    """
    Persistence behind the token ledger.

    ``increment`` must be atomic with respect to every other caller of the
    same store, across threads and processes: two concurrent increments of
    ``n`` and ``m`` always leave ``used`` grown by ``n + m``.
    """

    def __init__(self, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self.history_limit = history_limit

    def load(self) -> LedgerState:
        raise NotImplementedError

    def increment(self, tokens: int, label: str) -> LedgerState:
        raise NotImplementedError


class JsonFileLedgerStore(LedgerStore):
    def __init__(
        self,
        path: Path,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        lock_timeout: float = 30.0,
    ) -> None:
        super().__init__(history_limit)
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.lock_timeout = lock_timeout

    def _read_state(self, strict: bool = False) -> Optional[LedgerState]:
        """
        Read the persisted state; ``None`` means the file does not exist yet.

        Undecodable or invalid content reads as an empty ledger. I/O errors do
        too unless ``strict`` is set, in which case they propagate so a caller
        about to write never replaces the stored total with a fresh one.
        """
        try:
            data = read_json(self.path)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("Token ledger at %s is undecodable, treating it as empty: %s", self.path, exc)
            return LedgerState()
        except OSError as exc:
            if strict:
                raise
            logger.warning("Token ledger at %s is unreadable, treating it as empty: %s", self.path, exc)
            return LedgerState()
        if data is None:
            return None
        try:
            return LedgerState.model_validate(data)
        except ValidationError as exc:
            logger.warning("Token ledger at %s is corrupt, treating it as empty: %s", self.path, exc)
            return LedgerState()

    def _write_state(self, state: LedgerState) -> None:
        atomic_write_json(self.path, state.model_dump(mode="json"))

    def load(self) -> LedgerState:
        state = self._read_state()
        if state is not None:
            return state
        with file_lock(self.lock_path, timeout=self.lock_timeout):
            state = self._read_state()
            if state is None:
                state = LedgerState()
                self._write_state(state)
        return state

    def increment(self, tokens: int, label: str) -> LedgerState:
        with file_lock(self.lock_path, timeout=self.lock_timeout):
            state = self._read_state(strict=True) or LedgerState()
            state.used += tokens
            state.history.insert(0, UsageRecord(timestamp=iso_now(), tokens=tokens, label=label))
            state.history = state.history[: self.history_limit]
            self._write_state(state)
        return state


class SqlLedgerStore(LedgerStore):
    """Ledger kept in SQLite; the increment is one ``UPDATE`` inside one transaction."""

    def __init__(
        self,
        db_path: Path,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        ledger_id: str = LEDGER_ID,
    ) -> None:
        super().__init__(history_limit)
        self.engine = get_engine(db_path)
        self.ledger_id = ledger_id
        self._counter = LedgerCounter.__table__
        self._entries = UsageEntry.__table__

    def _ensure_counter(self, conn: Connection) -> None:
        conn.execute(
            sqlite_insert(self._counter)
            .values(id=self.ledger_id, used=0)
            .on_conflict_do_nothing(index_elements=["id"])
        )

    def _read(self, conn: Connection) -> LedgerState:
        counter = self._counter
        entries = self._entries
        used = conn.execute(select(counter.c.used).where(counter.c.id == self.ledger_id)).scalar_one()
        rows = conn.execute(
            select(entries.c.timestamp, entries.c.tokens, entries.c.label)
            .where(entries.c.ledger_id == self.ledger_id)
            .order_by(entries.c.id.desc())
            .limit(self.history_limit)
        ).all()
        history = [UsageRecord(timestamp=row.timestamp, tokens=row.tokens, label=row.label) for row in rows]
        return LedgerState(used=max(0, used), history=history)

    def load(self) -> LedgerState:
        with self.engine.begin() as conn:
            self._ensure_counter(conn)
            return self._read(conn)

    def increment(self, tokens: int, label: str) -> LedgerState:
        counter = self._counter
        entries = self._entries
        with self.engine.begin() as conn:
            self._ensure_counter(conn)
            conn.execute(
                update(counter)
                .where(counter.c.id == self.ledger_id)
                .values(used=counter.c.used + tokens)
            )
            conn.execute(
                entries.insert().values(
                    ledger_id=self.ledger_id,
                    timestamp=iso_now(),
                    tokens=tokens,
                    label=label,
                )
            )
            keep = (
                select(entries.c.id)
                .where(entries.c.ledger_id == self.ledger_id)
                .order_by(entries.c.id.desc())
                .limit(self.history_limit)
            )
            conn.execute(
                delete(entries).where(
                    entries.c.ledger_id == self.ledger_id,
                    entries.c.id.not_in(keep),
                )
            )
            return self._read(conn)


def billable_tokens(amount: Any) -> Optional[int]:
    """Round ``amount`` to whole tokens, or ``None`` when there is nothing to bill."""
    if isinstance(amount, bool) or not isinstance(amount, numbers.Real):
        return None
    value = float(amount)
    if not math.isfinite(value) or value <= 0:
        return None
    tokens = math.floor(value + 0.5)
    return tokens if tokens > 0 else None


class TokenLedger:
    def __init__(self, store: LedgerStore, allowance: int) -> None:
        self.store = store
        self.allowance = max(0, int(allowance))

    def _snapshot(self, state: LedgerState) -> TokenSnapshot:
        return TokenSnapshot.from_used(self.allowance, state.used)

    def snapshot(self) -> TokenSnapshot:
        return self._snapshot(self.store.load())

    def history(self) -> list[UsageRecord]:
        return list(self.store.load().history)

    def record_usage(self, amount: Any, label: str) -> TokenSnapshot:
        """
        Add ``amount`` tokens to the ledger under ``label``.

        Zero, negative, NaN, infinite and non-numeric amounts are ignored, so
        callers can always pass the usage they accumulated so far.
        """
        tokens = billable_tokens(amount)
        if tokens is None:
            return self.snapshot()
        state = self.store.increment(tokens, label)
        snapshot = self._snapshot(state)
        logger.info(
            "Recorded %d tokens for %r (used %d of %d)",
            tokens,
            label,
            snapshot.used,
            snapshot.allowance,
        )
        return snapshot


def build_store() -> LedgerStore:
    if settings.ledger_backend == "sql":
        return SqlLedgerStore(settings.db_path, history_limit=settings.ledger_history_limit)
    return JsonFileLedgerStore(
        settings.ledger_path,
        history_limit=settings.ledger_history_limit,
        lock_timeout=settings.ledger_lock_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_ledger() -> TokenLedger:
    return TokenLedger(build_store(), settings.token_allowance)
