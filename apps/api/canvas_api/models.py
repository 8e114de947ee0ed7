from __future__ import annotations

from typing import Optional

from sqlmodel import Field, SQLModel


LEDGER_ID = "default"


class LedgerCounter(SQLModel, table=True):
    id: str = Field(default=LEDGER_ID, primary_key=True)
    used: int = 0


class UsageEntry(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    ledger_id: str = Field(default=LEDGER_ID, index=True)
    timestamp: str
    tokens: int
    label: str
