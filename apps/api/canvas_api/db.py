from __future__ import annotations

import threading
from pathlib import Path

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from . import models  # noqa: F401  (registers the ledger tables)

_engines: dict[Path, Engine] = {}
_engines_lock = threading.Lock()


def _build_engine(db_path: Path) -> Engine:
    return create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )


def get_engine(db_path: Path) -> Engine:
    db_path = Path(db_path)
    with _engines_lock:
        engine = _engines.get(db_path)
        if engine is not None:
            return engine
        db_path.parent.mkdir(parents=True, exist_ok=True)
        engine = _build_engine(db_path)
        SQLModel.metadata.create_all(engine)
        _engines[db_path] = engine
        return engine
