"""Orchestration layer — Checkpoint store.

The single durable artifact the engine reads on startup: one SQLite file
(``<state_dir>/state.db``) accessed through aiosqlite.

Tables:
    meta           schema version
    checkpoints    append-only; an UPDATE is rejected by a trigger
    runs           one row per run: status, plan, host facts, failure
    intents        undo data captured before an install; cleared once it is checkpointed
    module_states  last known lifecycle state of every module per run

Checkpoints are never mutated or deleted automatically.  :meth:`prune` is
the only deleting operation and is invoked explicitly by the operator.
All writes go through a single ``asyncio.Lock`` so checkpoints are strictly
ordered even when modules complete concurrently.
"""

from __future__ import annotations

import asyncio
import json
import platform
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, AsyncIterator, Mapping

import aiosqlite

from serverforge.exceptions import CheckpointNotFoundError, StateStoreError
from serverforge.logging import get_logger
from serverforge.modules.descriptor import ModuleState
from serverforge.modules.undo import UndoDescriptor
from serverforge.orchestration.state import RunState, RunStatus

log = get_logger(__name__)

SCHEMA_VERSION = 1

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS meta (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS checkpoints (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    checkpoint_id   TEXT NOT NULL UNIQUE,
    run_id          TEXT,
    created_at      REAL NOT NULL,
    description     TEXT NOT NULL,
    kind            TEXT NOT NULL,
    completed       TEXT NOT NULL,
    undo            TEXT NOT NULL
);

CREATE TRIGGER IF NOT EXISTS checkpoints_immutable
BEFORE UPDATE ON checkpoints
BEGIN
    SELECT RAISE(ABORT, 'checkpoints are immutable');
END;

CREATE TABLE IF NOT EXISTS runs (
    run_id          TEXT PRIMARY KEY,
    status          TEXT NOT NULL,
    created_at      REAL NOT NULL,
    updated_at      REAL NOT NULL,
    plan            TEXT NOT NULL,
    host            TEXT NOT NULL,
    failed_module   TEXT,
    failed_step     TEXT,
    error           TEXT
);

CREATE TABLE IF NOT EXISTS intents (
    run_id      TEXT NOT NULL,
    module      TEXT NOT NULL,
    undo        TEXT NOT NULL,
    created_at  REAL NOT NULL,
    PRIMARY KEY (run_id, module),
    FOREIGN KEY (run_id) REFERENCES runs(run_id)
);

CREATE TABLE IF NOT EXISTS module_states (
    run_id      TEXT NOT NULL,
    module      TEXT NOT NULL,
    state       TEXT NOT NULL,
    step        TEXT,
    error       TEXT,
    updated_at  REAL NOT NULL,
    PRIMARY KEY (run_id, module),
    FOREIGN KEY (run_id) REFERENCES runs(run_id)
);
"""


@dataclass(frozen=True)
class Checkpoint:
    """Immutable snapshot of which modules are installed and how to undo them."""

    checkpoint_id: str
    run_id: str | None
    created_at: float
    description: str
    kind: str
    completed_modules: tuple[str, ...]
    undo: Mapping[str, UndoDescriptor] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.checkpoint_id,
            "run_id": self.run_id,
            "timestamp": self.created_at,
            "description": self.description,
            "kind": self.kind,
            "completed_modules": list(self.completed_modules),
            "undo": {name: u.to_dict() for name, u in self.undo.items()},
        }


@dataclass
class RunRecord:
    run_id: str
    status: RunStatus
    created_at: float
    updated_at: float
    plan: list[str]
    host: dict[str, str]
    failed_module: str | None = None
    failed_step: str | None = None
    error: str | None = None
    intents: list[str] = field(default_factory=list)
    module_states: dict[str, dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "plan": self.plan,
            "host": self.host,
            "failed_module": self.failed_module,
            "failed_step": self.failed_step,
            "error": self.error,
            "intents": self.intents,
            "module_states": self.module_states,
        }


def _host_facts() -> dict[str, str]:
    uname = platform.uname()
    return {
        "os": uname.system,
        "release": uname.release,
        "machine": uname.machine,
        "hostname": uname.node,
    }


def _new_checkpoint_id() -> str:
    return f"cp_{time.strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"


class CheckpointStore:
    """Async SQLite-backed checkpoint and run store.

    Usage::

        store = CheckpointStore(Path("/var/lib/serverforge"))
        await store.init()
        cp_id = await store.create_checkpoint("installed security/ssh", run_state)
        latest = await store.load_latest()
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir.expanduser()
        self._db_path = self._state_dir / "state.db"
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._db_path

    async def init(self, read_only: bool = False) -> None:
        """Open the database, create tables and check the schema version.

        With *read_only* nothing is created on disk: an existing state file
        is opened with ``mode=ro`` and a missing one is replaced by an empty
        in-memory database.
        """
        try:
            if read_only:
                await self._open_read_only()
            else:
                self._state_dir.mkdir(parents=True, exist_ok=True)
                self._conn = await aiosqlite.connect(str(self._db_path))
                await self._conn.execute("PRAGMA journal_mode=WAL")
                await self._create_schema()
        except (OSError, aiosqlite.Error) as exc:
            raise StateStoreError(f"Failed to initialise state store: {exc}") from exc

        version = await self.schema_version()
        if version != SCHEMA_VERSION:
            raise StateStoreError(
                f"State file {self._db_path} has schema v{version}; "
                f"this version of serverforge expects v{SCHEMA_VERSION}"
            )
        log.debug("state_store_ready", db=str(self._db_path), read_only=read_only)

    async def _open_read_only(self) -> None:
        if self._db_path.exists():
            self._conn = await aiosqlite.connect(
                f"{self._db_path.resolve().as_uri()}?mode=ro", uri=True
            )
            return
        self._conn = await aiosqlite.connect(":memory:")
        await self._create_schema()

    async def _create_schema(self) -> None:
        assert self._conn is not None
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(_SCHEMA_SQL)
        await self._conn.execute(
            "INSERT OR IGNORE INTO meta (key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "CheckpointStore":
        await self.init()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _db(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StateStoreError("State store is not initialised; call init() first")
        return self._conn

    async def schema_version(self) -> int:
        async with self._db().execute(
            "SELECT value FROM meta WHERE key='schema_version'"
        ) as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _write(self, action: str) -> AsyncIterator[aiosqlite.Connection]:
        """Serialise one write transaction and map driver errors to StateStoreError."""
        async with self._lock:
            db = self._db()
            try:
                yield db
                await db.commit()
            except aiosqlite.Error as exc:
                await db.rollback()
                raise StateStoreError(f"Failed to {action}: {exc}") from exc

    async def create_checkpoint(
        self, description: str, run_state: RunState, kind: str = "module"
    ) -> str:
        """Append a checkpoint describing *run_state* and return its id.

        The completed list is read under the write lock, so a checkpoint
        never lists a module whose own checkpoint comes later.
        """
        checkpoint_id = _new_checkpoint_id()
        async with self._write("write checkpoint") as db:
            completed = list(run_state.completed)
            undo = {
                name: run_state.undo[name].to_dict()
                for name in completed
                if name in run_state.undo
            }
            await db.execute(
                "INSERT INTO checkpoints "
                "(checkpoint_id, run_id, created_at, description, kind, completed, undo) "
                "VALUES (?,?,?,?,?,?,?)",
                (
                    checkpoint_id,
                    run_state.run_id,
                    time.time(),
                    description,
                    kind,
                    json.dumps(completed),
                    json.dumps(undo),
                ),
            )
        log.info("checkpoint_created", checkpoint_id=checkpoint_id, completed=completed)
        return checkpoint_id

    @staticmethod
    def _row_to_checkpoint(row: Any) -> Checkpoint:
        undo_raw: dict[str, Any] = json.loads(row[6])
        return Checkpoint(
            checkpoint_id=row[0],
            run_id=row[1],
            created_at=row[2],
            description=row[3],
            kind=row[4],
            completed_modules=tuple(json.loads(row[5])),
            undo=MappingProxyType(
                {name: UndoDescriptor.from_dict(u) for name, u in undo_raw.items()}
            ),
        )

    _CHECKPOINT_COLUMNS = (
        "checkpoint_id, run_id, created_at, description, kind, completed, undo"
    )

    async def load_latest(self) -> Checkpoint | None:
        """Return the most recent checkpoint, or None on a fresh host."""
        async with self._db().execute(
            f"SELECT {self._CHECKPOINT_COLUMNS} FROM checkpoints ORDER BY seq DESC LIMIT 1"
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_checkpoint(row) if row else None

    async def list_checkpoints(self) -> list[Checkpoint]:
        """Return all checkpoints, oldest first."""
        async with self._db().execute(
            f"SELECT {self._CHECKPOINT_COLUMNS} FROM checkpoints ORDER BY seq ASC"
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_checkpoint(r) for r in rows]

    async def get(self, checkpoint_id: str) -> Checkpoint:
        async with self._db().execute(
            f"SELECT {self._CHECKPOINT_COLUMNS} FROM checkpoints WHERE checkpoint_id=?",
            (checkpoint_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise CheckpointNotFoundError(checkpoint_id)
        return self._row_to_checkpoint(row)

    async def prune(self, keep: int) -> int:
        """Delete all but the newest *keep* checkpoints; return how many were removed."""
        if keep < 1:
            raise ValueError("keep must be at least 1; the latest checkpoint is always retained")
        async with self._write("prune checkpoints") as db:
            cursor = await db.execute(
                "DELETE FROM checkpoints WHERE seq NOT IN "
                "(SELECT seq FROM checkpoints ORDER BY seq DESC LIMIT ?)",
                (keep,),
            )
            removed = cursor.rowcount
        log.info("checkpoints_pruned", removed=removed, kept=keep)
        return removed

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def begin_run(self, run_state: RunState) -> None:
        now = time.time()
        async with self._write("record run") as db:
            await db.execute(
                "INSERT INTO runs (run_id, status, created_at, updated_at, plan, host) "
                "VALUES (?,?,?,?,?,?)",
                (
                    run_state.run_id,
                    run_state.status.value,
                    now,
                    now,
                    json.dumps(run_state.plan),
                    json.dumps(_host_facts()),
                ),
            )
            for name, ms in run_state.modules.items():
                await db.execute(
                    "INSERT INTO module_states (run_id, module, state, updated_at) VALUES (?,?,?,?)",
                    (run_state.run_id, name, ms.state.value, now),
                )

    async def update_run_status(self, run_id: str, status: RunStatus) -> None:
        async with self._write("update run status") as db:
            await db.execute(
                "UPDATE runs SET status=?, updated_at=? WHERE run_id=?",
                (status.value, time.time(), run_id),
            )

    async def record_failure(self, run_id: str, module: str, step: str, error: str) -> None:
        async with self._write("record failure") as db:
            await db.execute(
                "UPDATE runs SET failed_module=?, failed_step=?, error=?, updated_at=? "
                "WHERE run_id=?",
                (module, step, error, time.time(), run_id),
            )

    async def set_module_state(
        self,
        run_id: str,
        module: str,
        state: ModuleState,
        step: str | None = None,
        error: str | None = None,
    ) -> None:
        async with self._write("record module state") as db:
            await db.execute(
                "INSERT INTO module_states (run_id, module, state, step, error, updated_at) "
                "VALUES (?,?,?,?,?,?) "
                "ON CONFLICT(run_id, module) DO UPDATE SET "
                "state=excluded.state, step=excluded.step, error=excluded.error, "
                "updated_at=excluded.updated_at",
                (run_id, module, state.value, step, error, time.time()),
            )

    async def record_intent(self, run_id: str, module: str, undo: UndoDescriptor) -> None:
        """Persist the undo data captured before *module*'s install starts.

        Recording again for the same module replaces the earlier intent.
        """
        async with self._write("record install intent") as db:
            await db.execute(
                "INSERT INTO intents (run_id, module, undo, created_at) VALUES (?,?,?,?) "
                "ON CONFLICT(run_id, module) DO UPDATE SET undo=excluded.undo",
                (run_id, module, json.dumps(undo.to_dict()), time.time()),
            )

    async def clear_intent(self, run_id: str, module: str) -> None:
        async with self._write("clear install intent") as db:
            await db.execute(
                "DELETE FROM intents WHERE run_id=? AND module=?", (run_id, module)
            )

    async def dangling_intents(self) -> list[tuple[str, str, UndoDescriptor]]:
        """Return ``(run_id, module, undo)`` for installs that never finished, oldest first."""
        async with self._db().execute(
            "SELECT run_id, module, undo FROM intents ORDER BY created_at ASC, rowid ASC"
        ) as cursor:
            rows = await cursor.fetchall()
        return [(r[0], r[1], UndoDescriptor.from_dict(json.loads(r[2]))) for r in rows]

    _RUN_COLUMNS = (
        "run_id, status, created_at, updated_at, plan, host, failed_module, "
        "failed_step, error"
    )

    async def _run_from_row(self, row: Any) -> RunRecord:
        record = RunRecord(
            run_id=row[0],
            status=RunStatus(row[1]),
            created_at=row[2],
            updated_at=row[3],
            plan=json.loads(row[4]),
            host=json.loads(row[5]),
            failed_module=row[6],
            failed_step=row[7],
            error=row[8],
        )
        async with self._db().execute(
            "SELECT module, state, step, error, updated_at FROM module_states WHERE run_id=?",
            (record.run_id,),
        ) as cursor:
            async for mrow in cursor:
                record.module_states[mrow[0]] = {
                    "state": mrow[1],
                    "step": mrow[2],
                    "error": mrow[3],
                    "updated_at": mrow[4],
                }
        async with self._db().execute(
            "SELECT module FROM intents WHERE run_id=? ORDER BY created_at ASC",
            (record.run_id,),
        ) as cursor:
            record.intents = [r[0] for r in await cursor.fetchall()]
        return record

    async def get_run(self, run_id: str) -> RunRecord | None:
        async with self._db().execute(
            f"SELECT {self._RUN_COLUMNS} FROM runs WHERE run_id=?", (run_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return await self._run_from_row(row) if row else None

    async def latest_run(self) -> RunRecord | None:
        async with self._db().execute(
            f"SELECT {self._RUN_COLUMNS} FROM runs ORDER BY created_at DESC, rowid DESC LIMIT 1"
        ) as cursor:
            row = await cursor.fetchone()
        return await self._run_from_row(row) if row else None

    async def list_runs(self, limit: int = 100) -> list[RunRecord]:
        async with self._db().execute(
            f"SELECT {self._RUN_COLUMNS} FROM runs ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (limit,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [await self._run_from_row(r) for r in rows]

    async def export(self) -> dict[str, Any]:
        """Return the whole persisted state as a JSON-serialisable document."""
        return {
            "schema_version": await self.schema_version(),
            "checkpoints": [c.to_dict() for c in await self.list_checkpoints()],
            "runs": [r.to_dict() for r in await self.list_runs(limit=1_000_000)],
        }
