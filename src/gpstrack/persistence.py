"""Best-effort SQLite mirror of accepted positions.

Accepted records are queued with :meth:`HistoryWriter.submit` and written by a
single background task. Each write runs on a one-thread executor, so writes
for a device land in the order they were accepted, and the blocking
SQLAlchemy calls never run on the event loop.

Write failures are logged and dropped: the live map must keep working while
the database is unavailable.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

from sqlalchemy import (
    BigInteger,
    Engine,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    URL,
    create_engine,
    delete,
    event,
    func,
    insert,
    select,
    text,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from gpstrack._constants import DEFAULT_HISTORY_POINTS, PERSIST_QUEUE_SIZE
from gpstrack.exceptions import TrackerPersistenceError
from gpstrack.models.position import PositionRecord

_logger = logging.getLogger(__name__)

_UNIX_NOW = text("(strftime('%s', 'now'))")


class Base(DeclarativeBase):
    pass


class DeviceRow(Base):
    """Per-device summary, upserted on every write."""

    __tablename__ = "devices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    last_seen: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_lat: Mapped[float | None] = mapped_column(Float)
    last_lng: Mapped[float | None] = mapped_column(Float)
    last_speed: Mapped[float | None] = mapped_column(Float)
    last_heading: Mapped[int | None] = mapped_column(Integer)
    last_sats: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[int | None] = mapped_column(Integer, server_default=_UNIX_NOW)
    updated_at: Mapped[int | None] = mapped_column(Integer, server_default=_UNIX_NOW)

    __table_args__ = (
        Index("idx_devices_last_seen", "last_seen"),
        {"sqlite_autoincrement": True},
    )


class PositionRow(Base):
    """One persisted fix."""

    __tablename__ = "positions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(ForeignKey("devices.device_id"), nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    speed: Mapped[float | None] = mapped_column(Float)
    heading: Mapped[int | None] = mapped_column(Integer)
    sats: Mapped[int | None] = mapped_column(Integer)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[int | None] = mapped_column(Integer, server_default=_UNIX_NOW)

    __table_args__ = (
        Index("idx_positions_device_ts", "device_id", "timestamp"),
        Index("idx_positions_timestamp", "timestamp"),
        {"sqlite_autoincrement": True},
    )


DEVICE_STATS_VIEW = text(
    """
    CREATE VIEW IF NOT EXISTS device_stats AS
    SELECT
        d.device_id,
        d.last_seen,
        d.last_lat,
        d.last_lng,
        d.last_speed,
        d.last_heading,
        d.last_sats,
        COUNT(p.id) AS total_positions,
        MIN(p.timestamp) AS first_seen,
        MAX(p.timestamp) AS last_position,
        AVG(p.speed) AS avg_speed,
        MAX(p.speed) AS max_speed
    FROM devices d
    LEFT JOIN positions p ON d.device_id = p.device_id
    GROUP BY d.device_id
    """
)

_SELECT_DEVICE_STATS = text(
    "SELECT device_id, last_seen, total_positions, first_seen, last_position, avg_speed, max_speed "
    "FROM device_stats WHERE device_id = :device_id"
)

# Errors a write or read may raise; anything else is a bug and is logged by the drain loop.
_STORE_ERRORS = (SQLAlchemyError, OSError, OverflowError, ValueError)


def _enable_wal(dbapi_connection: Any, _connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
    finally:
        cursor.close()


def _newest_first(device_id: str) -> Any:
    # Among equal timestamps the higher id (later insert) is newer.
    return (
        select(PositionRow)
        .where(PositionRow.device_id == device_id)
        .order_by(PositionRow.timestamp.desc(), PositionRow.id.desc())
    )


def _row_to_record(row: PositionRow) -> PositionRecord:
    return PositionRecord(
        device_id=row.device_id,
        lat=row.lat,
        lng=row.lng,
        speed=row.speed or 0.0,
        heading=row.heading or 0,
        sats=row.sats or 0,
        timestamp=row.timestamp,
    )


class HistoryWriter:
    """Asynchronous SQLite writer and history reader.

    Parameters
    ----------
    path
        SQLite database file. ``":memory:"`` is accepted for tests.
    history_points
        Rows kept per device after each write.
    timeout
        Seconds a single write or read may take before it is abandoned.
    queue_size
        Pending records held before :meth:`submit` starts dropping.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        history_points: int = DEFAULT_HISTORY_POINTS,
        timeout: float = 5.0,
        queue_size: int = PERSIST_QUEUE_SIZE,
    ) -> None:
        self._path = str(path)
        self._history_points = history_points
        self._timeout = timeout
        self._queue: asyncio.Queue[PositionRecord] = asyncio.Queue(maxsize=queue_size)
        self._executor: ThreadPoolExecutor | None = None
        self._engine: Engine | None = None
        self._sessions: sessionmaker[Any] | None = None
        self._task: asyncio.Task[None] | None = None
        self.written = 0
        self.failed = 0
        self.dropped = 0

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        """Open the database, create the schema and start the writer task."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="gpstrack-sqlite")
        await self._run(self._open_sync, operation="open")
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._drain(), name="gpstrack-history-writer")
        _logger.info("SQLite history store ready: %s", self._path)

    async def close(self, *, drain_timeout: float | None = None) -> None:
        """Flush pending writes (bounded by ``drain_timeout``) and close."""
        task = self._task
        self._task = None
        if task is not None:
            if self._queue.qsize():
                try:
                    await asyncio.wait_for(self._queue.join(), timeout=drain_timeout or self._timeout)
                except TimeoutError:
                    _logger.warning("Closing history store with %d unwritten positions", self._queue.qsize())
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if self._executor is not None:
            with contextlib.suppress(TrackerPersistenceError):
                await self._run(self._close_sync, operation="close")
            self._executor.shutdown(wait=False)
            self._executor = None

    def _open_sync(self) -> None:
        if self._engine is not None:
            return
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(URL.create("sqlite", database=self._path))
        event.listen(engine, "connect", _enable_wal)
        try:
            Base.metadata.create_all(engine)
            with engine.begin() as conn:
                conn.execute(DEVICE_STATS_VIEW)
        except SQLAlchemyError:
            engine.dispose()
            raise
        self._engine = engine
        self._sessions = sessionmaker(engine)

    def _close_sync(self) -> None:
        engine = self._engine
        self._engine = None
        self._sessions = None
        if engine is not None:
            engine.dispose()

    def _require_sessions(self) -> sessionmaker[Any]:
        if self._sessions is None:
            raise TrackerPersistenceError("History store is not open. Call 'await writer.open()' first")
        return self._sessions

    async def _run(self, fn: Any, *args: Any, operation: str) -> Any:
        if self._executor is None:
            raise TrackerPersistenceError("History store is not open", operation=operation)
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(loop.run_in_executor(self._executor, fn, *args), timeout=self._timeout)
        except TimeoutError as exc:
            raise TrackerPersistenceError(
                f"{operation} timed out after {self._timeout}s", operation=operation
            ) from exc
        except _STORE_ERRORS as exc:
            raise TrackerPersistenceError(f"{operation} failed: {exc}", operation=operation) from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def submit(self, record: PositionRecord) -> bool:
        """Queue a record for persistence without waiting.

        Returns ``False`` when the queue is full and the record was dropped.
        """
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            self.dropped += 1
            _logger.warning("History queue full; dropping position for %s", record.device_id)
            return False
        return True

    async def _drain(self) -> None:
        while True:
            record = await self._queue.get()
            try:
                await self._run(self.write_sync, record, operation="write")
                self.written += 1
            except TrackerPersistenceError:
                self.failed += 1
                _logger.error("Persisting position for %s failed", record.device_id, exc_info=True)
            except Exception:
                self.failed += 1
                _logger.exception("Unexpected error persisting position for %s", record.device_id)
            finally:
                self._queue.task_done()

    def _prune_statement(self, device_id: str) -> Any:
        keep = _newest_first(device_id).with_only_columns(PositionRow.id).limit(self._history_points)
        return (
            delete(PositionRow)
            .where(PositionRow.device_id == device_id, PositionRow.id.not_in(keep))
            .execution_options(synchronize_session=False)
        )

    def write_sync(self, record: PositionRecord) -> None:
        """Upsert the device summary, append the position and prune, in one transaction."""
        upsert = sqlite_insert(DeviceRow).values(
            device_id=record.device_id,
            last_seen=record.timestamp,
            last_lat=record.lat,
            last_lng=record.lng,
            last_speed=record.speed,
            last_heading=record.heading,
            last_sats=record.sats,
            updated_at=func.strftime("%s", "now"),
        )
        upsert = upsert.on_conflict_do_update(
            index_elements=[DeviceRow.device_id],
            set_={
                "last_seen": upsert.excluded.last_seen,
                "last_lat": upsert.excluded.last_lat,
                "last_lng": upsert.excluded.last_lng,
                "last_speed": upsert.excluded.last_speed,
                "last_heading": upsert.excluded.last_heading,
                "last_sats": upsert.excluded.last_sats,
                "updated_at": upsert.excluded.updated_at,
            },
        )
        with self._require_sessions().begin() as session:
            session.execute(upsert)
            session.execute(insert(PositionRow).values(**record.model_dump()))
            session.execute(self._prune_statement(record.device_id))

    def prune_sync(self, device_id: str) -> int:
        with self._require_sessions().begin() as session:
            result = session.execute(self._prune_statement(device_id))
        return int(getattr(result, "rowcount", 0))

    async def prune(self, device_id: str) -> int:
        """Trim a device to ``history_points`` rows. Returns rows deleted."""
        return int(await self._run(self.prune_sync, device_id, operation="prune"))

    async def flush(self) -> None:
        """Wait until every queued record has been written or dropped."""
        await self._queue.join()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def history_sync(self, device_id: str, limit: int) -> list[PositionRecord]:
        with self._require_sessions()() as session:
            rows = session.scalars(_newest_first(device_id).limit(limit)).all()
            return [_row_to_record(row) for row in rows]

    async def history(self, device_id: str, limit: int) -> list[PositionRecord]:
        """Persisted positions for a device, most recent first.

        Raises
        ------
        TrackerPersistenceError
            The store is closed or the query failed.
        """
        return list(await self._run(self.history_sync, device_id, limit, operation="history"))

    def device_stats_sync(self, device_id: str) -> dict[str, Any] | None:
        with self._require_sessions()() as session:
            row = session.execute(_SELECT_DEVICE_STATS, {"device_id": device_id}).mappings().first()
            return dict(row) if row is not None else None

    async def device_stats(self, device_id: str) -> dict[str, Any] | None:
        """Aggregates from the ``device_stats`` view, or ``None`` for unknown devices."""
        return await self._run(self.device_stats_sync, device_id, operation="device_stats")
