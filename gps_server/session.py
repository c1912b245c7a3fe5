from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from gps_server.config import Settings
from gps_server.decoders import decode_message
from gps_server.framer import (
    FRAME_DEBUG,
    FRAME_EMPTY,
    FRAME_HEARTBEAT,
    HEARTBEAT_REPLY,
    frame_read_event,
)
from gps_server.rawlog import RawTextLog
from gps_server.record import CanonicalRecord
from gps_server.repository import Repository, StorageError


LOGGER = logging.getLogger("gps_server")
ACK_REPLY = b"OK\r\n"


@dataclass
class Metrics:
    started_at: float = field(default_factory=time.time)
    total_connections: int = 0
    messages_in: int = 0
    heartbeats: int = 0
    debug_markers: int = 0
    acks_sent: int = 0
    unattributed_messages: int = 0
    records_stored: int = 0
    storage_failures: int = 0
    log_failures: int = 0
    queue_drops: int = 0
    idle_timeouts: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)


@dataclass
class DeviceSession:
    session_id: str
    peer: str
    connected_at: float
    writer: asyncio.StreamWriter
    messages: int = 0
    last_imei: Optional[str] = None
    last_protocol: Optional[str] = None


class ServerState:
    def __init__(self) -> None:
        self.sessions: Dict[str, DeviceSession] = {}
        self.metrics = Metrics()

    def register(self, session: DeviceSession) -> None:
        self.sessions[session.session_id] = session
        self.metrics.total_connections += 1

    def unregister(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)

    def snapshot(self) -> dict:
        now = time.time()
        with self.metrics._lock:
            return {
                "uptime_seconds": int(now - self.metrics.started_at),
                "connected_devices": len(self.sessions),
                "total_connections": self.metrics.total_connections,
                "messages_in": self.metrics.messages_in,
                "heartbeats": self.metrics.heartbeats,
                "debug_markers": self.metrics.debug_markers,
                "acks_sent": self.metrics.acks_sent,
                "unattributed_messages": self.metrics.unattributed_messages,
                "records_stored": self.metrics.records_stored,
                "storage_failures": self.metrics.storage_failures,
                "log_failures": self.metrics.log_failures,
                "queue_drops": self.metrics.queue_drops,
                "idle_timeouts": self.metrics.idle_timeouts,
            }


@dataclass(frozen=True)
class PersistenceJob:
    text: str
    received_at: datetime
    record: CanonicalRecord
    session_id: str = "-"


class PersistenceWorker:
    """Writes the raw log and storage off the read path, one job at a time.

    Jobs are handled in submission order, so raw-log entries of one connection
    keep their receipt order. Failures only show up in logs and metrics.
    """

    def __init__(
        self,
        repository: Repository,
        raw_log: RawTextLog,
        metrics: Metrics,
        queue_size: int = 10_000,
    ) -> None:
        self._repository = repository
        self._raw_log = raw_log
        self._metrics = metrics
        self._queue: asyncio.Queue[PersistenceJob] = asyncio.Queue(maxsize=queue_size)
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        await self._queue.join()
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    def submit(self, job: PersistenceJob) -> bool:
        try:
            self._queue.put_nowait(job)
            return True
        except asyncio.QueueFull:
            try:
                dropped = self._queue.get_nowait()
                self._queue.task_done()
                LOGGER.warning(
                    "persistence queue full, dropped job session=%s text=%r",
                    dropped.session_id,
                    dropped.text[:80],
                )
            except asyncio.QueueEmpty:
                pass

            try:
                self._queue.put_nowait(job)
                self._metrics.queue_drops += 1
                return True
            except asyncio.QueueFull:
                self._metrics.queue_drops += 1
                return False

    async def persist_now(self, job: PersistenceJob) -> bool:
        return await asyncio.to_thread(self.process, job)

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                await asyncio.to_thread(self.process, job)
            except Exception:
                LOGGER.exception("persistence job failed session=%s", job.session_id)
            finally:
                self._queue.task_done()

    def process(self, job: PersistenceJob) -> bool:
        try:
            self._raw_log.append(job.text, job.received_at)
        except OSError as exc:
            self._metrics.increment("log_failures")
            LOGGER.warning("raw log append failed session=%s error=%s", job.session_id, str(exc))

        record = job.record
        if not record.attributable:
            self._metrics.increment("unattributed_messages")
            LOGGER.info(
                "no imei found, skipping database save session=%s protocol=%s",
                job.session_id,
                record.protocol,
            )
            return False

        try:
            self._repository.record(record, received_at=job.received_at)
        except StorageError:
            self._metrics.increment("storage_failures")
            LOGGER.exception("storage failure session=%s imei=%s", job.session_id, record.imei)
            return False
        self._metrics.increment("records_stored")
        LOGGER.info("data saved for device imei=%s protocol=%s", record.imei, record.protocol)
        return True


async def _reply(session: DeviceSession, payload: bytes) -> None:
    session.writer.write(payload)
    await session.writer.drain()


async def _read_event(reader: asyncio.StreamReader, settings: Settings) -> bytes:
    if settings.idle_timeout_seconds > 0:
        return await asyncio.wait_for(
            reader.read(settings.read_chunk_bytes),
            timeout=settings.idle_timeout_seconds,
        )
    return await reader.read(settings.read_chunk_bytes)


async def handle_device_client(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    settings: Settings,
    state: ServerState,
    worker: PersistenceWorker,
) -> None:
    peer = writer.get_extra_info("peername")
    peer_str = str(peer) if peer else "unknown"
    session = DeviceSession(
        session_id=uuid.uuid4().hex[:12],
        peer=peer_str,
        connected_at=time.time(),
        writer=writer,
    )
    state.register(session)
    LOGGER.info("device connected session=%s peer=%s", session.session_id, session.peer)

    try:
        while True:
            try:
                chunk = await _read_event(reader, settings)
            except TimeoutError:
                state.metrics.idle_timeouts += 1
                LOGGER.info("device idle timeout session=%s", session.session_id)
                break

            if not chunk:
                break

            frame = frame_read_event(chunk)
            if frame.kind == FRAME_EMPTY:
                continue
            if frame.kind == FRAME_HEARTBEAT:
                state.metrics.heartbeats += 1
                LOGGER.debug("heartbeat received session=%s", session.session_id)
                await _reply(session, HEARTBEAT_REPLY)
                continue
            if frame.kind == FRAME_DEBUG:
                state.metrics.debug_markers += 1
                LOGGER.info("debug marker session=%s marker=%r", session.session_id, frame.text)
                continue

            received_at = datetime.now(timezone.utc)
            state.metrics.messages_in += 1
            session.messages += 1
            LOGGER.info("received session=%s peer=%s data=%r", session.session_id, session.peer, frame.text)

            try:
                record = decode_message(frame.text)
            except Exception:
                LOGGER.exception("decode failure session=%s", session.session_id)
                record = CanonicalRecord(raw_data=frame.text)
            session.last_protocol = record.protocol
            if record.imei:
                session.last_imei = record.imei
            worker.submit(
                PersistenceJob(
                    text=frame.text,
                    received_at=received_at,
                    record=record,
                    session_id=session.session_id,
                )
            )

            if record.expects_ack:
                await _reply(session, ACK_REPLY)
                state.metrics.acks_sent += 1
    except (ConnectionError, asyncio.IncompleteReadError) as exc:
        LOGGER.info("device disconnected session=%s error=%s", session.session_id, str(exc))
    except OSError as exc:
        LOGGER.warning("socket error session=%s peer=%s error=%s", session.session_id, session.peer, str(exc))
    finally:
        state.unregister(session.session_id)
        writer.close()
        with contextlib.suppress(Exception):
            await writer.wait_closed()
        LOGGER.info(
            "device session closed session=%s peer=%s messages=%d",
            session.session_id,
            session.peer,
            session.messages,
        )
