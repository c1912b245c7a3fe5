from __future__ import annotations

import asyncio
import contextlib
import threading
from dataclasses import dataclass
from datetime import datetime, timezone

import pytest

from gps_server.config import Settings
from gps_server.rawlog import RawTextLog, read_logged_messages
from gps_server.record import CanonicalRecord
from gps_server.repository import Repository, StorageError
from gps_server.session import (
    Metrics,
    PersistenceJob,
    PersistenceWorker,
    ServerState,
    handle_device_client,
)


STS_MESSAGE = (
    "$STS:4GA6205,J869742082283836,X,X,25122023,143000,28.6100,0,77.2300,0,45.5,90,120,8"
)
TM_MESSAGE = (
    "$TM,4GA6205,NR,L,3,869742082283836,2,X,X,X,25122023,143000,"
    "28.6100,77.2300,45.5,90,120,12.4"
)
DP_MESSAGE = ",".join(
    ["$DP", "BB100V", "4GA6205", "NR", "1", "L", "869742082283836", "1", "A", "25122023", "143000"]
    + ["28.6100", "N", "77.2300", "E", "45.5", "90", "120", "8"]
)


def _settings(**overrides) -> Settings:
    values = {
        "bind_host": "127.0.0.1",
        "tcp_port": 0,
        "http_port": 0,
        "http_enabled": False,
        "db_path": ":memory:",
        "log_file": "unused.txt",
        "log_timezone": "UTC",
        "log_level": "INFO",
        "queue_size": 100,
        "read_chunk_bytes": 4096,
        "idle_timeout_seconds": 0,
    }
    values.update(overrides)
    return Settings(**values)


@dataclass
class Gateway:
    port: int
    repository: Repository
    raw_log: RawTextLog
    state: ServerState
    worker: PersistenceWorker


@contextlib.asynccontextmanager
async def running_gateway(tmp_path, **overrides):
    settings = _settings(**overrides)
    repository = Repository(str(tmp_path / "gps.db"))
    raw_log = RawTextLog(str(tmp_path / "raw.txt"), timezone.utc)
    state = ServerState()
    worker = PersistenceWorker(repository, raw_log, state.metrics, queue_size=settings.queue_size)
    worker.start()
    server = await asyncio.start_server(
        lambda r, w: handle_device_client(r, w, settings, state, worker),
        host="127.0.0.1",
        port=0,
    )
    port = server.sockets[0].getsockname()[1]
    try:
        yield Gateway(port, repository, raw_log, state, worker)
    finally:
        server.close()
        await server.wait_closed()
        await worker.stop()
        repository.close()


async def _send_and_close(port: int, payload: bytes) -> bytes:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(payload)
    await writer.drain()
    writer.write_eof()
    reply = await asyncio.wait_for(reader.read(), timeout=5)
    writer.close()
    await writer.wait_closed()
    return reply


@pytest.mark.asyncio
async def test_heartbeat_is_echoed_without_logging(tmp_path) -> None:
    async with running_gateway(tmp_path) as gateway:
        reply = await _send_and_close(gateway.port, b"\x01\x04")

    assert reply == b"\x01\x04"
    assert not (tmp_path / "raw.txt").exists()
    assert gateway.state.metrics.heartbeats == 1
    assert gateway.state.metrics.messages_in == 0


@pytest.mark.asyncio
async def test_debug_markers_get_no_reply(tmp_path) -> None:
    async with running_gateway(tmp_path) as gateway:
        reply = await _send_and_close(gateway.port, b"DBGON\r\n")

    assert reply == b""
    assert not (tmp_path / "raw.txt").exists()
    assert gateway.state.metrics.debug_markers == 1


@pytest.mark.asyncio
async def test_sts_is_acknowledged_logged_and_stored(tmp_path) -> None:
    async with running_gateway(tmp_path) as gateway:
        reply = await _send_and_close(gateway.port, (STS_MESSAGE + "\r\n").encode("ascii"))

    assert reply == b"OK\r\n"
    assert read_logged_messages(str(tmp_path / "raw.txt")) == [STS_MESSAGE]
    with contextlib.closing(Repository(str(tmp_path / "gps.db"))) as repository:
        rows = repository.list_gps_data()
        device = repository.get_device("J869742082283836")
    assert len(rows) == 1
    assert rows[0]["protocol"] == "STS"
    assert rows[0]["speed"] == 45.5
    assert device["device_name"] == "4GA6205"


@pytest.mark.asyncio
async def test_dp_is_acknowledged(tmp_path) -> None:
    async with running_gateway(tmp_path) as gateway:
        reply = await _send_and_close(gateway.port, DP_MESSAGE.encode("ascii"))

    assert reply == b"OK\r\n"
    assert gateway.state.metrics.acks_sent == 1
    assert gateway.state.metrics.records_stored == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("message", [TM_MESSAGE, "J869742082283836 ZLIV:21;", "hello there"])
async def test_other_protocols_get_no_reply(tmp_path, message: str) -> None:
    async with running_gateway(tmp_path) as gateway:
        reply = await _send_and_close(gateway.port, message.encode("ascii"))

    assert reply == b""
    assert gateway.state.metrics.acks_sent == 0
    assert read_logged_messages(str(tmp_path / "raw.txt")) == [message]


@pytest.mark.asyncio
async def test_unknown_message_is_logged_but_not_stored(tmp_path) -> None:
    async with running_gateway(tmp_path) as gateway:
        await _send_and_close(gateway.port, b"{not valid json")

    assert read_logged_messages(str(tmp_path / "raw.txt")) == ["{not valid json"]
    assert gateway.state.metrics.unattributed_messages == 1
    assert gateway.state.metrics.records_stored == 0


@pytest.mark.asyncio
async def test_several_reads_on_one_connection_keep_order(tmp_path) -> None:
    messages = [f"J86974208228383{index} ZLIV:21;" for index in range(5)]
    async with running_gateway(tmp_path) as gateway:
        reader, writer = await asyncio.open_connection("127.0.0.1", gateway.port)
        for message in messages:
            # A heartbeat round trip separates the reads on the server side.
            writer.write(message.encode("ascii"))
            await writer.drain()
            await asyncio.sleep(0.05)
            writer.write(b"\x01\x04")
            await writer.drain()
            assert await asyncio.wait_for(reader.readexactly(2), timeout=5) == b"\x01\x04"
        writer.close()
        await writer.wait_closed()
        while gateway.state.sessions:
            await asyncio.sleep(0.01)

    assert read_logged_messages(str(tmp_path / "raw.txt")) == messages
    assert gateway.state.metrics.records_stored == 5


@pytest.mark.asyncio
async def test_idle_timeout_closes_session(tmp_path) -> None:
    async with running_gateway(tmp_path, idle_timeout_seconds=1) as gateway:
        reader, writer = await asyncio.open_connection("127.0.0.1", gateway.port)
        data = await asyncio.wait_for(reader.read(), timeout=5)
        writer.close()
        await writer.wait_closed()

    assert data == b""
    assert gateway.state.metrics.idle_timeouts == 1


class _FailingRepository:
    def record(self, record: CanonicalRecord, received_at=None) -> int:
        raise StorageError("database is locked")


def test_storage_failure_is_counted_not_raised(tmp_path) -> None:
    metrics = Metrics()
    raw_log = RawTextLog(str(tmp_path / "raw.txt"), timezone.utc)
    worker = PersistenceWorker(_FailingRepository(), raw_log, metrics)

    stored = worker.process(
        PersistenceJob(
            text="J123 ZLIV",
            received_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            record=CanonicalRecord(raw_data="J123 ZLIV", protocol="ZLIV", imei="123"),
        )
    )

    assert stored is False
    assert metrics.storage_failures == 1
    assert read_logged_messages(str(tmp_path / "raw.txt")) == ["J123 ZLIV"]


def test_log_failure_does_not_block_storage(tmp_path) -> None:
    metrics = Metrics()
    blocked = tmp_path / "not-a-dir"
    blocked.write_text("file in the way", encoding="utf-8")
    raw_log = RawTextLog(str(blocked / "raw.txt"), timezone.utc)
    with contextlib.closing(Repository(str(tmp_path / "gps.db"))) as repository:
        worker = PersistenceWorker(repository, raw_log, metrics)
        stored = worker.process(
            PersistenceJob(
                text="J123 ZLIV",
                received_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
                record=CanonicalRecord(raw_data="J123 ZLIV", protocol="ZLIV", imei="123"),
            )
        )

    assert stored is True
    assert metrics.log_failures == 1
    assert metrics.records_stored == 1


@pytest.mark.asyncio
async def test_full_queue_drops_oldest_job(tmp_path) -> None:
    metrics = Metrics()
    raw_log = RawTextLog(str(tmp_path / "raw.txt"), timezone.utc)
    worker = PersistenceWorker(_FailingRepository(), raw_log, metrics, queue_size=2)
    jobs = [
        PersistenceJob(
            text=f"message {index}",
            received_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            record=CanonicalRecord(raw_data=f"message {index}"),
        )
        for index in range(3)
    ]

    assert all(worker.submit(job) for job in jobs)
    assert metrics.queue_drops == 1
    assert worker.pending == 2

    worker.start()
    await worker.stop()

    assert read_logged_messages(str(tmp_path / "raw.txt")) == ["message 1", "message 2"]


@pytest.mark.asyncio
async def test_deeply_nested_envelope_is_logged_and_session_survives(tmp_path) -> None:
    nested = '{"a":' + "[" * 1500 + "]" * 1500 + "}"
    async with running_gateway(tmp_path) as gateway:
        reader, writer = await asyncio.open_connection("127.0.0.1", gateway.port)
        writer.write(nested.encode("ascii"))
        await writer.drain()
        await asyncio.sleep(0.05)
        writer.write(b"\x01\x04")
        await writer.drain()
        assert await asyncio.wait_for(reader.readexactly(2), timeout=5) == b"\x01\x04"
        writer.close()
        await writer.wait_closed()
        while gateway.state.sessions:
            await asyncio.sleep(0.01)

    assert read_logged_messages(str(tmp_path / "raw.txt")) == [nested]
    assert gateway.state.metrics.unattributed_messages == 1


@pytest.mark.asyncio
async def test_oversized_satellite_count_does_not_stop_storage(tmp_path) -> None:
    fields = STS_MESSAGE.split(",")
    fields[13] = "9" * 30
    oversized = ",".join(fields)
    async with running_gateway(tmp_path) as gateway:
        reply = await _send_and_close(gateway.port, oversized.encode("ascii"))
        await _send_and_close(gateway.port, b"J222 ZLIV:21;")
        await asyncio.wait_for(gateway.worker.stop(), timeout=5)

    assert reply == b"OK\r\n"
    assert read_logged_messages(str(tmp_path / "raw.txt")) == [oversized, "J222 ZLIV:21;"]
    assert gateway.state.metrics.records_stored == 2
    with contextlib.closing(Repository(str(tmp_path / "gps.db"))) as repository:
        assert repository.get_device("222") is not None
        assert repository.get_device("J869742082283836") is not None


class _ExplodingOnceRepository:
    def __init__(self, repository: Repository) -> None:
        self._repository = repository
        self.calls = 0

    def record(self, record: CanonicalRecord, received_at=None) -> int:
        self.calls += 1
        if self.calls == 1:
            raise OverflowError("Python int too large to convert to SQLite INTEGER")
        return self._repository.record(record, received_at=received_at)


@pytest.mark.asyncio
async def test_worker_keeps_running_after_unexpected_job_error(tmp_path) -> None:
    metrics = Metrics()
    raw_log = RawTextLog(str(tmp_path / "raw.txt"), timezone.utc)
    with contextlib.closing(Repository(str(tmp_path / "gps.db"))) as repository:
        worker = PersistenceWorker(_ExplodingOnceRepository(repository), raw_log, metrics)
        worker.start()
        for text, imei in (("J111 ZLIV:21;", "111"), ("J222 ZLIV:21;", "222")):
            worker.submit(
                PersistenceJob(
                    text=text,
                    received_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
                    record=CanonicalRecord(raw_data=text, protocol="ZLIV", imei=imei),
                )
            )
        await asyncio.wait_for(worker.stop(), timeout=5)

        assert repository.get_device("111") is None
        assert repository.get_device("222") is not None

    assert read_logged_messages(str(tmp_path / "raw.txt")) == ["J111 ZLIV:21;", "J222 ZLIV:21;"]
    assert metrics.records_stored == 1
    assert worker.pending == 0


def test_metrics_increment_is_exact_across_threads() -> None:
    metrics = Metrics()

    def bump() -> None:
        for _ in range(2_000):
            metrics.increment("records_stored")

    threads = [threading.Thread(target=bump) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert metrics.records_stored == 16_000