from __future__ import annotations

import contextlib
import sqlite3
import threading
import time
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Optional

from gps_server.record import CanonicalRecord


DEFAULT_DEVICE_NAME = "Unknown"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def _utc_timestamp() -> str:
    return time.strftime(TIMESTAMP_FORMAT, time.gmtime())


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


class StorageError(ValueError):
    pass


class Repository:
    """SQLite sink for decoded reports. Safe to call from several threads."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        if db_path != ":memory:":
            db_parent = Path(db_path).expanduser().resolve().parent
            db_parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS devices (
                    imei TEXT PRIMARY KEY,
                    device_name TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS gps_data (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    device_imei TEXT NOT NULL,
                    protocol TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    latitude REAL,
                    longitude REAL,
                    speed REAL,
                    heading REAL,
                    altitude REAL,
                    satellites INTEGER,
                    hdop REAL,
                    gsm_signal REAL,
                    battery_voltage REAL,
                    status INTEGER,
                    raw_data TEXT NOT NULL,
                    received_at TEXT NOT NULL,
                    FOREIGN KEY (device_imei) REFERENCES devices(imei) ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS idx_gps_data_device_time
                    ON gps_data(device_imei, timestamp);
                """
            )
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def ping(self) -> None:
        with self._lock:
            self._conn.execute("SELECT 1").fetchone()

    def record(self, record: CanonicalRecord, received_at: Optional[datetime] = None) -> int:
        if not record.imei:
            raise StorageError("record has no imei")
        received = _format_timestamp(received_at) if received_at else _utc_timestamp()
        reported = _format_timestamp(record.timestamp) if record.timestamp else received
        try:
            with self._lock:
                self._conn.execute(
                    """
                    INSERT OR IGNORE INTO devices(imei, device_name, created_at)
                    VALUES (?, ?, ?)
                    """,
                    (record.imei, record.device_id or DEFAULT_DEVICE_NAME, received),
                )
                cursor = self._conn.execute(
                    """
                    INSERT INTO gps_data(
                        device_imei, protocol, timestamp, latitude, longitude,
                        speed, heading, altitude, satellites, hdop,
                        gsm_signal, battery_voltage, status, raw_data, received_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.imei,
                        record.protocol,
                        reported,
                        record.latitude,
                        record.longitude,
                        record.speed,
                        record.heading,
                        record.altitude,
                        record.satellites,
                        record.hdop,
                        record.gsm_signal,
                        record.battery_voltage,
                        record.status,
                        record.raw_data,
                        received,
                    ),
                )
                self._conn.commit()
                return int(cursor.lastrowid)
        except (sqlite3.Error, OverflowError) as exc:
            with self._lock, contextlib.suppress(sqlite3.Error):
                self._conn.rollback()
            raise StorageError(f"failed to store record for {record.imei}: {exc}") from exc

    def get_device(self, imei: str) -> Optional[dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT imei, device_name, created_at FROM devices WHERE imei=?",
                (imei,),
            ).fetchone()
            return dict(row) if row else None

    def list_devices(self) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT imei, device_name, created_at
                FROM devices
                ORDER BY created_at DESC, rowid DESC
                """
            ).fetchall()
            return [dict(row) for row in rows]

    def latest_positions(self) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT g.*, d.device_name
                FROM (
                    SELECT gd.*,
                           ROW_NUMBER() OVER (
                               PARTITION BY gd.device_imei
                               ORDER BY gd.timestamp DESC, gd.id DESC
                           ) AS position_rank
                    FROM gps_data gd
                    WHERE gd.latitude IS NOT NULL AND gd.longitude IS NOT NULL
                ) g
                JOIN devices d ON d.imei = g.device_imei
                WHERE g.position_rank = 1
                ORDER BY g.timestamp DESC
                """
            ).fetchall()
        positions = []
        for row in rows:
            item = dict(row)
            item.pop("position_rank", None)
            positions.append(item)
        return positions

    def list_gps_data(self, imei: Optional[str] = None, limit: int = 100) -> list[dict[str, Any]]:
        if limit < 0:
            raise StorageError("limit must be non-negative")
        query = "SELECT * FROM gps_data WHERE latitude IS NOT NULL AND longitude IS NOT NULL"
        params: list[Any] = []
        if imei:
            query += " AND device_imei = ?"
            params.append(imei)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(query, tuple(params)).fetchall()
            return [dict(row) for row in rows]

    def stats(self, today: Optional[date] = None) -> dict[str, int]:
        day = (today or datetime.now(timezone.utc).date()).isoformat()
        with self._lock:
            devices = self._conn.execute("SELECT COUNT(*) FROM devices").fetchone()[0]
            records = self._conn.execute("SELECT COUNT(*) FROM gps_data").fetchone()[0]
            today_records = self._conn.execute(
                "SELECT COUNT(*) FROM gps_data WHERE substr(timestamp, 1, 10) = ?",
                (day,),
            ).fetchone()[0]
        return {
            "totalDevices": int(devices),
            "totalRecords": int(records),
            "todayRecords": int(today_records),
        }
