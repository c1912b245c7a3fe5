from __future__ import annotations

import os
from dataclasses import dataclass


def _read_bool(key: str, default: bool = False) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _read_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None:
        return default
    return int(value)


@dataclass(frozen=True)
class Settings:
    bind_host: str
    tcp_port: int
    http_port: int
    http_enabled: bool
    db_path: str
    log_file: str
    log_timezone: str
    log_level: str
    queue_size: int
    read_chunk_bytes: int
    # 0 keeps device connections open until the peer closes them.
    idle_timeout_seconds: int


def load_settings() -> Settings:
    return Settings(
        bind_host=os.getenv("GPS_BIND_HOST", "0.0.0.0"),
        tcp_port=_read_int("GPS_TCP_PORT", 5000),
        http_port=_read_int("GPS_HTTP_PORT", 3000),
        http_enabled=_read_bool("GPS_HTTP_ENABLED", True),
        db_path=os.getenv("GPS_DB_PATH", "./data/gps_tracking.db"),
        log_file=os.getenv("GPS_LOG_FILE", "GPS_Data_Log.txt"),
        log_timezone=os.getenv("GPS_LOG_TIMEZONE", "Asia/Kolkata"),
        log_level=os.getenv("GPS_LOG_LEVEL", "INFO").upper(),
        queue_size=_read_int("GPS_QUEUE_SIZE", 10_000),
        read_chunk_bytes=_read_int("GPS_READ_CHUNK_BYTES", 4096),
        idle_timeout_seconds=_read_int("GPS_IDLE_TIMEOUT_SECONDS", 0),
    )
