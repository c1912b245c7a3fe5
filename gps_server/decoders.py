from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from gps_server.classifier import classify
from gps_server.record import (
    PROTOCOL_DP,
    PROTOCOL_STS,
    PROTOCOL_TM,
    PROTOCOL_UNKNOWN,
    PROTOCOL_ZLIV,
    CanonicalRecord,
)


LOGGER = logging.getLogger("gps_server.decoders")

NO_FIX_SENTINEL = "0.000000"
STATUS_INT = "int"
STATUS_FLAG = "flag"
J_FRAME_IMEI = re.compile(r"^J([0-9]+)")
LEADING_FLOAT = re.compile(r"\s*[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?")
LEADING_INT = re.compile(r"\s*[+-]?[0-9]+")
SQLITE_INT_MIN = -(2**63)
SQLITE_INT_MAX = 2**63 - 1


@dataclass(frozen=True)
class FieldTable:
    """Fixed positions of one comma-delimited protocol, after splitting on ','."""

    protocol: str
    min_fields: int
    device_id: int
    imei: int
    date: int
    time: int
    latitude: int
    longitude: int
    speed: int
    heading: int
    altitude: int
    satellites: Optional[int] = None
    hdop: Optional[int] = None
    battery_voltage: Optional[int] = None
    status: Optional[int] = None
    status_mode: str = STATUS_INT
    device_id_offset: int = 0
    latitude_hemisphere: Optional[int] = None
    longitude_hemisphere: Optional[int] = None


# $STS:4GA6205,J869742082283836,X,X,25122023,143000,28.6100,0,77.2300,...
STS_TABLE = FieldTable(
    protocol=PROTOCOL_STS,
    min_fields=6,
    device_id=0,
    device_id_offset=len("$STS:"),
    imei=1,
    date=4,
    time=5,
    latitude=6,
    longitude=8,
    speed=10,
    heading=11,
    altitude=12,
    satellites=13,
    battery_voltage=17,
)

# $DP,BB100V,4GA6205,NR,1,L,869742082283836,1,...
DP_TABLE = FieldTable(
    protocol=PROTOCOL_DP,
    min_fields=12,
    device_id=2,
    imei=6,
    date=9,
    time=10,
    latitude=11,
    latitude_hemisphere=12,
    longitude=13,
    longitude_hemisphere=14,
    speed=15,
    heading=16,
    altitude=17,
    satellites=18,
    hdop=25,
    battery_voltage=38,
    status=7,
    status_mode=STATUS_FLAG,
)

# $TM,4GA6205,NR,L,3,869742082283836,...
TM_TABLE = FieldTable(
    protocol=PROTOCOL_TM,
    min_fields=12,
    device_id=1,
    imei=5,
    date=10,
    time=11,
    latitude=12,
    longitude=13,
    speed=14,
    heading=15,
    altitude=16,
    battery_voltage=17,
    status=6,
)


def _field(parts: list[str], index: Optional[int]) -> Optional[str]:
    if index is None or index >= len(parts):
        return None
    value = parts[index]
    return value or None


def _to_float(value: Optional[str]) -> Optional[float]:
    # Devices append units ("12.5V"); only the leading number counts.
    if value is None:
        return None
    match = LEADING_FLOAT.match(value)
    if match is None:
        return None
    number = float(match.group(0))
    if not math.isfinite(number):
        return None
    return number


def _to_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    match = LEADING_INT.match(value)
    if match is None:
        return None
    number = int(match.group(0))
    # Anything wider than a SQLite INTEGER is noise, not a reading.
    if not SQLITE_INT_MIN <= number <= SQLITE_INT_MAX:
        return None
    return number


def _position(parts: list[str], index: int, hemisphere: Optional[int], negative: str) -> Optional[float]:
    raw = _field(parts, index)
    # Devices without a fix send this exact string; other zero spellings are kept.
    if raw is None or raw == NO_FIX_SENTINEL:
        return None
    value = _to_float(raw)
    if value is not None and hemisphere is not None and _field(parts, hemisphere) == negative:
        value = -value
    return value


def parse_timestamp(date_text: Optional[str], time_text: Optional[str]) -> Optional[datetime]:
    """Combine DDMMYYYY and HHMMSS into an aware UTC datetime."""
    if not date_text or not time_text:
        return None
    if len(date_text) != 8 or len(time_text) != 6:
        return None
    if not (date_text.isdigit() and time_text.isdigit()):
        return None
    try:
        return datetime(
            year=int(date_text[4:8]),
            month=int(date_text[2:4]),
            day=int(date_text[0:2]),
            hour=int(time_text[0:2]),
            minute=int(time_text[2:4]),
            second=int(time_text[4:6]),
            tzinfo=timezone.utc,
        )
    except ValueError:
        return None


def _status(parts: list[str], table: FieldTable) -> Optional[int]:
    raw = _field(parts, table.status)
    if raw is None:
        return None
    if table.status_mode == STATUS_FLAG:
        return 1 if raw == "1" else 0
    return _to_int(raw)


class FieldDecoder:
    def __init__(self, table: FieldTable) -> None:
        self.table = table

    @property
    def protocol(self) -> str:
        return self.table.protocol

    def decode(self, text: str, raw_data: str, fallback_protocol: str) -> CanonicalRecord:
        table = self.table
        parts = text.split(",")
        if len(parts) < table.min_fields:
            LOGGER.debug(
                "insufficient fields protocol=%s fields=%d required=%d",
                table.protocol,
                len(parts),
                table.min_fields,
            )
            return CanonicalRecord(raw_data=raw_data, protocol=fallback_protocol)

        device_id = _field(parts, table.device_id)
        if device_id is not None and table.device_id_offset:
            device_id = device_id[table.device_id_offset :] or None

        return CanonicalRecord(
            raw_data=raw_data,
            protocol=table.protocol,
            device_id=device_id,
            imei=_field(parts, table.imei),
            timestamp=parse_timestamp(_field(parts, table.date), _field(parts, table.time)),
            latitude=_position(parts, table.latitude, table.latitude_hemisphere, "S"),
            longitude=_position(parts, table.longitude, table.longitude_hemisphere, "W"),
            speed=_to_float(_field(parts, table.speed)),
            heading=_to_float(_field(parts, table.heading)),
            altitude=_to_float(_field(parts, table.altitude)),
            satellites=_to_int(_field(parts, table.satellites)),
            hdop=_to_float(_field(parts, table.hdop)),
            battery_voltage=_to_float(_field(parts, table.battery_voltage)),
            status=_status(parts, table),
        )


class JFrameDecoder:
    """ZLIV replies such as "J869742082283836 ZLIV:21;" only carry the IMEI."""

    protocol = PROTOCOL_ZLIV

    def decode(self, text: str, raw_data: str, fallback_protocol: str) -> CanonicalRecord:
        match = J_FRAME_IMEI.match(text)
        return CanonicalRecord(
            raw_data=raw_data,
            protocol=self.protocol,
            imei=match.group(1) if match else None,
        )


DECODERS = {
    PROTOCOL_STS: FieldDecoder(STS_TABLE),
    PROTOCOL_DP: FieldDecoder(DP_TABLE),
    PROTOCOL_TM: FieldDecoder(TM_TABLE),
    PROTOCOL_ZLIV: JFrameDecoder(),
}


def decode_message(raw_data: str) -> CanonicalRecord:
    """Classify and decode one candidate message. Never raises."""
    fallback = PROTOCOL_UNKNOWN
    try:
        classified = classify(raw_data)
        fallback = classified.envelope_tag or PROTOCOL_UNKNOWN
        decoder = DECODERS.get(classified.protocol) if classified.protocol else None
        if decoder is None:
            return CanonicalRecord(raw_data=raw_data, protocol=fallback)
        return decoder.decode(classified.text, raw_data, fallback)
    except Exception:
        LOGGER.exception("decode failure protocol=%s", fallback)
        return CanonicalRecord(raw_data=raw_data, protocol=fallback)
