from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


PROTOCOL_STS = "STS"
PROTOCOL_DP = "DP"
PROTOCOL_TM = "TM"
PROTOCOL_ZLIV = "ZLIV"
PROTOCOL_UNKNOWN = "unknown"

# Protocols whose devices expect "OK\r\n" after every decoded frame.
ACKNOWLEDGED_PROTOCOLS = frozenset({PROTOCOL_STS, PROTOCOL_DP})


@dataclass(frozen=True)
class CanonicalRecord:
    raw_data: str
    protocol: str = PROTOCOL_UNKNOWN
    device_id: Optional[str] = None
    imei: Optional[str] = None
    timestamp: Optional[datetime] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None
    altitude: Optional[float] = None
    satellites: Optional[int] = None
    hdop: Optional[float] = None
    gsm_signal: Optional[float] = None
    battery_voltage: Optional[float] = None
    status: Optional[int] = None

    @property
    def attributable(self) -> bool:
        return bool(self.imei)

    @property
    def expects_ack(self) -> bool:
        return self.protocol in ACKNOWLEDGED_PROTOCOLS

    def as_dict(self) -> dict[str, Any]:
        return {
            "protocol": self.protocol,
            "deviceId": self.device_id,
            "imei": self.imei,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "speed": self.speed,
            "heading": self.heading,
            "altitude": self.altitude,
            "satellites": self.satellites,
            "hdop": self.hdop,
            "gsmSignal": self.gsm_signal,
            "batteryVoltage": self.battery_voltage,
            "status": self.status,
            "rawData": self.raw_data,
        }
