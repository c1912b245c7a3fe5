from __future__ import annotations

import threading
from datetime import datetime, timezone, tzinfo
from pathlib import Path
from typing import Optional


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_local_timestamp(when: datetime, tz: tzinfo) -> str:
    """Render like `25/12/2023, 08:00:00 pm`."""
    local = when.astimezone(tz)
    hour = local.hour % 12 or 12
    meridiem = "am" if local.hour < 12 else "pm"
    return f"{local:%d/%m/%Y}, {hour:02d}:{local:%M:%S} {meridiem}"


class RawTextLog:
    """Append-only, human readable record of every text message received."""

    def __init__(self, path: str, tz: tzinfo) -> None:
        self._path = Path(path).expanduser()
        self._tz = tz
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def open(self) -> None:
        header = f"=== GPS Server Started at {_iso_now()} ===\n\n"
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            if self._path.exists():
                header = "\n" + header
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(header)

    def append(self, text: str, when: Optional[datetime] = None) -> None:
        stamp = format_local_timestamp(when or datetime.now(timezone.utc), self._tz)
        entry = f"{stamp}\n{text}\n\n"
        with self._lock:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(entry)

    def close(self) -> None:
        footer = f"\n=== Server Stopped at {_iso_now()} ===\n"
        with self._lock:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(footer)


def read_logged_messages(path: str) -> list[str]:
    """Read message bodies back out of a raw log, skipping markers and timestamps."""
    messages: list[str] = []
    blocks = Path(path).read_text(encoding="utf-8").split("\n\n")
    for block in blocks:
        lines = [line for line in block.split("\n") if line]
        if not lines or lines[0].startswith("==="):
            continue
        if len(lines) < 2:
            continue
        messages.append("\n".join(lines[1:]))
    return messages
