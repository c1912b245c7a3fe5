from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlparse

from gps_server.decoders import decode_message
from gps_server.repository import Repository, StorageError
from gps_server.session import PersistenceJob, PersistenceWorker


LOGGER = logging.getLogger("gps_server.http_api")
DEFAULT_GPS_DATA_LIMIT = 100

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}


@dataclass(frozen=True)
class HttpRequest:
    method: str
    path: str
    query: dict[str, list[str]]
    headers: dict[str, str]
    body: bytes

    def query_value(self, key: str) -> Optional[str]:
        values = self.query.get(key)
        return values[0] if values else None


def _http_reason(status: int) -> str:
    reasons = {
        200: "OK",
        400: "Bad Request",
        404: "Not Found",
        413: "Payload Too Large",
        500: "Internal Server Error",
    }
    return reasons.get(status, "OK")


class QueryApi:
    """Read-only view over stored positions plus the HTTP upload path."""

    def __init__(
        self,
        repository: Repository,
        worker: PersistenceWorker,
        metrics_provider: Callable[[], dict[str, Any]],
        max_body_bytes: int = 1024 * 1024,
    ) -> None:
        self._repository = repository
        self._worker = worker
        self._metrics_provider = metrics_provider
        self._max_body_bytes = max_body_bytes

    async def handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        peer = writer.get_extra_info("peername")
        peer_str = str(peer) if peer else "unknown"
        try:
            request = await self._read_request(reader)
            if request is None:
                LOGGER.info("http request parse failed peer=%s", peer_str)
                return
            LOGGER.info(
                "http request peer=%s method=%s path=%s body_bytes=%d",
                peer_str,
                request.method,
                request.path,
                len(request.body),
            )
            await self._dispatch(request, writer)
        except Exception as exc:
            LOGGER.exception("http request error peer=%s", peer_str)
            await self._write_json(writer, 500, {"error": str(exc)})
        finally:
            if not writer.is_closing():
                writer.close()
                await writer.wait_closed()

    async def _read_request(self, reader: asyncio.StreamReader) -> Optional[HttpRequest]:
        try:
            raw_headers = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), timeout=10)
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, TimeoutError):
            return None

        lines = raw_headers.decode("utf-8", errors="ignore").split("\r\n")
        if not lines or len(lines[0].split(" ")) < 2:
            return None

        request_line = lines[0].split(" ")
        method = request_line[0].upper()
        target = request_line[1]

        headers: dict[str, str] = {}
        for line in lines[1:]:
            if not line or ":" not in line:
                continue
            key, value = line.split(":", maxsplit=1)
            headers[key.strip().lower()] = value.strip()

        try:
            content_length = int(headers.get("content-length", "0") or "0")
        except ValueError:
            return HttpRequest(method=method, path="__BAD_REQUEST__", query={}, headers=headers, body=b"")
        if content_length < 0 or content_length > self._max_body_bytes:
            return HttpRequest(method=method, path="__TOO_LARGE__", query={}, headers=headers, body=b"")

        body = b""
        if content_length > 0:
            body = await asyncio.wait_for(reader.readexactly(content_length), timeout=20)

        parsed = urlparse(target)
        return HttpRequest(
            method=method,
            path=parsed.path,
            query=parse_qs(parsed.query),
            headers=headers,
            body=body,
        )

    async def _dispatch(self, request: HttpRequest, writer: asyncio.StreamWriter) -> None:
        path = request.path
        method = request.method

        if path == "__TOO_LARGE__":
            await self._write_json(writer, 413, {"error": "payload too large"})
            return
        if path == "__BAD_REQUEST__":
            await self._write_json(writer, 400, {"error": "bad request"})
            return

        if method == "OPTIONS":
            await self._write_bytes(writer, 200, b"", content_type="text/plain")
            return

        if path == "/health" and method == "GET":
            await self._write_json(writer, 200, {"status": "ok"})
            return

        if path == "/api/devices" and method == "GET":
            devices = await asyncio.to_thread(self._repository.list_devices)
            await self._write_json(writer, 200, devices)
            return

        if path == "/api/latest-positions" and method == "GET":
            positions = await asyncio.to_thread(self._repository.latest_positions)
            await self._write_json(writer, 200, positions)
            return

        if path == "/api/gps-data" and method == "GET":
            await self._handle_gps_data(request, writer)
            return

        if path == "/api/upload" and method == "POST":
            await self._handle_upload(request, writer)
            return

        if path == "/api/stats" and method == "GET":
            stats = await asyncio.to_thread(self._repository.stats)
            stats["serverTime"] = datetime.now(timezone.utc).isoformat()
            stats["live"] = self._metrics_provider()
            await self._write_json(writer, 200, stats)
            return

        await self._write_json(writer, 404, {"error": "Endpoint not found"})

    async def _handle_gps_data(self, request: HttpRequest, writer: asyncio.StreamWriter) -> None:
        imei = request.query_value("imei")
        limit_text = request.query_value("limit")
        try:
            limit = int(limit_text) if limit_text else DEFAULT_GPS_DATA_LIMIT
            rows = await asyncio.to_thread(self._repository.list_gps_data, imei, limit)
        except (ValueError, StorageError) as exc:
            await self._write_json(writer, 400, {"error": str(exc)})
            return
        await self._write_json(writer, 200, rows)

    async def _handle_upload(self, request: HttpRequest, writer: asyncio.StreamWriter) -> None:
        text = request.body.decode("utf-8", errors="replace")
        record = decode_message(text)
        await self._worker.persist_now(
            PersistenceJob(
                text=text,
                received_at=datetime.now(timezone.utc),
                record=record,
                session_id="http",
            )
        )
        await self._write_json(
            writer,
            200,
            {
                "success": True,
                "message": "Data received and saved",
                "device": record.imei,
            },
        )

    async def _write_json(
        self,
        writer: asyncio.StreamWriter,
        status: int,
        payload: Any,
    ) -> None:
        encoded = json.dumps(payload).encode("utf-8")
        await self._write_bytes(writer, status, encoded, content_type="application/json")

    async def _write_bytes(
        self,
        writer: asyncio.StreamWriter,
        status: int,
        payload: bytes,
        content_type: str,
    ) -> None:
        headers = {
            "Content-Type": content_type,
            "Content-Length": str(len(payload)),
            "Connection": "close",
        }
        headers.update(CORS_HEADERS)
        lines = [f"HTTP/1.1 {status} {_http_reason(status)}"]
        for key, value in headers.items():
            lines.append(f"{key}: {value}")
        lines.append("")
        lines.append("")
        writer.write("\r\n".join(lines).encode("utf-8") + payload)
        await writer.drain()
