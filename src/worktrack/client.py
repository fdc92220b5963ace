"""Thin client for the daemon's control socket."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import httpx

from .errors import TrackerError, TransientIO, error_from_payload
from .paths import get_socket_path

_BASE_URL = "http://worktrack"


class DaemonClient:
    """Send ``{command, args}`` envelopes and unwrap ``{ok, result|error}`` replies."""

    def __init__(
        self,
        socket_path: Optional[Path] = None,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.socket_path = Path(socket_path or get_socket_path())
        if transport is None:
            transport = httpx.HTTPTransport(uds=str(self.socket_path))
        self._http = httpx.Client(transport=transport, base_url=_BASE_URL, timeout=timeout)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "DaemonClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def call(self, command: str, **args: Any) -> dict[str, Any]:
        payload = {"command": command, "args": {k: v for k, v in args.items() if v is not None}}
        try:
            response = self._http.post("/rpc", json=payload)
        except httpx.TransportError as exc:
            raise TransientIO(f"daemon not reachable at {self.socket_path}: {exc}") from exc
        try:
            body = response.json()
        except ValueError as exc:
            raise TrackerError(f"daemon returned a non-JSON reply ({response.status_code})") from exc
        if not body.get("ok"):
            raise error_from_payload(body.get("error") or {})
        return body.get("result") or {}
