from __future__ import annotations

import os
from dataclasses import dataclass
from urllib.parse import quote

DEFAULT_ENDPOINT_TEMPLATE = "ws://{host}:{port}/agents/{name}/subscribe"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass
class RelayConfig:
    controller_host: str = "localhost"
    controller_port: int = 9999
    endpoint_template: str = DEFAULT_ENDPOINT_TEMPLATE
    reconnect_base_ms: int = 1000
    reconnect_cap_ms: int = 10000
    capture_timeout: float = 30.0
    call_timeout: float = 30.0
    open_timeout: float = 10.0
    cdp_host: str = "127.0.0.1"
    cdp_port: int = 9222
    tab_poll_interval: float = 1.0
    max_frame_bytes: int = 16_000_000

    @classmethod
    def from_env(cls) -> RelayConfig:
        return cls(
            controller_host=(os.environ.get("RELAY_HOST") or "localhost").strip() or "localhost",
            controller_port=_env_int("RELAY_PORT", 9999),
            reconnect_base_ms=max(1, _env_int("RELAY_RECONNECT_BASE_MS", 1000)),
            reconnect_cap_ms=max(1, _env_int("RELAY_RECONNECT_CAP_MS", 10000)),
            capture_timeout=max(0.0, _env_float("RELAY_CAPTURE_TIMEOUT", 30.0)),
            call_timeout=max(0.1, _env_float("RELAY_CALL_TIMEOUT", 30.0)),
            open_timeout=max(0.1, _env_float("RELAY_OPEN_TIMEOUT", 10.0)),
            cdp_host=(os.environ.get("RELAY_CDP_HOST") or "127.0.0.1").strip() or "127.0.0.1",
            cdp_port=_env_int("RELAY_CDP_PORT", 9222),
            tab_poll_interval=max(0.05, _env_float("RELAY_TAB_POLL_INTERVAL", 1.0)),
            max_frame_bytes=max(1024, _env_int("RELAY_MAX_FRAME_BYTES", 16_000_000)),
        )

    def endpoint_url(self, channel_name: str) -> str:
        """Render the control-link endpoint for a channel name."""
        name = (channel_name or "").strip()
        if not name:
            raise ValueError("channel name is required")
        return self.endpoint_template.format(
            host=self.controller_host,
            port=int(self.controller_port),
            name=quote(name, safe=""),
        )

    @property
    def capture_timeout_or_none(self) -> float | None:
        return self.capture_timeout if self.capture_timeout > 0 else None
