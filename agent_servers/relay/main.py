"""
Tab automation relay: command-line entry point.

    serve       run the agent server controllers talk to
    relay       attach a Chrome tab (over CDP) to a control-link channel
    eval        evaluate a script in the tab subscribed to a channel
    screenshot  capture elements and save them as PNG files
    paste       paste a file or data URL into an element
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import json
import logging
import mimetypes
import os
import re
import sys
import time
from pathlib import Path
from typing import Any

from .bridge import BridgeHub
from .cdp import find_tab
from .config import RelayConfig
from .controller import AgentServer, call_agent
from .errors import RelayError
from .executor import CommandExecutor
from .host import CdpHost, CdpPageEvaluator, CdpSurfaceCapturer, TabWatcher
from .supervisor import ConnectionSupervisor


def _log_level() -> int:
    name = (os.environ.get("RELAY_LOG_LEVEL") or "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


logging.basicConfig(
    level=_log_level(),
    format="%(asctime)s %(levelname)s %(message)s",
)
logger = logging.getLogger("agent.relay")

__all__ = ["main", "screenshot_filename", "file_data_url"]

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9_.-]+")


def screenshot_filename(selector: str, timestamp: str | None = None) -> str:
    """`<sanitized selector>_<timestamp>.png` (selector part capped at 50 chars)."""
    safe = _UNSAFE_FILENAME.sub("_", selector).strip("_.")[:50] or "element"
    return f"{safe}_{timestamp or time.strftime('%Y%m%d-%H%M%S')}.png"


def file_data_url(path: Path) -> str:
    mime = mimetypes.guess_type(str(path))[0] or "application/octet-stream"
    return f"data:{mime};base64," + base64.b64encode(path.read_bytes()).decode("ascii")


def save_screenshots(result: dict[str, Any], out_dir: Path) -> list[Path]:
    out_dir.mkdir(parents=True, exist_ok=True)
    stamp = time.strftime("%Y%m%d-%H%M%S")
    saved: list[Path] = []
    for selector, data_url in (result.get("imageData") or {}).items():
        if not isinstance(data_url, str) or "," not in data_url:
            logger.warning("no image for %s", selector)
            continue
        path = out_dir / screenshot_filename(selector, stamp)
        path.write_bytes(base64.b64decode(data_url.split(",", 1)[1]))
        saved.append(path)
    return saved


class _TabEvents:
    """Tab lifecycle fan-in: the executor dies with its tab."""

    def __init__(self, supervisor: ConnectionSupervisor, executor: CommandExecutor) -> None:
        self._supervisor = supervisor
        self._executor = executor

    async def on_tab_removed(self, tab_id: str) -> None:
        if tab_id == self._executor.tab_id:
            await self._executor.close()
        await self._supervisor.on_tab_removed(tab_id)

    async def on_tab_navigated(self, tab_id: str, url: str | None = None) -> None:
        await self._supervisor.on_tab_navigated(tab_id, url)


async def run_relay(config: RelayConfig, channel: str, tab_id: str | None = None) -> None:
    host = CdpHost(config.cdp_host, config.cdp_port, timeout=max(config.call_timeout, 5.0))
    target = await asyncio.to_thread(find_tab, config.cdp_host, config.cdp_port, tab_id)
    tid = str(target["id"])
    logger.info("relaying tab %s (%s) on channel %s", tid, target.get("url"), channel)

    hub = BridgeHub()
    supervisor = ConnectionSupervisor(config, hub=hub, capturer=CdpSurfaceCapturer(host))
    await supervisor.start()
    executor = CommandExecutor(tid, hub, CdpPageEvaluator(host, tid), config=config)
    watcher = TabWatcher(host, _TabEvents(supervisor, executor), interval=config.tab_poll_interval)
    watcher.watch(tid, target.get("url"))
    try:
        executor.connect(channel)
        await watcher.run()
    finally:
        await executor.close()
        await supervisor.stop()
        host.close()


def _print_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, indent=2) + "\n")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agent-relay", description="Browser tab automation relay")
    parser.add_argument("--host", help="agent server host (RELAY_HOST)")
    parser.add_argument("--port", type=int, help="agent server port (RELAY_PORT)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="run the agent server")

    relay = sub.add_parser("relay", help="attach a Chrome tab to a channel")
    relay.add_argument("--channel", default=os.environ.get("RELAY_CHANNEL"))
    relay.add_argument("--tab", help="CDP target id (default: first page tab)")

    ev = sub.add_parser("eval", help="evaluate a script")
    ev.add_argument("script")
    ev.add_argument("--channel", default=os.environ.get("RELAY_CHANNEL"))

    shot = sub.add_parser("screenshot", help="capture elements")
    shot.add_argument("-s", "--selector", action="append", dest="selectors", required=True)
    shot.add_argument("-o", "--out", default=".", help="output directory")
    shot.add_argument("--channel", default=os.environ.get("RELAY_CHANNEL"))

    paste = sub.add_parser("paste", help="paste a file or data URL into an element")
    paste.add_argument("-s", "--selector", required=True)
    source = paste.add_mutually_exclusive_group(required=True)
    source.add_argument("--file", type=Path)
    source.add_argument("--data", help="data URL")
    paste.add_argument("--channel", default=os.environ.get("RELAY_CHANNEL"))
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    config = RelayConfig.from_env()
    if args.host:
        config.controller_host = args.host
    if args.port is not None:
        config.controller_port = args.port

    if args.command == "serve":
        server = AgentServer(
            config.controller_host,
            config.controller_port,
            call_timeout=config.call_timeout,
            max_size=config.max_frame_bytes,
        )
        try:
            asyncio.run(server.serve_forever())
        except KeyboardInterrupt:
            logger.info("agent server interrupted")
        return 0

    channel = (args.channel or "").strip()
    if not channel:
        sys.stderr.write("error: --channel (or RELAY_CHANNEL) is required\n")
        return 2

    if args.command == "relay":
        try:
            asyncio.run(run_relay(config, channel, args.tab))
        except KeyboardInterrupt:
            logger.info("relay interrupted")
        except RelayError as exc:
            sys.stderr.write(f"error: {exc}\n")
            return 1
        return 0

    if args.command == "eval":
        method, params = "eval", {"script": args.script}
    elif args.command == "screenshot":
        method, params = "screenshot", {"selectors": list(args.selectors)}
    else:
        if args.file is not None:
            try:
                data_url = file_data_url(args.file)
            except OSError as exc:
                sys.stderr.write(f"error: cannot read {args.file}: {exc}\n")
                return 2
        else:
            data_url = args.data
            if not data_url.startswith("data:"):
                sys.stderr.write("error: --data must be a data URL (data:...)\n")
                return 2
        method, params = "paste", {"selector": args.selector, "dataUrl": data_url}

    try:
        result = asyncio.run(
            call_agent(
                config.controller_host,
                config.controller_port,
                channel,
                method,
                params,
                timeout=config.call_timeout,
            )
        )
    except RelayError as exc:
        sys.stderr.write(f"error: {exc}\n")
        return 1

    if method == "screenshot":
        if result.get("error"):
            sys.stderr.write(f"error: {result['error']}\n")
            return 1
        for path in save_screenshots(result, Path(args.out)):
            sys.stdout.write(f"{path}\n")
        return 0

    _print_json(result)
    if method == "eval":
        return 1 if result.get("isException") else 0
    return 0 if result.get("success") else 1


if __name__ == "__main__":
    sys.exit(main())
