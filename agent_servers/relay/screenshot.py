"""Element screenshots: measure in-page, capture the surface, crop with Pillow."""

from __future__ import annotations

import asyncio
import base64
import binascii
import io
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from PIL import Image, UnidentifiedImageError

from .errors import CaptureError, ChannelDetachedError, PendingTimeoutError, RelayError
from .host import PageEvaluator
from .protocol import CaptureElementsScreenshot, RequestId, describe_exception, screenshot_result

_LOGGER = logging.getLogger("agent.relay.screenshot")

DECODE_FAILED = "Failed to load main screenshot image for cropping."

CaptureRequester = Callable[[RequestId], Awaitable[str]]


class MeasureError(RelayError):
    """The in-page measurement script failed."""


def build_measure_script(selectors: Iterable[str]) -> str:
    """In-page script: selector -> bounding rect + devicePixelRatio, or null."""
    return (
        "(() => {\n"
        f"  const selectors = {json.dumps(list(selectors), ensure_ascii=False)};\n"
        "  const results = {};\n"
        "  const dpr = window.devicePixelRatio || 1;\n"
        "  for (const selector of selectors) {\n"
        "    let element = null;\n"
        "    try { element = document.querySelector(selector); } catch (e) { element = null; }\n"
        "    if (!element) { results[selector] = null; continue; }\n"
        "    const rect = element.getBoundingClientRect();\n"
        "    results[selector] = {\n"
        "      x: rect.x, y: rect.y, width: rect.width, height: rect.height,\n"
        "      top: rect.top, left: rect.left, devicePixelRatio: dpr\n"
        "    };\n"
        "  }\n"
        "  return results;\n"
        "})()"
    )


def _num(raw: dict[str, Any], key: str, default: float = 0.0) -> float:
    value = raw.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


@dataclass(frozen=True)
class ElementRect:
    x: float
    y: float
    width: float
    height: float
    top: float
    left: float
    pixel_ratio: float = 1.0

    @classmethod
    def from_page(cls, raw: Any) -> ElementRect | None:
        if not isinstance(raw, dict):
            return None
        dpr = _num(raw, "devicePixelRatio", 1.0)
        return cls(
            x=_num(raw, "x"),
            y=_num(raw, "y"),
            width=_num(raw, "width"),
            height=_num(raw, "height"),
            top=_num(raw, "top"),
            left=_num(raw, "left"),
            pixel_ratio=dpr if dpr > 0 else 1.0,
        )

    def crop_box(self) -> tuple[int, int, int, int]:
        """(left, upper, right, lower) in device pixels."""
        dpr = self.pixel_ratio
        left = round(self.left * dpr)
        top = round(self.top * dpr)
        return left, top, left + round(self.width * dpr), top + round(self.height * dpr)

    @property
    def has_area(self) -> bool:
        if self.width <= 0 or self.height <= 0:
            return False
        left, top, right, bottom = self.crop_box()
        return right > left and bottom > top


def decode_data_url(data_url: str) -> bytes:
    if not isinstance(data_url, str) or not data_url.startswith("data:") or "," not in data_url:
        raise CaptureError(DECODE_FAILED)
    header, payload = data_url.split(",", 1)
    if not header.endswith(";base64"):
        raise CaptureError(DECODE_FAILED)
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CaptureError(DECODE_FAILED) from exc


def encode_png(image: Image.Image) -> str:
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def crop_elements(data_url: str, rects: dict[str, ElementRect | None]) -> dict[str, str | None]:
    """Crop each measured element out of one captured surface.

    The surface is decoded once. Missing or zero-area rects map to None.
    Raises CaptureError when the surface cannot be decoded.
    """
    raw = decode_data_url(data_url)
    try:
        with Image.open(io.BytesIO(raw)) as opened:
            surface = opened.convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise CaptureError(DECODE_FAILED) from exc

    out: dict[str, str | None] = {}
    for selector, rect in rects.items():
        if rect is None or not rect.has_area:
            out[selector] = None
            continue
        out[selector] = encode_png(surface.crop(rect.crop_box()))
    return out


class ScreenshotPipeline:
    def __init__(self, evaluator: PageEvaluator, request_capture: CaptureRequester) -> None:
        self._evaluator = evaluator
        self._request_capture = request_capture

    async def measure(self, selectors: Iterable[str]) -> dict[str, ElementRect | None]:
        selectors = list(selectors)
        try:
            value, exc_info = await self._evaluator.evaluate(build_measure_script(selectors))
        except Exception as exc:  # noqa: BLE001
            raise MeasureError(str(exc) or type(exc).__name__) from exc
        if exc_info is not None:
            raise MeasureError(describe_exception(exc_info))
        if not isinstance(value, dict):
            raise MeasureError("Failed to retrieve element data from page.")
        return {sel: ElementRect.from_page(value.get(sel)) for sel in selectors}

    async def run(self, cmd: CaptureElementsScreenshot) -> dict[str, Any] | None:
        """Build the ELEMENTS_SCREENSHOT_RESULT for `cmd`.

        Returns None when the bridge channel went away while the capture was
        outstanding; nothing can be delivered in that case.
        """
        rid = cmd.request_id
        try:
            rects = await self.measure(cmd.selectors)
        except MeasureError as exc:
            _LOGGER.warning("screenshot %s: measurement failed: %s", rid, exc)
            return screenshot_result(rid, error=str(exc))

        try:
            data_url = await self._request_capture(rid)
        except ChannelDetachedError:
            _LOGGER.info("screenshot %s: bridge channel detached during capture", rid)
            return None
        except (CaptureError, PendingTimeoutError) as exc:
            _LOGGER.warning("screenshot %s: capture failed: %s", rid, exc)
            return screenshot_result(rid, error=str(exc))

        try:
            image_data = await asyncio.to_thread(crop_elements, data_url, rects)
        except CaptureError as exc:
            return screenshot_result(rid, error=str(exc))
        _LOGGER.debug("screenshot %s: %d element(s) processed", rid, len(image_data))
        return screenshot_result(rid, image_data)


__all__ = [
    "DECODE_FAILED",
    "ElementRect",
    "MeasureError",
    "ScreenshotPipeline",
    "build_measure_script",
    "crop_elements",
    "decode_data_url",
    "encode_png",
]
