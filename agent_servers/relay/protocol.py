"""Wire protocol for the tab automation relay.

Two families of frames travel through the relay:

- Control-link frames (controller <-> executor): commands and their results.
- Bridge-channel messages (supervisor <-> executor): link control, link status,
  inbound frame delivery and tab-capture round-trips.

All frames are flat JSON objects discriminated by `type`.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union

from .errors import MalformedCommandError

# Commands (controller -> executor)
EVALUATE_SCRIPT = "EVALUATE_SCRIPT"
CAPTURE_ELEMENTS_SCREENSHOT = "CAPTURE_ELEMENTS_SCREENSHOT"
PASTE_DATA = "PASTE_DATA"

# Results (executor -> controller)
EVALUATION_RESULT = "EVALUATION_RESULT"
ELEMENTS_SCREENSHOT_RESULT = "ELEMENTS_SCREENSHOT_RESULT"
PASTE_RESULT = "PASTE_RESULT"

RESULT_TYPES = frozenset({EVALUATION_RESULT, ELEMENTS_SCREENSHOT_RESULT, PASTE_RESULT})

UNKNOWN_REQUEST_ID = "unknown"

# Echoed back exactly as received: a JSON string or integer.
RequestId = Union[str, int]

# Bridge channel: executor -> supervisor
CONNECT = "CONNECT"
DISCONNECT = "DISCONNECT"
FORWARD = "FORWARD"
REQUEST_TAB_CAPTURE = "REQUEST_TAB_CAPTURE"

# Bridge channel: supervisor -> executor
LINK_STATUS = "LINK_STATUS"
LINK_MESSAGE = "LINK_MESSAGE"
TAB_CAPTURE_COMPLETE = "TAB_CAPTURE_COMPLETE"

STATUS_CONNECTED = "Connected"
STATUS_DISCONNECTED = "Disconnected"
STATUS_NOT_CONNECTED = "Not Connected or different connection"
STATUS_TAB_REMOVED = "Tab removed"
STATUS_ERROR_PREFIX = "Error:"


def error_status(reason: str | None) -> str:
    return f"{STATUS_ERROR_PREFIX} {reason or 'Connection failed'}"


def is_failure_status(status: str) -> bool:
    """True for statuses that make an automatic reconnect eligible."""
    return status == STATUS_DISCONNECTED or status.startswith(STATUS_ERROR_PREFIX)


@dataclass(frozen=True)
class EvaluateScript:
    request_id: RequestId
    script: str


@dataclass(frozen=True)
class CaptureElementsScreenshot:
    request_id: RequestId
    selectors: tuple[str, ...]


@dataclass(frozen=True)
class PasteData:
    request_id: RequestId
    selector: str
    data_url: str


Command = Union[EvaluateScript, CaptureElementsScreenshot, PasteData]


def _request_id(frame: dict[str, Any]) -> RequestId | None:
    raw = frame.get("requestId")
    if isinstance(raw, str) and raw:
        return raw
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    return None


def parse_command(frame: Any) -> Command:
    """Validate an inbound frame and turn it into a Command.

    Raises MalformedCommandError; `result_type` on the error is None when the
    frame is not one of the known commands.
    """
    if not isinstance(frame, dict):
        raise MalformedCommandError(f"command frame must be an object, got {type(frame).__name__}")

    ctype = frame.get("type")
    request_id = _request_id(frame)

    if ctype == EVALUATE_SCRIPT:
        script = frame.get("script")
        if request_id is None or not isinstance(script, str):
            raise MalformedCommandError(
                "Invalid EVALUATE_SCRIPT request structure (requires requestId and a string script)",
                request_id=request_id,
                result_type=EVALUATION_RESULT,
            )
        return EvaluateScript(request_id=request_id, script=script)

    if ctype == CAPTURE_ELEMENTS_SCREENSHOT:
        selectors = frame.get("selectors")
        valid = (
            isinstance(selectors, list)
            and len(selectors) > 0
            and all(isinstance(s, str) and s.strip() for s in selectors)
        )
        if request_id is None or not valid:
            raise MalformedCommandError(
                "Invalid CAPTURE_ELEMENTS_SCREENSHOT request structure or empty selectors",
                request_id=request_id,
                result_type=ELEMENTS_SCREENSHOT_RESULT,
            )
        return CaptureElementsScreenshot(request_id=request_id, selectors=tuple(selectors))

    if ctype == PASTE_DATA:
        selector = frame.get("selector")
        data_url = frame.get("dataUrl")
        valid = isinstance(selector, str) and bool(selector) and isinstance(data_url, str) and bool(data_url)
        if request_id is None or not valid:
            raise MalformedCommandError(
                "Invalid PASTE_DATA request structure (missing requestId, selector, or dataUrl)",
                request_id=request_id,
                result_type=PASTE_RESULT,
            )
        return PasteData(request_id=request_id, selector=selector, data_url=data_url)

    raise MalformedCommandError(f"unhandled command type: {ctype!r}", request_id=request_id)


# ─────────────────────────────────────────────────────────────────────────────
# Result builders
# ─────────────────────────────────────────────────────────────────────────────


def evaluation_result(request_id: RequestId, result: Any = None, *, exception_info: str | None = None) -> dict[str, Any]:
    return {
        "type": EVALUATION_RESULT,
        "requestId": request_id,
        "result": result,
        "isException": exception_info is not None,
        "exceptionInfo": exception_info,
    }


def screenshot_result(
    request_id: RequestId,
    image_data: dict[str, str | None] | None = None,
    *,
    error: str | None = None,
) -> dict[str, Any]:
    return {
        "type": ELEMENTS_SCREENSHOT_RESULT,
        "requestId": request_id,
        "imageData": dict(image_data or {}),
        "error": error,
    }


def paste_result(
    request_id: RequestId,
    *,
    success: bool,
    message: str | None = None,
    error: str | None = None,
) -> dict[str, Any]:
    return {
        "type": PASTE_RESULT,
        "requestId": request_id,
        "success": bool(success),
        "message": message,
        "error": error,
    }


def malformed_result(exc: MalformedCommandError) -> dict[str, Any] | None:
    """Structural-error result for a malformed command, or None for unknown types."""
    request_id = UNKNOWN_REQUEST_ID if exc.request_id is None else exc.request_id
    if exc.result_type == EVALUATION_RESULT:
        return evaluation_result(request_id, exception_info=str(exc))
    if exc.result_type == ELEMENTS_SCREENSHOT_RESULT:
        return screenshot_result(request_id, error=str(exc))
    if exc.result_type == PASTE_RESULT:
        return paste_result(request_id, success=False, error=str(exc))
    return None


def describe_exception(info: Any) -> str:
    """Best-effort string for a host exception descriptor."""
    if isinstance(info, dict):
        description = info.get("description")
        if isinstance(description, str) and description:
            return description
        if info.get("value") is not None:
            return str(info["value"])
        text = info.get("text")
        if isinstance(text, str) and text:
            return text
        try:
            return json.dumps(info, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return str(info)
    return str(info)


# ─────────────────────────────────────────────────────────────────────────────
# Bridge channel messages
# ─────────────────────────────────────────────────────────────────────────────


def link_status(status: str, channel_name: str | None, **extra: Any) -> dict[str, Any]:
    msg: dict[str, Any] = {"type": LINK_STATUS, "status": status, "channelName": channel_name}
    for key, value in extra.items():
        if value is not None:
            msg[key] = value
    return msg


def link_message(data: Any) -> dict[str, Any]:
    return {"type": LINK_MESSAGE, "data": data}


def capture_complete(request_id: RequestId, *, data_url: str | None = None, error: str | None = None) -> dict[str, Any]:
    return {"type": TAB_CAPTURE_COMPLETE, "requestId": request_id, "dataUrl": data_url, "error": error}


__all__ = [
    "CAPTURE_ELEMENTS_SCREENSHOT",
    "CONNECT",
    "CaptureElementsScreenshot",
    "Command",
    "DISCONNECT",
    "ELEMENTS_SCREENSHOT_RESULT",
    "EVALUATE_SCRIPT",
    "EVALUATION_RESULT",
    "EvaluateScript",
    "FORWARD",
    "LINK_MESSAGE",
    "LINK_STATUS",
    "PASTE_DATA",
    "PASTE_RESULT",
    "PasteData",
    "REQUEST_TAB_CAPTURE",
    "RESULT_TYPES",
    "RequestId",
    "STATUS_CONNECTED",
    "STATUS_DISCONNECTED",
    "STATUS_NOT_CONNECTED",
    "STATUS_TAB_REMOVED",
    "TAB_CAPTURE_COMPLETE",
    "UNKNOWN_REQUEST_ID",
    "capture_complete",
    "describe_exception",
    "error_status",
    "evaluation_result",
    "is_failure_status",
    "link_message",
    "link_status",
    "malformed_result",
    "paste_result",
    "parse_command",
    "screenshot_result",
]
