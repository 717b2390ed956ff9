"""Wire protocol messages for the remote browser protocol.

Every frame is a single JSON object. Four shapes exist:

- Request:  {"id", "guid", "method", "params"}
- Response: {"id", "result"} or {"id", "error"}
- Event:    {"guid", "method", "params"}            (no "id")
- Control:  {"op": "CREATE"|"DISPOSE", "guid", "type", "parentGuid"}

Drivers also announce objects with the older method form
{"guid": parent, "method": "__create__", "params": {"type", "guid",
"initializer"}} and {"guid", "method": "__dispose__"}; both forms decode to
WireControl.

This module only converts between JSON text and message dataclasses. It
does not resolve guids to objects - that's the Connection's job.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from browserwire.error import ProtocolError


def is_int_not_bool(x: object) -> bool:
    """Check if x is an int but not a bool.

    bool is a subclass of int, so True/False would otherwise pass as call ids.
    """
    return isinstance(x, int) and not isinstance(x, bool)


class ControlOp(str, Enum):
    """Registry mutations announced by the driver."""

    CREATE = "CREATE"
    DISPOSE = "DISPOSE"


@dataclass(frozen=True, slots=True)
class WireRequest:
    """Request message: {"id", "guid", "method", "params"}"""

    id: int
    guid: str
    method: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        """Convert to JSON object."""
        return {
            "id": self.id,
            "guid": self.guid,
            "method": self.method,
            "params": self.params,
        }


@dataclass(frozen=True, slots=True)
class WireResponse:
    """Response message: {"id", "result"} or {"id", "error"}"""

    id: int
    result: Any = None
    error: dict[str, Any] | None = None

    def to_json(self) -> dict[str, Any]:
        """Convert to JSON object."""
        if self.error is not None:
            return {"id": self.id, "error": self.error}
        return {"id": self.id, "result": self.result}


@dataclass(frozen=True, slots=True)
class WireEvent:
    """Event message: {"guid", "method", "params"}"""

    guid: str
    method: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        """Convert to JSON object."""
        return {"guid": self.guid, "method": self.method, "params": self.params}


@dataclass(frozen=True, slots=True)
class WireControl:
    """Control message: {"op", "guid", "type", "parentGuid", "initializer"?}"""

    op: ControlOp
    guid: str
    type: str | None = None
    parent_guid: str | None = None
    initializer: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        """Convert to JSON object."""
        result: dict[str, Any] = {"op": self.op.value, "guid": self.guid}
        if self.op is ControlOp.CREATE:
            result["type"] = self.type
            result["parentGuid"] = self.parent_guid
            if self.initializer:
                result["initializer"] = self.initializer
        return result


WireMessage = WireRequest | WireResponse | WireEvent | WireControl


def _require_str(obj: dict[str, Any], key: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str):
        raise ProtocolError(
            f"Message field '{key}' must be string, got {type(value).__name__}"
        )
    return value


def _optional_dict(obj: dict[str, Any], key: str) -> dict[str, Any]:
    value = obj.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ProtocolError(
            f"Message field '{key}' must be object, got {type(value).__name__}"
        )
    return value


def _parse_control(obj: dict[str, Any]) -> WireControl:
    op_name = obj.get("op")
    try:
        op = ControlOp(op_name)
    except ValueError:
        raise ProtocolError(f"Unknown control op: {op_name!r}") from None

    guid = _require_str(obj, "guid")
    if op is ControlOp.DISPOSE:
        return WireControl(op, guid)

    parent_guid = obj.get("parentGuid")
    if parent_guid is not None and not isinstance(parent_guid, str):
        raise ProtocolError("Control field 'parentGuid' must be string or null")
    return WireControl(
        op,
        guid,
        type=_require_str(obj, "type"),
        parent_guid=parent_guid,
        initializer=_optional_dict(obj, "initializer"),
    )


def message_from_json(obj: Any) -> WireMessage:  # noqa: C901
    """Build a message dataclass from a decoded JSON value."""
    if not isinstance(obj, dict):
        raise ProtocolError("Wire message must be a JSON object")

    if "op" in obj:
        return _parse_control(obj)

    call_id = obj.get("id")
    if call_id is not None and call_id != 0:
        if not is_int_not_bool(call_id):
            raise ProtocolError(f"Message id must be int, got {type(call_id).__name__}")
        if "method" in obj:
            return WireRequest(
                call_id,
                _require_str(obj, "guid"),
                _require_str(obj, "method"),
                _optional_dict(obj, "params"),
            )
        error = obj.get("error")
        if error is not None and not isinstance(error, dict):
            error = {"message": str(error)}
        return WireResponse(call_id, obj.get("result"), error)

    guid = _require_str(obj, "guid")
    method = _require_str(obj, "method")
    params = _optional_dict(obj, "params")

    match method:
        case "__create__":
            return WireControl(
                ControlOp.CREATE,
                _require_str(params, "guid"),
                type=_require_str(params, "type"),
                parent_guid=guid,
                initializer=_optional_dict(params, "initializer"),
            )
        case "__dispose__":
            return WireControl(ControlOp.DISPOSE, guid)
        case _:
            return WireEvent(guid, method, params)


def parse_message(data: str | bytes) -> WireMessage:
    """Parse a wire message from a JSON frame.

    Raises:
        ProtocolError: If the frame is not valid JSON or has an unknown shape
    """
    try:
        obj = json.loads(data)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Cannot decode frame: {e}") from e
    return message_from_json(obj)


def serialize_message(msg: WireMessage) -> str:
    """Serialize a wire message to a JSON frame."""
    return json.dumps(msg.to_json(), allow_nan=False)
