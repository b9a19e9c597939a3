"""
Skypack wire codec.

Requests and responses are MessagePack maps with named fields:

Record    Key     Type          Description
------    ---     ----          -----------
request   req     uint32        Request kind
request   id      uint64        Correlation id
request   data    any           Payload (key omitted when there is none)
response  req     uint32        Request kind being answered
response  id      uint64        Correlation id being answered
response  res     int32         Status, 0 = success
response  data    any/nil       Payload (key may be absent)

Responses packed as a positional array ``[req, id, res, data?]`` are also
accepted. Payloads are open structured values (maps, arrays, scalars).
"""

from dataclasses import dataclass
from typing import Any, Optional

import msgpack
import numpy as np

from .constants import I32_MAX, I32_MIN, U32_MAX, U64_MAX
from .errors import DecodeError, EncodeError, RemoteStatusError

CorrelationKey = tuple[int, int]


@dataclass(frozen=True)
class RequestRecord:
    """An outgoing request. Built per call and consumed by encode()."""

    kind: int
    id: int
    payload: Optional[Any] = None

    @property
    def key(self) -> CorrelationKey:
        return (self.kind, self.id)


@dataclass(frozen=True)
class ResponseRecord:
    """A decoded response from the device."""

    kind: int
    id: int
    status: int
    payload: Optional[Any] = None

    @property
    def key(self) -> CorrelationKey:
        return (self.kind, self.id)

    @property
    def ok(self) -> bool:
        return self.status == 0

    def raise_for_status(self) -> "ResponseRecord":
        """Raise RemoteStatusError if the device reported a failure."""
        if self.status != 0:
            raise RemoteStatusError(self.kind, self.status, self.payload)
        return self


def _to_plain(obj):
    """msgpack ``default`` hook: numpy values become plain Python values."""
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, tuple):
        return list(obj)
    raise TypeError(f"Cannot serialize object of type {type(obj).__name__}")


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def encode(record: RequestRecord) -> bytes:
    """Serialize a request record.

    Raises:
        EncodeError: If kind/id are out of range or the payload is not serializable
    """
    if not _is_int(record.kind) or not 0 <= record.kind <= U32_MAX:
        raise EncodeError(f"Request kind must be a uint32, got {record.kind!r}")
    if not _is_int(record.id) or not 0 <= record.id <= U64_MAX:
        raise EncodeError(f"Request id must be a uint64, got {record.id!r}")

    fields: dict[str, Any] = {"req": record.kind, "id": record.id}
    if record.payload is not None:
        fields["data"] = record.payload

    try:
        return msgpack.packb(fields, default=_to_plain, use_bin_type=True)
    except (TypeError, ValueError, OverflowError) as e:
        raise EncodeError(f"Cannot encode request kind={record.kind}: {e}") from e


def _check_range(name: str, value, low: int, high: int) -> int:
    if not _is_int(value) or not low <= value <= high:
        raise DecodeError(f"Field {name!r} out of range: {value!r}")
    return value


def decode(data: bytes) -> ResponseRecord:
    """Deserialize a response datagram.

    Raises:
        DecodeError: On malformed, truncated or incomplete input
    """
    try:
        obj = msgpack.unpackb(data, raw=False)
    except (ValueError, TypeError, msgpack.UnpackException) as e:
        raise DecodeError(f"Malformed response ({len(data)} bytes): {e}") from e

    if isinstance(obj, dict):
        missing = [k for k in ("req", "id", "res") if k not in obj]
        if missing:
            raise DecodeError(f"Response missing field(s): {', '.join(missing)}")
        kind, msg_id, status, payload = obj["req"], obj["id"], obj["res"], obj.get("data")
    elif isinstance(obj, list) and len(obj) in (3, 4):
        kind, msg_id, status = obj[:3]
        payload = obj[3] if len(obj) == 4 else None
    else:
        raise DecodeError(f"Response is not a record: {type(obj).__name__}")

    return ResponseRecord(
        kind=_check_range("req", kind, 0, U32_MAX),
        id=_check_range("id", msg_id, 0, U64_MAX),
        status=_check_range("res", status, I32_MIN, I32_MAX),
        payload=payload,
    )


def encode_response(record: ResponseRecord) -> bytes:
    """Serialize a response record (device side; used by simulators and tests)."""
    fields = {"req": record.kind, "id": record.id, "res": record.status, "data": record.payload}
    try:
        return msgpack.packb(fields, default=_to_plain, use_bin_type=True)
    except (TypeError, ValueError, OverflowError) as e:
        raise EncodeError(f"Cannot encode response kind={record.kind}: {e}") from e


def decode_request(data: bytes) -> RequestRecord:
    """Deserialize a request datagram (device side; used by simulators and tests)."""
    try:
        obj = msgpack.unpackb(data, raw=False)
    except (ValueError, TypeError, msgpack.UnpackException) as e:
        raise DecodeError(f"Malformed request ({len(data)} bytes): {e}") from e
    if not isinstance(obj, dict) or "req" not in obj or "id" not in obj:
        raise DecodeError("Request is not a record")
    return RequestRecord(
        kind=_check_range("req", obj["req"], 0, U32_MAX),
        id=_check_range("id", obj["id"], 0, U64_MAX),
        payload=obj.get("data"),
    )
