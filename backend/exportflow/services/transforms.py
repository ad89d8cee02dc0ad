"""Per-file transforms: source wire format bytes in, destination bytes out.

A transform exposes ``transform(raw: bytes) -> bytes``, sync or async, and
raises TransformFailure for input it cannot convert. Output must be a pure
function of the input so a repeated attempt overwrites with identical bytes.
"""

from __future__ import annotations

import asyncio
import base64
import gzip
import inspect
import json
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Iterable, Iterator, Protocol, Sequence, Union

from boto3.dynamodb.types import Binary, TypeDeserializer

from exportflow.core.errors import TransformFailure

_GZIP_MAGIC = b"\x1f\x8b"

OP_UPSERT = "upsert"
OP_DELETE = "delete"


class Transform(Protocol):
    def transform(self, raw: bytes) -> Union[bytes, Awaitable[bytes]]: ...


async def run_transform(transform: Transform, raw: bytes) -> bytes:
    """Invoke a transform; sync implementations run in a worker thread."""
    fn = transform.transform
    if inspect.iscoroutinefunction(fn):
        return await fn(raw)
    result = await asyncio.to_thread(fn, raw)
    if inspect.isawaitable(result):
        result = await result
    return result


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=lambda v: (str(type(v)), str(v)))
    if isinstance(value, Binary):
        return base64.b64encode(value.value).decode("ascii")
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dumps_line(record: dict[str, Any]) -> str:
    return json.dumps(record, default=_json_default, sort_keys=True, separators=(",", ":"))


def _decode_text(raw: bytes) -> str:
    if raw[:2] == _GZIP_MAGIC:
        try:
            raw = gzip.decompress(raw)
        except (OSError, EOFError) as exc:
            raise TransformFailure(f"Corrupt gzip payload: {exc}") from exc
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise TransformFailure(f"Payload is not UTF-8: {exc}") from exc


def _decode_binary(value: Any) -> Any:
    # Export files carry binary attributes base64-encoded; the deserializer wants bytes.
    if not isinstance(value, dict) or len(value) != 1:
        return value
    ((tag, inner),) = value.items()
    if tag == "B" and isinstance(inner, str):
        return {"B": base64.b64decode(inner, validate=True)}
    if tag == "BS" and isinstance(inner, list):
        return {"BS": [base64.b64decode(v, validate=True) if isinstance(v, str) else v for v in inner]}
    if tag == "M" and isinstance(inner, dict):
        return {"M": {k: _decode_binary(v) for k, v in inner.items()}}
    if tag == "L" and isinstance(inner, list):
        return {"L": [_decode_binary(v) for v in inner]}
    return value


def _iter_json_lines(raw: bytes) -> Iterator[tuple[int, dict[str, Any]]]:
    for lineno, line in enumerate(_decode_text(raw).splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except ValueError as exc:
            raise TransformFailure(f"Malformed JSON on line {lineno}", line=lineno) from exc
        if not isinstance(obj, dict):
            raise TransformFailure(f"Expected a JSON object on line {lineno}", line=lineno)
        yield lineno, obj


class DynamoJsonTransform:
    """DynamoDB JSON export lines -> newline-delimited plain JSON.

    Full exports carry ``{"Item": {...}}`` lines; incremental exports carry
    ``Keys`` plus ``NewImage`` (absent for deletes) and optionally ``OldImage``.
    Each output line is the plain item with ``_op`` set to upsert or delete.
    """

    def __init__(self) -> None:
        self._deserializer = TypeDeserializer()

    def _plain(self, image: Any, lineno: int) -> dict[str, Any]:
        if not isinstance(image, dict):
            raise TransformFailure(f"Expected an attribute map on line {lineno}", line=lineno)
        try:
            return {
                k: self._deserializer.deserialize(_decode_binary(v)) for k, v in image.items()
            }
        except (TypeError, ValueError, AttributeError, InvalidOperation) as exc:
            raise TransformFailure(
                f"Unreadable typed attribute on line {lineno}: {exc}", line=lineno
            ) from exc

    def records(self, raw: bytes) -> Iterator[dict[str, Any]]:
        for lineno, obj in _iter_json_lines(raw):
            if "Item" in obj:
                record = self._plain(obj["Item"], lineno)
                record["_op"] = OP_UPSERT
            elif "NewImage" in obj:
                record = self._plain(obj["NewImage"], lineno)
                record["_op"] = OP_UPSERT
            elif "Keys" in obj:
                record = self._plain(obj["Keys"], lineno)
                record["_op"] = OP_DELETE
            else:
                raise TransformFailure(
                    f"Line {lineno} has no Item, NewImage or Keys", line=lineno
                )

            write_time = (obj.get("Metadata") or {}).get("WriteTimeMicros")
            if write_time is not None:
                record["_write_time_micros"] = write_time
            yield record

    def transform(self, raw: bytes) -> bytes:
        lines = [dumps_line(r) for r in self.records(raw)]
        return ("\n".join(lines) + "\n").encode("utf-8") if lines else b""


class ProjectionTransform:
    """Schema-aware projection over DynamoJsonTransform output.

    Key fields are kept on every record; required fields must be present on
    upserts; optional fields are kept when present. Everything else is dropped.
    """

    def __init__(
        self,
        *,
        key_fields: Sequence[str],
        required_fields: Iterable[str] = (),
        optional_fields: Iterable[str] = (),
    ) -> None:
        if not key_fields:
            raise ValueError("key_fields must not be empty")
        self.key_fields = tuple(key_fields)
        self.required_fields = tuple(required_fields)
        self.optional_fields = tuple(optional_fields)
        self._source = DynamoJsonTransform()

    def _project(self, record: dict[str, Any], index: int) -> dict[str, Any]:
        op = record.get("_op", OP_UPSERT)
        needed = self.key_fields if op == OP_DELETE else self.key_fields + self.required_fields
        missing = [f for f in needed if f not in record]
        if missing:
            raise TransformFailure(
                f"Record {index} is missing required fields: {', '.join(missing)}",
                record=index,
                missing=missing,
            )

        out: dict[str, Any] = {"_op": op}
        for name in self.key_fields + self.required_fields + self.optional_fields:
            if name in record:
                out[name] = record[name]
        if "_write_time_micros" in record:
            out["_write_time_micros"] = record["_write_time_micros"]
        return out

    def transform(self, raw: bytes) -> bytes:
        lines = [
            dumps_line(self._project(r, i))
            for i, r in enumerate(self._source.records(raw), start=1)
        ]
        return ("\n".join(lines) + "\n").encode("utf-8") if lines else b""
