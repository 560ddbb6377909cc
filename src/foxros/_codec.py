"""
foxros._codec — Per-session cache of message readers and writers.

A reader turns the raw payload of a ``message`` or service response into a
decoded message object; a writer turns a dict (or any object with matching
attributes) into payload bytes. Both are generated from the schema text the
server advertised, by the ROS serialization libraries:

- CDR sessions (ROS 2): ``mcap-ros2-support`` (``generate_dynamic`` /
  ``serialize_dynamic``), ``ros2msg`` schemas.
- CDR sessions with ``ros2idl`` schemas: ``rosbags`` (``get_types_from_idl``
  and its CDR serializer on a private type store).
- ROS 1 sessions: ``mcap-ros1-support`` (vendored ``genpy`` dynamic classes).

The variant is fixed once per session from ``serverInfo`` and never
re-evaluated per call. Codecs are built lazily on first use, never evicted,
and a schema that fails to build leaves no cache entry behind.
"""

from __future__ import annotations

from io import BytesIO
import logging
import re
from typing import TYPE_CHECKING, Any

from mcap_ros2._dynamic import generate_dynamic, serialize_dynamic

from .const import SCHEMA_ENCODING_ROS2IDL
from .exceptions import FoxRosCodecError, FoxRosSchemaError

if TYPE_CHECKING:
    from collections.abc import Callable

    Reader = Callable[[bytes], Any]
    Writer = Callable[[Any], bytes]

logger = logging.getLogger(__name__)

_ARRAY_RE = re.compile(r"^(.+)\[(\d*)\]$")
_IDL_SEPARATOR_RE = re.compile(r"^={80}\s*$", re.MULTILINE)
_IDL_DTYPES = {
    "bool": "bool",
    "byte": "uint8",
    "octet": "uint8",
    "char": "uint8",
    "int8": "int8",
    "uint8": "uint8",
    "int16": "int16",
    "uint16": "uint16",
    "int32": "int32",
    "uint32": "uint32",
    "int64": "int64",
    "uint64": "uint64",
    "float32": "float32",
    "float64": "float64",
}


def schema_key(schema_name: str, schema_encoding: str | None = None) -> str:
    """Cache key for a schema: its name plus its schema encoding."""
    return f"{schema_name}|{schema_encoding or ''}"


class CodecCache:
    """
    Memoized readers and writers, one of each per schema key.

    Args:
        legacy: ``True`` for a ROS 1 session, ``False`` for CDR.
    """

    def __init__(self, legacy: bool = False) -> None:
        self._legacy = legacy
        self._readers: dict[str, Reader] = {}
        self._writers: dict[str, Writer] = {}

    @property
    def legacy(self) -> bool:
        """True if this cache builds ROS 1 codecs."""
        return self._legacy

    def __len__(self) -> int:
        return len(self._readers) + len(self._writers)

    def clear(self) -> None:
        self._readers.clear()
        self._writers.clear()

    def get_reader(self, schema_name: str, schema: str, schema_encoding: str | None = None) -> Reader:
        """
        Return the reader for *schema_name*, building it on first use.

        Raises:
            FoxRosSchemaError: If the schema cannot be parsed.
        """
        key = schema_key(schema_name, schema_encoding)
        reader = self._readers.get(key)
        if reader is None:
            reader = self._build(schema_name, schema, schema_encoding, writer=False)
            self._readers[key] = reader
        return reader

    def get_writer(self, schema_name: str, schema: str, schema_encoding: str | None = None) -> Writer:
        """
        Return the writer for *schema_name*, building it on first use.

        Raises:
            FoxRosSchemaError: If the schema cannot be parsed.
        """
        key = schema_key(schema_name, schema_encoding)
        writer = self._writers.get(key)
        if writer is None:
            writer = self._build(schema_name, schema, schema_encoding, writer=True)
            self._writers[key] = writer
        return writer

    def decode(self, reader: Reader, data: bytes) -> Any:
        """Run *reader*, wrapping library failures in :exc:`FoxRosCodecError`."""
        try:
            return reader(data)
        except Exception as exc:
            raise FoxRosCodecError(f"failed to decode {len(data)} byte payload: {exc}") from exc

    def encode(self, writer: Writer, message: Any) -> bytes:
        """Run *writer*, wrapping library failures in :exc:`FoxRosCodecError`."""
        try:
            return bytes(writer(message))
        except Exception as exc:
            raise FoxRosCodecError(f"failed to encode message: {exc}") from exc

    # ------------------------------------------------------------------
    # Builders
    # ------------------------------------------------------------------

    def _build(
        self, schema_name: str, schema: str, schema_encoding: str | None, writer: bool
    ) -> Callable[[Any], Any]:
        try:
            if self._legacy:
                codec = _build_ros1(schema_name, schema, writer)
            elif schema_encoding == SCHEMA_ENCODING_ROS2IDL:
                codec = _build_idl(schema_name, schema, writer)
            else:
                codec = _build_cdr(schema_name, schema, writer)
        except FoxRosSchemaError:
            raise
        except Exception as exc:
            raise FoxRosSchemaError(schema_name, f"bad schema {schema_name!r}: {exc}") from exc
        logger.debug(
            "Built %s %s for %s", "ros1" if self._legacy else "cdr", "writer" if writer else "reader", schema_name
        )
        return codec


def _build_cdr(schema_name: str, schema: str, writer: bool) -> Callable[[Any], Any]:
    table = serialize_dynamic(schema_name, schema) if writer else generate_dynamic(schema_name, schema)
    try:
        return table[schema_name]
    except KeyError as exc:
        raise FoxRosSchemaError(schema_name, f"schema does not define {schema_name!r}") from exc


def _build_ros1(schema_name: str, schema: str, writer: bool) -> Callable[[Any], Any]:
    from mcap_ros1._vendor.genpy import dynamic  # noqa: PLC0415

    classes = dynamic.generate_dynamic(schema_name, schema)
    msg_cls = classes.get(schema_name)
    if msg_cls is None:
        raise FoxRosSchemaError(schema_name, f"schema does not define {schema_name!r}")

    if not writer:

        def read(data: bytes) -> Any:
            return msg_cls().deserialize(bytes(data))

        return read

    def write(message: Any) -> bytes:
        if isinstance(message, dict):
            message = _ros1_message(classes, msg_cls, message)
        buff = BytesIO()
        message.serialize(buff)
        return buff.getvalue()

    return write


def _build_idl(schema_name: str, schema: str, writer: bool) -> Callable[[Any], Any]:
    from rosbags.typesys import Stores, get_types_from_idl, get_typestore  # noqa: PLC0415

    fielddefs: dict[str, Any] = {}
    for chunk in _IDL_SEPARATOR_RE.split(schema):
        text = "\n".join(line for line in chunk.splitlines() if not line.startswith("IDL: "))
        if text.strip():
            fielddefs.update(get_types_from_idl(text))
    if schema_name not in fielddefs:
        raise FoxRosSchemaError(schema_name, f"schema does not define {schema_name!r}")
    typestore = get_typestore(Stores.EMPTY)
    typestore.register(fielddefs)

    if not writer:

        def read(data: bytes) -> Any:
            return typestore.deserialize_cdr(bytes(data), schema_name)

        return read

    def write(message: Any) -> bytes:
        message = _idl_message(typestore, fielddefs, schema_name, message)
        return bytes(typestore.serialize_cdr(message, schema_name))

    return write


# ---------------------------------------------------------------------------
# ros2idl: dict → rosbags message
# ---------------------------------------------------------------------------


def _idl_message(typestore: Any, fielddefs: dict[str, Any], type_name: str, values: Any) -> Any:
    if not isinstance(values, dict):
        return values
    _, fields = fielddefs[type_name]
    kwargs = {name: _idl_value(typestore, fielddefs, desc, values.get(name)) for name, desc in fields}
    return typestore.types[type_name](**kwargs)


def _idl_base_name(detail: Any) -> str:
    # Older rosbags releases give the bare type name, newer ones (name, bound).
    return detail[0] if isinstance(detail, tuple) else detail


def _idl_value(typestore: Any, fielddefs: dict[str, Any], desc: Any, value: Any) -> Any:
    import numpy as np  # noqa: PLC0415
    from rosbags.interfaces import Nodetype  # noqa: PLC0415

    kind, detail = desc
    if kind == Nodetype.BASE:
        if value is not None:
            return value
        base = _idl_base_name(detail)
        if base == "string":
            return ""
        if base == "bool":
            return False
        return 0.0 if base.startswith("float") else 0
    if kind == Nodetype.NAME:
        return _idl_message(typestore, fielddefs, detail, value if value is not None else {})

    item_desc, count = detail
    if value is None:
        value = [None] * count if kind == Nodetype.ARRAY else []
    item_kind, item_detail = item_desc
    dtype = _IDL_DTYPES.get(_idl_base_name(item_detail)) if item_kind == Nodetype.BASE else None
    if dtype is None:
        return [_idl_value(typestore, fielddefs, item_desc, item) for item in value]
    if isinstance(value, (bytes, bytearray, memoryview)):
        return np.frombuffer(bytes(value), dtype=dtype).copy()
    return np.array([0 if item is None else item for item in value], dtype=dtype)


# ---------------------------------------------------------------------------
# ROS 1: dict → genpy message
# ---------------------------------------------------------------------------


def _ros1_class(classes: dict[str, Any], type_name: str) -> Any:
    if type_name in classes:
        return classes[type_name]
    if type_name == "Header":
        return classes.get("std_msgs/Header")
    suffix = "/" + type_name
    for name, cls in classes.items():
        if name.endswith(suffix):
            return cls
    return None


def _ros1_message(classes: dict[str, Any], msg_cls: Any, values: dict[str, Any]) -> Any:
    kwargs = {
        slot: _ros1_value(classes, slot_type, values[slot])
        for slot, slot_type in zip(msg_cls.__slots__, msg_cls._slot_types)
        if slot in values
    }
    return msg_cls(**kwargs)


def _ros1_value(classes: dict[str, Any], slot_type: str, value: Any) -> Any:
    match = _ARRAY_RE.match(slot_type)
    if match:
        base = match.group(1)
        if base in ("uint8", "char") and isinstance(value, (bytes, bytearray)):
            return bytes(value)
        return [_ros1_value(classes, base, v) for v in value]
    if slot_type in ("time", "duration") and isinstance(value, dict):
        from mcap_ros1._vendor.genpy.rostime import Duration, Time  # noqa: PLC0415

        stamp_cls = Time if slot_type == "time" else Duration
        secs = value.get("secs", value.get("sec", 0))
        nsecs = value.get("nsecs", value.get("nsec", value.get("nanosec", 0)))
        return stamp_cls(secs, nsecs)
    if isinstance(value, dict):
        nested = _ros1_class(classes, slot_type)
        if nested is not None:
            return _ros1_message(classes, nested, value)
    return value


# ---------------------------------------------------------------------------
# Decoded message → plain dict
# ---------------------------------------------------------------------------


def _slots(obj: Any) -> list[str]:
    names: list[str] = []
    for klass in type(obj).__mro__:
        for name in getattr(klass, "__slots__", ()):
            if not name.startswith("_") and name not in names:
                names.append(name)
    return names


def to_dict(message: Any) -> Any:
    """
    Recursively convert a decoded message into plain dicts and lists.

    Works for the dynamic classes of both codec libraries (slot-based), for
    plain objects, and passes primitives through. Byte arrays become lists of
    ints so the result is JSON-serialisable.

    Example::

        msg = await service.call({"data": True})
        print(json.dumps(to_dict(msg)))
    """
    if isinstance(message, (str, int, float, bool)) or message is None:
        return message
    if isinstance(message, (bytes, bytearray, memoryview)):
        return list(bytes(message))
    if isinstance(message, dict):
        return {k: to_dict(v) for k, v in message.items()}
    if isinstance(message, (list, tuple)):
        return [to_dict(v) for v in message]
    if hasattr(message, "tolist"):
        return message.tolist()
    slots = _slots(message)
    if slots:
        return {name: to_dict(getattr(message, name)) for name in slots}
    if hasattr(message, "__dict__"):
        return {k: to_dict(v) for k, v in vars(message).items() if not k.startswith("_")}
    return message
