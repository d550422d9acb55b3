from __future__ import annotations

from dataclasses import MISSING, field
from dataclasses import fields as dataclass_fields
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from .io import ReadingContext, WritingContext

T = TypeVar("T")

_ZERO_VALUES = {int: 0, bytes: b""}


def record(cls: T) -> T:
    """
    Automatically add read_fields, write_fields and wire layout helpers to a dataclass
    """

    def wire_fields(cls):
        return [
            f
            for f in dataclass_fields(cls)
            if f.metadata is not None and "wire_bytes" in f.metadata
        ]

    def wire_size(cls) -> int:
        return sum(f.metadata["wire_bytes"] for f in wire_fields(cls))

    def wire_offset(cls, name: str) -> int:
        offset = 0
        for f in wire_fields(cls):
            if f.name == name:
                return offset
            offset += f.metadata["wire_bytes"]
        raise KeyError(f"{cls.__name__} has no wire field '{name}'")

    def read_fields(cls, context: ReadingContext) -> dict[str, Any]:
        field_values = {}
        for current_field in wire_fields(cls):
            byte_len = current_field.metadata["wire_bytes"]
            kind = current_field.metadata["wire_kind"]
            if kind is int:
                field_values[current_field.name] = context.read_uint(byte_len)
            elif kind is bytes:
                field_values[current_field.name] = context.read_bytes(byte_len)
            else:
                raise TypeError(
                    f"Unsupported field kind: {repr(kind)} for field "
                    f"'{current_field.name}' in {cls.__name__}"
                )
        return field_values

    def write_fields(self, context: WritingContext):
        for f in wire_fields(type(self)):
            byte_len = f.metadata["wire_bytes"]
            value = getattr(self, f.name)
            if isinstance(value, int):
                context.write_uint(value, byte_len)
            elif isinstance(value, bytes):
                if len(value) != byte_len:
                    raise ValueError(
                        f"Field '{f.name}' must be {byte_len} bytes, got {len(value)}"
                    )
                context.write_bytes(value)
            else:
                raise TypeError(f"Unsupported field type: {f.type}")

    setattr(cls, "wire_fields", classmethod(wire_fields))
    setattr(cls, "wire_size", classmethod(wire_size))
    setattr(cls, "wire_offset", classmethod(wire_offset))
    setattr(cls, "read_fields", classmethod(read_fields))
    setattr(cls, "write_fields", write_fields)
    return cls


def fid(
    byte_len: int = 4,
    kind: type = int,
    default: Any = MISSING,
    repr: bool = True,
):
    """
    :param byte_len: The width of the field on disk
    :param kind: int (unsigned, stream endianness) or bytes (raw)
    :param default: The default value of the field, the zero value of `kind` if omitted
    """
    if kind not in _ZERO_VALUES:
        raise ValueError(f"Unsupported field kind {kind}")
    if default is MISSING:
        default = _ZERO_VALUES[kind]
    return field(
        metadata={"wire_bytes": byte_len, "wire_kind": kind},
        default=default,
        repr=repr,
    )
