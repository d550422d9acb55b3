"""
Position-tracking binary reader/writer used by every on-disk structure in machsign

Both contexts keep a stack of saved positions so a structure can jump somewhere
else in the stream (to read section data, or to patch a field it already wrote)
and come back to where it left off.

The writer additionally supports deferred fields: a fixed width placeholder is
emitted now and committed later, once the content it measures has been written.
Work that has to happen after "the rest" of a structure is queued on the current
writing phase; phases nest so an outer structure can finish its own header before
the nested structure's data gets laid out.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from io import BytesIO
from typing import BinaryIO, Callable, Optional

from .exceptions import MalformedRecordError, TruncatedInputError

logger = logging.getLogger(__name__)


class _PositionStack:
    def __init__(self, little_endian: bool = True):
        self.little_endian = little_endian
        self._positions: list[int] = []

    @property
    def position(self) -> int:
        raise NotImplementedError

    @position.setter
    def position(self, value: int):
        raise NotImplementedError

    @property
    def byteorder(self) -> str:
        return "little" if self.little_endian else "big"

    def push_position_and_jump(self, new_offset: int):
        self._positions.append(self.position)
        self.position = new_offset

    def push_position(self):
        self._positions.append(self.position)

    def pop_position(self):
        if not self._positions:
            raise RuntimeError("Position stack underflow")
        self.position = self._positions.pop()

    def verify_stream_position(self, starting_position: int, expected_count: int):
        expected = starting_position + expected_count
        if self.position != expected:
            raise MalformedRecordError(
                f"Stream offset is 0x{self.position:X}, expected 0x{expected:X} "
                f"({'too little' if self.position < expected else 'too much'} data)"
            )


class ReadingContext(_PositionStack):
    def __init__(self, data: bytes, little_endian: bool = True):
        super().__init__(little_endian)
        self._data = bytes(data)
        self._position = 0

    @property
    def position(self) -> int:
        return self._position

    @position.setter
    def position(self, value: int):
        if value < 0:
            raise MalformedRecordError(f"Negative stream offset {value}")
        self._position = value

    def __len__(self):
        return len(self._data)

    @property
    def remaining(self) -> int:
        return max(0, len(self._data) - self._position)

    def read_bytes(self, count: int) -> bytes:
        if count < 0:
            raise MalformedRecordError(f"Negative read length {count}")
        if count > self.remaining:
            raise TruncatedInputError(self._position, count, self.remaining)
        result = self._data[self._position : self._position + count]
        self._position += count
        return result

    def read_uint(self, byte_len: int) -> int:
        return int.from_bytes(self.read_bytes(byte_len), self.byteorder)

    def read_u8(self) -> int:
        return self.read_uint(1)

    def read_u32(self) -> int:
        return self.read_uint(4)

    def read_u64(self) -> int:
        return self.read_uint(8)

    def read_asciiz(self) -> str:
        end = self._data.find(b"\x00", self._position)
        if end < 0:
            raise TruncatedInputError(
                self._position, self.remaining + 1, self.remaining
            )
        value = self.read_bytes(end - self._position)
        self._position += 1
        return value.decode("latin-1")


class WritingPhase:
    def __init__(self):
        self.pending_writes: deque[Callable[[WritingContext], None]] = deque()

    def drain(self, context: WritingContext):
        logger.debug(f"Draining phase with {len(self.pending_writes)} writes")
        while self.pending_writes:
            logger.debug(f"  One delayed write at position = 0x{context.position:X}")
            job = self.pending_writes.popleft()
            job(context)
        logger.debug(f"Finished draining phase (curpos = 0x{context.position:X})")

    @property
    def work_remaining(self) -> bool:
        return len(self.pending_writes) > 0


class DeferredFieldU32:
    """
    A 32 bit placeholder whose value is `position at commit time - anchor`
    """

    def __init__(self, context: WritingContext, anchor: int):
        self.anchor = anchor
        self.write_point = context.position
        self.value: Optional[int] = None
        context.write_u32(0)

    def commit(self, context: WritingContext):
        value = context.position - self.anchor
        if not 0 <= value <= 0xFFFFFFFF:
            raise RuntimeError(
                f"Deferred field at 0x{self.write_point:X} cannot hold {value}"
            )
        context.push_position_and_jump(self.write_point)
        context.write_u32(value)
        context.pop_position()
        self.value = value


class LengthFieldU32(DeferredFieldU32):
    pass


class OffsetFieldU32(DeferredFieldU32):
    pass


@dataclass(frozen=True)
class FieldPatch:
    """
    An in-place overwrite of one integer field in an already written stream
    """

    offset: int
    byte_len: int
    value: int
    reason: str

    def apply(self, context: WritingContext):
        logger.debug(
            f"Patching {self.reason} at 0x{self.offset:X} ({self.byte_len} bytes) "
            f"to 0x{self.value:X}"
        )
        context.push_position_and_jump(self.offset)
        context.write_uint(self.value, self.byte_len)
        context.pop_position()


class WritingContext(_PositionStack):
    def __init__(self, stream: Optional[BinaryIO] = None, little_endian: bool = True):
        super().__init__(little_endian)
        self._stream = stream if stream is not None else BytesIO()
        self.current_phase = WritingPhase()
        self._pending_phases: list[WritingPhase] = []

    @property
    def position(self) -> int:
        return self._stream.tell()

    @position.setter
    def position(self, value: int):
        self._stream.seek(value)

    # Phases

    def create_new_phase(self):
        self._pending_phases.append(self.current_phase)
        self.current_phase = WritingPhase()

    def enqueue(self, job: Callable[[WritingContext], None]):
        self.current_phase.pending_writes.append(job)

    def process_entire_phase(self) -> bool:
        """
        Drains the current phase and returns to the enclosing one.
        Returns True while any work remains.
        """
        self.current_phase.drain(self)
        assert not self.current_phase.work_remaining

        if self._pending_phases:
            self.current_phase = self._pending_phases.pop()

        return self.current_phase.work_remaining or len(self._pending_phases) > 0

    def complete_writing(self):
        while self.process_entire_phase():
            pass

    # Deferred fields

    def write_deferred_length(self, already_counted_bytes: int) -> LengthFieldU32:
        return LengthFieldU32(self, self.position - already_counted_bytes)

    def write_deferred_offset_from(self, base_position: int) -> OffsetFieldU32:
        return OffsetFieldU32(self, base_position)

    def commit_deferred_field(self, field: DeferredFieldU32):
        field.commit(self)

    def enqueue_data_at(self, offset: int, data: Optional[bytes]):
        """
        Queues `data` to be laid down at the absolute `offset`
        once the current phase drains
        """
        if not data:
            return

        def job(context: WritingContext):
            context.push_position_and_jump(offset)
            context.write_bytes(data)
            context.pop_position()

        self.enqueue(job)

    # Primitive writes

    def write_bytes(self, data: bytes):
        self._stream.write(data)

    def write_zeros(self, count: int):
        if count > 0:
            self._stream.write(b"\x00" * count)

    def write_uint(self, value: int, byte_len: int):
        self._stream.write(value.to_bytes(byte_len, self.byteorder))

    def write_u8(self, value: int):
        self.write_uint(value, 1)

    def write_u32(self, value: int):
        self.write_uint(value, 4)

    def write_u64(self, value: int):
        self.write_uint(value, 8)

    def write_asciiz(self, value: str):
        self.write_bytes(value.encode("latin-1") + b"\x00")

    # Buffer access

    def getvalue(self) -> bytes:
        return self._stream.getvalue()

    def truncate(self, size: int):
        self._stream.truncate(size)
