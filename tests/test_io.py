import pytest

from machsign.exceptions import MalformedRecordError, TruncatedInputError
from machsign.io import FieldPatch, ReadingContext, WritingContext


def test_read_integers_both_endians():
    data = bytes.fromhex("01020304 0a0b0c0d0e0f1011 ff")
    little = ReadingContext(data)
    assert little.read_u32() == 0x04030201
    assert little.read_u64() == 0x11100F0E0D0C0B0A
    assert little.read_u8() == 0xFF
    assert little.remaining == 0

    big = ReadingContext(data, little_endian=False)
    assert big.read_u32() == 0x01020304
    assert big.read_u64() == 0x0A0B0C0D0E0F1011


def test_read_strings():
    context = ReadingContext(b"com.example\x00rest")
    assert context.read_asciiz() == "com.example"
    assert context.read_bytes(4) == b"rest"


def test_read_past_end_is_truncated():
    context = ReadingContext(b"\x01\x02\x03")
    context.read_u8()
    with pytest.raises(TruncatedInputError) as info:
        context.read_u32()
    assert info.value.position == 1
    assert info.value.wanted == 4
    assert info.value.available == 2
    assert isinstance(info.value, MalformedRecordError)
    assert "0x1" in str(info.value)


def test_unterminated_asciiz_is_truncated():
    with pytest.raises(TruncatedInputError):
        ReadingContext(b"abc").read_asciiz()


def test_position_stack():
    context = ReadingContext(bytes(range(16)))
    context.read_u32()
    context.push_position_and_jump(12)
    assert context.read_u8() == 12
    context.push_position()
    context.read_u8()
    context.pop_position()
    assert context.position == 13
    context.pop_position()
    assert context.position == 4


def test_position_stack_underflow():
    with pytest.raises(RuntimeError):
        ReadingContext(b"").pop_position()
    with pytest.raises(RuntimeError):
        WritingContext().pop_position()


def test_verify_stream_position():
    context = ReadingContext(bytes(8))
    context.read_u32()
    context.verify_stream_position(0, 4)
    with pytest.raises(MalformedRecordError, match="too little"):
        context.verify_stream_position(0, 8)
    with pytest.raises(MalformedRecordError, match="too much"):
        context.verify_stream_position(2, 1)


def test_write_primitives():
    context = WritingContext(little_endian=False)
    context.write_u32(0xFADE0C02)
    context.write_u8(7)
    context.write_u64(1)
    context.write_asciiz("id")
    context.write_zeros(3)
    assert context.getvalue() == (
        bytes.fromhex("fade0c02") + b"\x07" + bytes(7) + b"\x01" + b"id\x00" + bytes(3)
    )


def test_deferred_length_counts_already_written_bytes():
    context = WritingContext()
    context.write_u32(0xAAAAAAAA)
    length = context.write_deferred_length(4)
    context.write_bytes(b"payload!")
    context.commit_deferred_field(length)

    assert length.value == 4 + 4 + 8
    assert context.getvalue()[4:8] == (16).to_bytes(4, "little")
    # Committing returns to where writing left off
    assert context.position == 16


def test_deferred_offset_from_base():
    context = WritingContext(little_endian=False)
    context.write_bytes(bytes(8))
    offset = context.write_deferred_offset_from(4)
    context.write_bytes(bytes(20))
    context.commit_deferred_field(offset)
    assert context.getvalue()[8:12] == (32 - 4).to_bytes(4, "big")


def test_deferred_field_out_of_range():
    context = WritingContext()
    field = context.write_deferred_offset_from(100)
    with pytest.raises(RuntimeError):
        context.commit_deferred_field(field)


def test_phase_jobs_run_in_order_and_may_enqueue_more():
    context = WritingContext()
    order = []

    def second(context):
        order.append("second")
        context.write_bytes(b"B")

    def first(context):
        order.append("first")
        context.write_bytes(b"A")
        context.enqueue(third)

    def third(context):
        order.append("third")
        context.write_bytes(b"C")

    context.create_new_phase()
    context.enqueue(first)
    context.enqueue(second)
    assert context.process_entire_phase() is False

    assert order == ["first", "second", "third"]
    assert context.getvalue() == b"ABC"


def test_nested_phase_finishes_before_outer_work():
    context = WritingContext()
    context.enqueue(lambda c: c.write_bytes(b"outer"))

    context.create_new_phase()
    context.enqueue(lambda c: c.write_bytes(b"inner"))
    # The root phase still has work queued
    assert context.process_entire_phase() is True
    assert context.getvalue() == b"inner"

    context.complete_writing()
    assert context.getvalue() == b"innerouter"


def test_enqueue_data_at():
    context = WritingContext()
    context.write_bytes(bytes(8))
    context.enqueue_data_at(2, b"\x01\x02")
    context.enqueue_data_at(4, None)
    assert context.getvalue() == bytes(8)

    context.complete_writing()
    assert context.getvalue() == b"\x00\x00\x01\x02\x00\x00\x00\x00"
    assert context.position == 8


def test_field_patch():
    context = WritingContext()
    context.write_bytes(bytes(16))
    patch = FieldPatch(offset=8, byte_len=8, value=0x1122334455667788, reason="test")
    patch.apply(context)
    assert context.getvalue()[8:] == (0x1122334455667788).to_bytes(8, "little")
    assert context.position == 16


def test_truncate():
    context = WritingContext()
    context.write_bytes(bytes(100))
    context.truncate(10)
    assert len(context.getvalue()) == 10
