"""
Minimal implementation of the 64-bit Mach-O object file format

Only the load commands needed for signing are modelled, everything else is kept
as opaque bytes so that reading and writing back an image is lossless.
A few commands support patching individual fields of an image that has already
been written out, since Mach-O offsets and sizes are absolute and circular.

Constant values from xnu EXTERNAL_HEADERS/mach-o/loader.h
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar, Optional, TypeVar
from uuid import UUID

from ._struct import fid, record
from .blobs import AbstractBlob, CodeSigningTableBlob
from .exceptions import MalformedRecordError, StructuralPreconditionError
from .io import FieldPatch, ReadingContext, WritingContext

logger = logging.getLogger(__name__)

# Values for magic
MH_MAGIC = 0xFEEDFACE
MH_CIGAM = 0xCEFAEDFE
MH_MAGIC_64 = 0xFEEDFACF
MH_CIGAM_64 = 0xCFFAEDFE
FAT_MAGIC = 0xCAFEBABE
FAT_CIGAM = 0xBEBAFECA

# Values for cpu_type
CPU_TYPE_X86_64 = 0x01000007
CPU_TYPE_ARM64 = 0x0100000C

# Values for file_type
MH_EXECUTE = 2

MACH_HEADER_SIZE = 8 * 4
COMMAND_HEADER_SIZE = 2 * 4

# __LINKEDIT virtual sizes are kept a multiple of this
SEGMENT_PAGE_SIZE = 4096

# MSB of the command tag, set when the command cannot be ignored by dyld
LC_REQ_DYLD = 0x80000000

LC_SEGMENT = 0x01
LC_SYMTAB = 0x02
LC_THREAD = 0x04
LC_UNIXTHREAD = 0x05
LC_DYSYMTAB = 0x0B
LC_LOAD_DYLIB = 0x0C
LC_ID_DYLIB = 0x0D
LC_LOAD_DYLINKER = 0x0E
LC_ID_DYLINKER = 0x0F
LC_LOAD_WEAK_DYLIB = 0x18
LC_SEGMENT_64 = 0x19
LC_UUID = 0x1B
LC_CODE_SIGNATURE = 0x1D
LC_ENCRYPTION_INFO = 0x21
LC_DYLD_INFO = 0x22

# These section types have no bytes of file data
S_ZEROFILL = 0x1
S_GB_ZEROFILL = 0xC
S_THREAD_LOCAL_ZEROFILL = 0x12
SECTION_TYPE_MASK = 0xFF

LINKEDIT_SEGMENT_NAME = "__LINKEDIT"

_COMMAND_TYPES: dict[int, type[LoadCommand]] = {}

C = TypeVar("C", bound="LoadCommand")


def _register(*commands: int):
    def decorator(cls: type[C]) -> type[C]:
        for command in commands:
            _COMMAND_TYPES[command] = cls
        cls.COMMANDS = commands
        return cls

    return decorator


def _version_string(version: int) -> str:
    return f"{version >> 16}.{(version >> 8) & 0xFF}.{version & 0xFF}"


def _fixed_name(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("latin-1")


def _command_string(command: LoadCommand, name_offset: int) -> str:
    # name_offset counts from the start of the load command
    start = name_offset - COMMAND_HEADER_SIZE - command.wire_size()
    raw = command.trailing[max(start, 0) :].split(b"\x00", 1)[0]
    return raw.decode("utf-8", errors="replace")


@record
@dataclass
class LoadCommand:
    COMMANDS: ClassVar[tuple[int, ...]] = ()

    command: int = 0
    required_for_dynamic_load: bool = False
    # Offset of the command in the image it was last read from or written to,
    # -1 if never
    load_offset: int = field(default=-1, compare=False)
    # Payload bytes after the modelled fields (strings, thread state, padding)
    trailing: bytes = field(default=b"", repr=False)

    def __post_init__(self):
        if self.command == 0 and self.COMMANDS:
            self.command = self.COMMANDS[0]

    @staticmethod
    def read_from(context: ReadingContext) -> LoadCommand:
        start = context.position

        # Read the code and size (common to all commands)
        command_code = context.read_u32()
        command_size = context.read_u32()
        if command_size < COMMAND_HEADER_SIZE:
            raise MalformedRecordError(
                f"Load command at 0x{start:X} has impossible size {command_size}"
            )

        effective_command = command_code & ~LC_REQ_DYLD
        command_class = _COMMAND_TYPES.get(effective_command, OpaqueCommand)

        end = start + command_size
        if command_class.wire_size() > command_size - COMMAND_HEADER_SIZE:
            raise MalformedRecordError(
                f"Load command 0x{effective_command:X} at 0x{start:X} is too small "
                f"({command_size} bytes) for a {command_class.__name__}"
            )

        result = command_class(**command_class.read_fields(context))
        result.command = effective_command
        result.required_for_dynamic_load = bool(command_code & LC_REQ_DYLD)
        result.load_offset = start
        result.unpack_body(context, end)

        context.verify_stream_position(start, command_size)
        return result

    def unpack_body(self, context: ReadingContext, end: int):
        if context.position > end:
            raise MalformedRecordError(
                f"{type(self).__name__} at 0x{self.load_offset:X} "
                "overruns its declared size"
            )
        self.trailing = context.read_bytes(end - context.position)

    def pack_body(self, context: WritingContext):
        context.write_bytes(self.trailing)

    def write(self, context: WritingContext):
        start = context.position

        # Write the command and length
        tag = self.command | (LC_REQ_DYLD if self.required_for_dynamic_load else 0)
        context.write_u32(tag)
        length = context.write_deferred_length(4)

        # Write the data
        self.write_fields(context)
        self.pack_body(context)

        # Write any pad bytes and commit the length
        context.write_zeros(-(context.position - start) % 4)
        context.commit_deferred_field(length)

        self.load_offset = start

    def _field_patch(
        self, name: str, byte_len: int, value: int, reason: str
    ) -> FieldPatch:
        if self.load_offset < 0:
            raise RuntimeError(
                f"{type(self).__name__} has never been written, cannot patch it"
            )
        return FieldPatch(
            offset=self.load_offset + COMMAND_HEADER_SIZE + self.wire_offset(name),
            byte_len=byte_len,
            value=value,
            reason=reason,
        )


@record
@dataclass
class OpaqueCommand(LoadCommand):
    def __str__(self):
        return f"Unknown 0x{self.command:X} with {len(self.trailing)} bytes of data"


@record
@dataclass
class Section64:
    """
    Information about a single 64-bit section within a segment
    Warning: Contains absolute file offsets
    """

    SIZE: ClassVar[int] = 2 * 16 + 2 * 8 + 8 * 4

    # NUL padded, kept raw so any bytes after the terminator survive a rewrite
    raw_section_name: bytes = fid(16, bytes, default=bytes(16), repr=False)
    raw_segment_name: bytes = fid(16, bytes, default=bytes(16), repr=False)
    address: int = fid(8)
    size: int = fid(8)
    offset: int = fid(4)
    log_alignment: int = fid(4)
    relocation_offset: int = fid(4)
    relocation_count: int = fid(4)
    flags: int = fid(4)
    reserved1: int = fid(4)
    reserved2: int = fid(4)
    reserved3: int = fid(4)

    data: Optional[bytes] = field(default=None, repr=False)

    @property
    def section_name(self) -> str:
        return _fixed_name(self.raw_section_name)

    @property
    def segment_name(self) -> str:
        return _fixed_name(self.raw_segment_name)

    @property
    def section_type(self) -> int:
        return self.flags & SECTION_TYPE_MASK

    @property
    def is_zero_fill(self) -> bool:
        return self.section_type in (S_ZEROFILL, S_GB_ZEROFILL, S_THREAD_LOCAL_ZEROFILL)

    @classmethod
    def read(cls, context: ReadingContext) -> Section64:
        section = cls(**cls.read_fields(context))

        if not section.is_zero_fill and section.size > 0:
            context.push_position_and_jump(section.offset)
            section.data = context.read_bytes(section.size)
            context.pop_position()

        logger.debug(
            f"  v Read Section '{section.section_name}' in segment "
            f"'{section.segment_name}' with size {section.size} "
            f"and offset 0x{section.offset:X} and align {1 << section.log_alignment} "
            f"and flags {section.flags:X}"
        )
        return section

    def write(self, context: WritingContext):
        self.write_fields(context)
        context.enqueue_data_at(self.offset, self.data)

    def __str__(self):
        kind = " (zero fill)" if self.is_zero_fill else ""
        return (
            f"Section '{self.segment_name},{self.section_name}' at 0x{self.address:X} "
            f"size {self.size} offset 0x{self.offset:X}{kind}"
        )


@_register(LC_SEGMENT_64)
@record
@dataclass
class Segment64Command(LoadCommand):
    """
    Payload for LC_SEGMENT_64
    Warning: Contains absolute file offsets
    """

    raw_segment_name: bytes = fid(16, bytes, default=bytes(16), repr=False)
    vm_address: int = fid(8)
    vm_size: int = fid(8)
    file_offset: int = fid(8)
    file_size: int = fid(8)
    max_protection: int = fid(4)
    initial_protection: int = fid(4)
    section_count: int = fid(4)
    flags: int = fid(4)

    sections: list[Section64] = field(default_factory=list)

    @property
    def segment_name(self) -> str:
        return _fixed_name(self.raw_segment_name)

    @property
    def file_end(self) -> int:
        return self.file_offset + self.file_size

    def unpack_body(self, context: ReadingContext, end: int):
        self.sections = [Section64.read(context) for _ in range(self.section_count)]
        super().unpack_body(context, end)

    def pack_body(self, context: WritingContext):
        for section in self.sections:
            section.write(context)
        super().pack_body(context)

    def write(self, context: WritingContext):
        self.section_count = len(self.sections)
        super().write(context)

    def patch_file_length(
        self, context: WritingContext, new_length: int
    ) -> list[FieldPatch]:
        """
        Patches the file size (and the page rounded virtual size) of this segment
        in an already written image
        """
        logger.debug(
            f"Segment {self.segment_name} length from 0x{self.file_size:X} "
            f"to 0x{new_length:X} (delta {new_length - self.file_size})"
        )

        self.file_size = new_length
        self.vm_size = (new_length + SEGMENT_PAGE_SIZE - 1) & ~(SEGMENT_PAGE_SIZE - 1)

        name = self.segment_name
        patches = [
            self._field_patch("vm_size", 8, self.vm_size, f"{name} vm_size"),
            self._field_patch("file_size", 8, self.file_size, f"{name} file_size"),
        ]
        for patch in patches:
            patch.apply(context)
        return patches

    def __str__(self):
        return (
            f"Segment64 '{self.segment_name}' with {len(self.sections)} sections "
            f"(Offset 0x{self.file_offset:X} Size {self.file_size})"
        )


@_register(LC_SYMTAB)
@record
@dataclass
class SymbolTableCommand(LoadCommand):
    """
    Payload for LC_SYMTAB
    Warning: Contains absolute offsets
    """

    symbol_table_offset: int = fid(4)
    symbol_count: int = fid(4)
    string_table_offset: int = fid(4)
    string_table_size: int = fid(4)

    def __str__(self):
        return (
            f"Symbol Table with {self.symbol_count} symbols "
            f"at offset 0x{self.symbol_table_offset:X} "
            f"and a {self.string_table_size / 1024:.1f} KB string table "
            f"at offset 0x{self.string_table_offset:X}"
        )


@_register(LC_DYSYMTAB)
@record
@dataclass
class DynamicSymbolTableCommand(LoadCommand):
    """
    Payload for LC_DYSYMTAB
    Warning: Contains absolute file offsets
    """

    local_symbol_index: int = fid(4)
    local_symbol_count: int = fid(4)
    external_symbol_index: int = fid(4)
    external_symbol_count: int = fid(4)
    undefined_symbol_index: int = fid(4)
    undefined_symbol_count: int = fid(4)
    toc_offset: int = fid(4)
    toc_count: int = fid(4)
    module_table_offset: int = fid(4)
    module_table_count: int = fid(4)
    external_reference_offset: int = fid(4)
    external_reference_count: int = fid(4)
    indirect_symbol_offset: int = fid(4)
    indirect_symbol_count: int = fid(4)
    external_relocation_offset: int = fid(4)
    external_relocation_count: int = fid(4)
    local_relocation_offset: int = fid(4)
    local_relocation_count: int = fid(4)

    def __str__(self):
        return "Information on symbols needed for dynamic linking and loading"


@_register(LC_LOAD_DYLIB, LC_LOAD_WEAK_DYLIB, LC_ID_DYLIB)
@record
@dataclass
class DylibCommand(LoadCommand):
    """
    Payload for LC_LOAD_DYLIB, LC_LOAD_WEAK_DYLIB, and LC_ID_DYLIB
    """

    name_offset: int = fid(4)
    timestamp: int = fid(4)
    current_version: int = fid(4)
    compatibility_version: int = fid(4)

    @property
    def name(self) -> str:
        return _command_string(self, self.name_offset)

    def __str__(self):
        kind = {
            LC_LOAD_DYLIB: "Load Dynamic Library",
            LC_LOAD_WEAK_DYLIB: "Load Weak Dynamic Library",
            LC_ID_DYLIB: "Dynamic Library Install Name",
        }[self.command]
        return f"{kind} '{self.name}' ({_version_string(self.current_version)})"


@_register(LC_LOAD_DYLINKER, LC_ID_DYLINKER)
@record
@dataclass
class DynamicLinkerCommand(LoadCommand):
    """
    Payload for LC_LOAD_DYLINKER and LC_ID_DYLINKER
    """

    name_offset: int = fid(4)

    @property
    def name(self) -> str:
        return _command_string(self, self.name_offset)

    def __str__(self):
        return f"Dynamic linker name '{self.name}'"


@_register(LC_UUID)
@record
@dataclass
class UUIDCommand(LoadCommand):
    uuid_bytes: bytes = fid(16, bytes, default=bytes(16))

    @property
    def uuid(self) -> UUID:
        return UUID(bytes=self.uuid_bytes)

    def __str__(self):
        return f"UUID: {self.uuid}"


@_register(LC_THREAD, LC_UNIXTHREAD)
@record
@dataclass
class MainThreadCommand(OpaqueCommand):
    """
    Payload for LC_THREAD and LC_UNIXTHREAD, the register state is kept opaque
    """

    def __str__(self):
        if self.command == LC_THREAD:
            return "Main thread configuration (no default stack)"
        return "Main thread configuration (with a stack)"


@_register(LC_CODE_SIGNATURE)
@record
@dataclass
class CodeSignatureCommand(LoadCommand):
    """
    Payload for LC_CODE_SIGNATURE, points at the signature superblob inside __LINKEDIT
    Warning: Contains absolute file offsets
    """

    data_offset: int = fid(4)
    data_size: int = fid(4)

    @property
    def data_end(self) -> int:
        return self.data_offset + self.data_size

    def patch_offset_and_size(
        self, context: WritingContext, new_offset: int, new_size: int
    ) -> list[FieldPatch]:
        """
        Patches the blob offset and size of the code signing blob in an already
        written image
        """
        logger.debug(
            f"Blob offset from 0x{self.data_offset:X} to 0x{new_offset:X} "
            f"(delta {new_offset - self.data_offset})"
        )
        logger.debug(
            f"Blob size from 0x{self.data_size:X} to 0x{new_size:X} "
            f"(delta {new_size - self.data_size})"
        )

        self.data_offset = new_offset
        self.data_size = new_size

        patches = [
            self._field_patch("data_offset", 4, new_offset, "code signature offset"),
            self._field_patch("data_size", 4, new_size, "code signature size"),
        ]
        for patch in patches:
            patch.apply(context)
        return patches

    def __str__(self):
        return (
            f"Code Signature Blob at offset 0x{self.data_offset:X} "
            f"with a size of {self.data_size / 1024:.1f} KB"
        )


@_register(LC_ENCRYPTION_INFO)
@record
@dataclass
class EncryptionInfoCommand(LoadCommand):
    """
    Payload for LC_ENCRYPTION_INFO
    """

    encrypted_offset: int = fid(4)
    encrypted_size: int = fid(4)
    encryption_mode: int = fid(4)

    def __str__(self):
        return (
            f"Encrypted segment at offset 0x{self.encrypted_offset:X} of size "
            f"{self.encrypted_size / 1024:.1f} KB in mode {self.encryption_mode}"
        )


@_register(LC_DYLD_INFO)
@record
@dataclass
class DyldInfoCommand(LoadCommand):
    """
    Payload for LC_DYLD_INFO and LC_DYLD_INFO_ONLY
    Warning: Contains absolute file offsets
    """

    rebase_offset: int = fid(4)
    rebase_size: int = fid(4)
    bind_offset: int = fid(4)
    bind_size: int = fid(4)
    weak_bind_offset: int = fid(4)
    weak_bind_size: int = fid(4)
    lazy_bind_offset: int = fid(4)
    lazy_bind_size: int = fid(4)
    export_offset: int = fid(4)
    export_size: int = fid(4)

    def __str__(self):
        return "Compressed information needed for dynamic loading"


@dataclass
class MachObjectFile:
    magic: int = MH_MAGIC_64
    cpu_type: int = CPU_TYPE_X86_64
    cpu_subtype: int = 3
    file_type: int = MH_EXECUTE
    flags: int = 0
    reserved: int = 0
    commands: list[LoadCommand] = field(default_factory=list)
    little_endian: bool = True

    # Offset of the first byte of file content after the load commands,
    # None if there is none
    header_region_size: Optional[int] = None
    # Bytes between the end of the load commands (as read) and header_region_size
    header_padding: bytes = field(default=b"", repr=False)
    # Everything from header_region_size to the end of the file
    content: bytes = field(default=b"", repr=False)
    source: bytes = field(default=b"", repr=False, compare=False)

    @classmethod
    def from_bytes(cls, data: bytes) -> MachObjectFile:
        return cls.read(ReadingContext(data))

    @classmethod
    def load(cls, path: Path | str) -> MachObjectFile:
        return cls.from_bytes(Path(path).read_bytes())

    @classmethod
    def read(cls, context: ReadingContext) -> MachObjectFile:
        raw_magic = context.read_bytes(4)
        if raw_magic == MH_MAGIC_64.to_bytes(4, "little"):
            context.little_endian = True
        elif raw_magic == MH_MAGIC_64.to_bytes(4, "big"):
            context.little_endian = False
        else:
            value = int.from_bytes(raw_magic, "big")
            if value in (MH_MAGIC, MH_CIGAM):
                raise MalformedRecordError("32-bit Mach-O images are not supported")
            if value in (FAT_MAGIC, FAT_CIGAM):
                raise MalformedRecordError("Universal (fat) binaries are not supported")
            raise MalformedRecordError(f"Bad Mach-O magic 0x{value:08X}")

        image = cls(little_endian=context.little_endian)
        image.cpu_type = context.read_u32()
        image.cpu_subtype = context.read_u32()
        image.file_type = context.read_u32()
        command_count = context.read_u32()
        size_of_commands = context.read_u32()
        image.flags = context.read_u32()
        image.reserved = context.read_u32()
        context.verify_stream_position(0, MACH_HEADER_SIZE)

        # Read the commands
        for _ in range(command_count):
            command = LoadCommand.read_from(context)
            image.commands.append(command)
            logger.debug(f" Read command: {command}")
        context.verify_stream_position(MACH_HEADER_SIZE, size_of_commands)

        commands_end = context.position
        image.header_region_size = image._first_content_offset(len(context))
        if image.header_region_size is not None:
            if image.header_region_size < commands_end:
                raise MalformedRecordError(
                    f"Load commands end at 0x{commands_end:X}, "
                    f"past the first file content at 0x{image.header_region_size:X}"
                )
            image.header_padding = context.read_bytes(
                image.header_region_size - commands_end
            )
        else:
            image.header_padding = context.read_bytes(context.remaining)
        image.content = context.read_bytes(context.remaining)

        context.push_position_and_jump(0)
        image.source = context.read_bytes(len(context))
        context.pop_position()
        return image

    def _first_content_offset(self, file_length: int) -> Optional[int]:
        candidates = []
        for segment in self.segments:
            if segment.file_size > 0 and segment.file_offset > 0:
                candidates.append(segment.file_offset)
            for section in segment.sections:
                if section.data and section.offset > 0:
                    candidates.append(section.offset)
        candidates = [c for c in candidates if c <= file_length]
        return min(candidates) if candidates else None

    def write(self, context: WritingContext):
        if context.position != 0:
            raise RuntimeError(
                "Mach-O images contain absolute offsets and must start at offset 0"
            )
        context.little_endian = self.little_endian

        # Write the header
        context.write_u32(self.magic)
        context.write_u32(self.cpu_type)
        context.write_u32(self.cpu_subtype)
        context.write_u32(self.file_type)
        context.write_u32(len(self.commands))
        # Counted from the end of the header, after this placeholder, flags and
        # reserved
        size_of_commands = context.write_deferred_length(-(4 + 2 * 4))
        context.write_u32(self.flags)
        context.write_u32(self.reserved)

        # Write each command (which may enqueue deferred work)
        for command in self.commands:
            command.write(context)
        context.commit_deferred_field(size_of_commands)

        self._write_header_padding(context)
        context.write_bytes(self.content)

        # Drain deferred work until the file is completely done
        context.complete_writing()

    def _write_header_padding(self, context: WritingContext):
        commands_end = context.position
        if self.header_region_size is None:
            context.write_bytes(self.header_padding)
            return

        room = self.header_region_size - commands_end
        if room < 0:
            raise StructuralPreconditionError(
                f"Load commands end at 0x{commands_end:X}, which overlaps "
                f"the first file content at 0x{self.header_region_size:X}"
            )

        consumed = len(self.header_padding) - room
        if consumed > 0:
            if any(self.header_padding[:consumed]):
                logger.warning(
                    f"Overwriting {consumed} bytes of non-zero header padding "
                    "with load commands"
                )
            context.write_bytes(self.header_padding[consumed:])
        else:
            context.write_zeros(-consumed)
            context.write_bytes(self.header_padding)

    def to_bytes(self) -> bytes:
        context = WritingContext()
        self.write(context)
        return context.getvalue()

    @property
    def segments(self) -> list[Segment64Command]:
        return [c for c in self.commands if isinstance(c, Segment64Command)]

    def find_segments(self, name: str) -> list[Segment64Command]:
        return [s for s in self.segments if s.segment_name == name]

    def linkedit_segment(self) -> Segment64Command:
        segments = self.find_segments(LINKEDIT_SEGMENT_NAME)
        if not segments:
            raise StructuralPreconditionError("Did not find a __LINKEDIT segment")
        if len(segments) > 1:
            raise StructuralPreconditionError(
                f"Found {len(segments)} __LINKEDIT segments, expected exactly one"
            )
        return segments[0]

    def code_signature_command(self) -> Optional[CodeSignatureCommand]:
        for command in self.commands:
            if isinstance(command, CodeSignatureCommand):
                return command
        return None

    def add_command(self, command: LoadCommand):
        logger.debug(f"Appending load command: {command}")
        self.commands.append(command)

    def read_code_signature(self) -> Optional[CodeSigningTableBlob]:
        """
        Parses the embedded signature superblob referenced by LC_CODE_SIGNATURE,
        None if unsigned
        """
        command = self.code_signature_command()
        if command is None:
            return None

        if command.data_end > len(self.source):
            raise MalformedRecordError(
                f"Code signature at 0x{command.data_offset:X} "
                "extends past the end of the file"
            )
        context = ReadingContext(self.source, little_endian=False)
        context.position = command.data_offset
        blob = AbstractBlob.read_from(context)
        if not isinstance(blob, CodeSigningTableBlob):
            raise MalformedRecordError(
                f"Expected an embedded signature at 0x{command.data_offset:X}, "
                f"found magic 0x{blob.magic:X}"
            )
        return blob

    def __str__(self):
        return (
            f"Mach-O 64 (cpu 0x{self.cpu_type:X}/0x{self.cpu_subtype:X}, "
            f"type {self.file_type}, flags 0x{self.flags:X}) "
            f"with {len(self.commands)} load commands"
        )
