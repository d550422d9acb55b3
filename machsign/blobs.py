"""
Apple code signing blobs, all of which are big endian
regardless of the image they live in

References:
  libsecurity_utilities/lib/blob.h
  libsecurity_utilities/lib/superblob.h
  libsecurity_codesigning/lib/cscdefs.h
  libsecurity_codesigning/lib/requirement.h
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, ClassVar, Optional

from . import cms
from .exceptions import MalformedRecordError
from .io import ReadingContext, WritingContext

if TYPE_CHECKING:
    from .cms import SigningIdentity

logger = logging.getLogger(__name__)

# Requirements blob
CSMAGIC_REQUIREMENT = 0xFADE0C00
# Internal requirements
CSMAGIC_REQUIREMENTS_TABLE = 0xFADE0C01
# Code directory blob (should be in a slot with key = CSSLOT_CODEDIRECTORY)
CSMAGIC_CODEDIRECTORY = 0xFADE0C02
# Superblob of all signature data (code directory, actual signature, etc...)
CSMAGIC_EMBEDDED_SIGNATURE = 0xFADE0CC0
# Entitlements
CSMAGIC_ENTITLEMENTS = 0xFADE7171
# Actual signature blob
CSMAGIC_CODEDIR_SIGNATURE = 0xFADE0B01

# Keys in the embedded signature superblob
CSSLOT_CODEDIRECTORY = 0
CSSLOT_REQUIREMENTS = 2
CSSLOT_ENTITLEMENTS = 5
CSSLOT_SIGNATURESLOT = 0x10000

# Keys in the requirements table
REQUIREMENT_TYPE_NAMES = {
    1: "kSecHostRequirementType",
    2: "kSecGuestRequirementType",
    3: "kSecDesignatedRequirementType",
    4: "kSecLibraryRequirementType",
}

BLOB_HEADER_SIZE = 2 * 4

_BLOB_TYPES: dict[int, type[AbstractBlob]] = {}


def _register(magic: int):
    def decorator(cls):
        _BLOB_TYPES[magic] = cls
        return cls

    return decorator


class AbstractBlob:
    magic: int

    @staticmethod
    def read_from(context: ReadingContext) -> AbstractBlob:
        start = context.position

        # Read the magic and length (common to all blobs)
        magic = context.read_u32()
        length = context.read_u32()
        if length < BLOB_HEADER_SIZE:
            raise MalformedRecordError(
                f"Blob 0x{magic:X} at 0x{start:X} has impossible length {length}"
            )
        if start + length > len(context):
            raise MalformedRecordError(
                f"Blob 0x{magic:X} at 0x{start:X} claims {length} bytes, "
                "past the end of the stream"
            )

        blob_class = _BLOB_TYPES.get(magic, OpaqueBlob)
        result = blob_class.unpack(context, start, length)
        result.magic = magic
        context.position = start + length

        logger.debug(f"[Read blob with magic 0x{magic:X} and length={length}] {result}")
        return result

    @classmethod
    def unpack(cls, context: ReadingContext, start: int, length: int) -> AbstractBlob:
        raise NotImplementedError

    def pack(self, context: WritingContext):
        raise NotImplementedError

    def write(self, context: WritingContext):
        context.write_u32(self.magic)
        length = context.write_deferred_length(4)
        self.pack(context)
        context.commit_deferred_field(length)

    def get_blob_bytes(self) -> bytes:
        """
        Serializes this blob on its own, big endian, at offset 0 of a fresh buffer
        """
        context = WritingContext(little_endian=False)
        self.write(context)
        context.complete_writing()
        return context.getvalue()


@_register(CSMAGIC_REQUIREMENT)
@dataclass
class OpaqueBlob(AbstractBlob):
    magic: int = CSMAGIC_REQUIREMENT
    data: bytes = field(default=b"", repr=False)

    @classmethod
    def unpack(cls, context: ReadingContext, start: int, length: int) -> OpaqueBlob:
        return cls(data=context.read_bytes(length - BLOB_HEADER_SIZE))

    def pack(self, context: WritingContext):
        context.write_bytes(self.data)

    def __str__(self):
        return f"Opaque blob 0x{self.magic:X} ({len(self.data)} bytes)"


@_register(CSMAGIC_ENTITLEMENTS)
@dataclass
class EntitlementsBlob(OpaqueBlob):
    magic: int = CSMAGIC_ENTITLEMENTS

    @classmethod
    def create(cls, entitlements: str) -> EntitlementsBlob:
        return cls(data=entitlements.encode("utf-8"))

    @property
    def text(self) -> str:
        return self.data.decode("utf-8", errors="replace")

    def __str__(self):
        return f"Entitlements '{self.text}'"


@_register(CSMAGIC_CODEDIR_SIGNATURE)
@dataclass
class CodeDirectorySignatureBlob(OpaqueBlob):
    magic: int = CSMAGIC_CODEDIR_SIGNATURE

    def sign_code_directory(
        self,
        identity: SigningIdentity,
        signing_time: datetime,
        code_directory: CodeDirectoryBlob,
    ):
        """
        Populates this blob with a detached CMS signature over the code directory
        """
        self.data = cms.sign_detached(
            identity, code_directory.get_blob_bytes(), signing_time
        )

    def __str__(self):
        return f"CMS Blob: {cms.describe_signature(self.data)}"


@dataclass
class BlobTable:
    """
    BlobTable:
      U32 SlotCount
      SerializedSlot Slots[Count]

    SerializedSlot
      U32 Key
      U32 Offset    (relative to the start of the enclosing blob)
    """

    slots: list[tuple[int, AbstractBlob]] = field(default_factory=list)

    def get_by_key(self, key: int) -> Optional[AbstractBlob]:
        for slot_key, blob in self.slots:
            if slot_key == key:
                return blob
        return None

    def get_by_magic(self, magic: int) -> Optional[AbstractBlob]:
        for _, blob in self.slots:
            if blob.magic == magic:
                return blob
        return None

    def write(self, context: WritingContext):
        starting_position = context.position - BLOB_HEADER_SIZE

        # Start a phase for writing out the superblob data
        context.create_new_phase()

        # Write the slot table, queuing up the individual slot writes
        context.write_u32(len(self.slots))
        for key, blob in self.slots:
            context.write_u32(key)
            offset = context.write_deferred_offset_from(starting_position)

            def write_slot(context: WritingContext, offset=offset, key=key, blob=blob):
                logger.debug(
                    f"Writing slot 0x{key:X} "
                    f"(offset field at 0x{offset.write_point:X}): {blob}"
                )
                context.commit_deferred_field(offset)
                blob.write(context)

            context.enqueue(write_slot)

        # Force evaluation of the slots
        context.process_entire_phase()

    @classmethod
    def read(cls, context: ReadingContext, base_offset: int) -> BlobTable:
        table = cls()
        slot_count = context.read_u32()
        for _ in range(slot_count):
            key = context.read_u32()
            offset = context.read_u32()

            context.push_position_and_jump(base_offset + offset)
            blob = AbstractBlob.read_from(context)
            context.pop_position()

            table.slots.append((key, blob))
        return table


@dataclass
class SuperBlob(AbstractBlob):
    magic: int = 0
    table: BlobTable = field(default_factory=BlobTable)

    @classmethod
    def unpack(cls, context: ReadingContext, start: int, length: int) -> SuperBlob:
        return cls(table=BlobTable.read(context, start))

    def pack(self, context: WritingContext):
        self.table.write(context)

    def add(self, key: int, blob: AbstractBlob):
        self.table.slots.append((key, blob))

    def get_blob_by_key(self, key: int) -> Optional[AbstractBlob]:
        return self.table.get_by_key(key)

    def get_blob_by_magic(self, magic: int) -> Optional[AbstractBlob]:
        return self.table.get_by_magic(magic)

    def __len__(self):
        return len(self.table.slots)


@_register(CSMAGIC_REQUIREMENTS_TABLE)
@dataclass
class RequirementsBlob(SuperBlob):
    """
    The individual requirements are treated as opaque data
    """

    magic: int = CSMAGIC_REQUIREMENTS_TABLE

    @classmethod
    def create_empty(cls) -> RequirementsBlob:
        return cls()

    def __str__(self):
        result = "Requirements table:"
        for key, blob in self.table.slots:
            name = REQUIREMENT_TYPE_NAMES.get(key, f"UnknownKeyType_{key}")
            result += f"\n  Requirement[Type: {name}, Magic: 0x{blob.magic:X}] = {blob}"
        return result


@_register(CSMAGIC_EMBEDDED_SIGNATURE)
@dataclass
class CodeSigningTableBlob(SuperBlob):
    magic: int = CSMAGIC_EMBEDDED_SIGNATURE

    @property
    def code_directory(self) -> Optional[CodeDirectoryBlob]:
        blob = self.get_blob_by_key(CSSLOT_CODEDIRECTORY)
        return blob if isinstance(blob, CodeDirectoryBlob) else None

    @property
    def requirements(self) -> Optional[RequirementsBlob]:
        blob = self.get_blob_by_key(CSSLOT_REQUIREMENTS)
        return blob if isinstance(blob, RequirementsBlob) else None

    def __str__(self):
        result = f"Embedded signature with {len(self)} blobs:"
        for key, blob in self.table.slots:
            result += f"\n  [0x{key:X}] {blob}"
        return result


# Special slot indices, hashes are stored backwards from the first code slot
CD_INFO_SLOT = 1
CD_REQUIREMENTS_SLOT = 2
CD_RESOURCE_DIR_SLOT = 3
CD_APPLICATION_SLOT = 4
CD_ENTITLEMENT_SLOT = 5
CD_SLOT_MAX = CD_ENTITLEMENT_SLOT

CS_HASHTYPE_SHA1 = 1
CODE_DIRECTORY_VERSION = 0x20100


@_register(CSMAGIC_CODEDIRECTORY)
@dataclass
class CodeDirectoryBlob(AbstractBlob):
    magic: int = CSMAGIC_CODEDIRECTORY
    identifier: str = ""
    version: int = CODE_DIRECTORY_VERSION
    flags: int = 0
    special_slot_count: int = 0
    code_slot_count: int = 0
    signed_length: int = 0
    bytes_per_hash: int = 20
    hash_type: int = CS_HASHTYPE_SHA1
    spare1: int = 0
    log_page_size: int = 12
    spare2: int = 0
    scatter_offset: int = 0
    hashes: bytearray = field(default_factory=bytearray, repr=False)

    @classmethod
    def create(cls, identifier: str, signed_length: int) -> CodeDirectoryBlob:
        blob = cls()
        blob.allocate(identifier, signed_length)
        return blob

    def allocate(self, identifier: str, signed_length: int):
        self.identifier = identifier

        self.version = CODE_DIRECTORY_VERSION
        self.flags = 0
        self.spare1 = 0
        self.spare2 = 0
        self.scatter_offset = 0

        # 4 KB pages
        self.log_page_size = 12

        # 20 byte SHA1 hashes
        self.hash_type = CS_HASHTYPE_SHA1
        self.bytes_per_hash = hashlib.sha1().digest_size
        assert self.bytes_per_hash == 20

        # Allocate space for the hashes
        self.signed_length = signed_length
        self.special_slot_count = CD_SLOT_MAX
        self.code_slot_count = (signed_length + self.page_size - 1) // self.page_size
        self.hashes = bytearray(
            (self.special_slot_count + self.code_slot_count) * self.bytes_per_hash
        )

    @property
    def page_size(self) -> int:
        return 1 << self.log_page_size

    def _special_slot_position(self, slot: int) -> int:
        if not 1 <= slot <= self.special_slot_count:
            raise ValueError(
                f"Special slot {slot} out of range 1..{self.special_slot_count}"
            )
        return (self.special_slot_count - slot) * self.bytes_per_hash

    def _store_hash(self, position: int, digest: bytes):
        end = position + self.bytes_per_hash
        self.hashes[position:end] = digest[: self.bytes_per_hash]

    def generate_special_slot_hash(self, slot: int, data: Optional[bytes] = None):
        """
        Hashes `data` into one of the special slots, or zero fills the slot if there
        is no data (only CD_APPLICATION_SLOT gets that treatment)
        """
        position = self._special_slot_position(slot)
        if data is None:
            self._store_hash(position, bytes(self.bytes_per_hash))
        else:
            self._store_hash(position, hashlib.sha1(data).digest())
        logger.debug(f"Special slot {slot} = {self.special_slot_hash(slot).hex()}")

    def compute_image_hashes(self, signed_data: bytes):
        """
        Calculates the hashes for every page of the signed part of the image
        """
        if len(signed_data) < self.signed_length:
            raise ValueError(
                f"Need {self.signed_length} bytes of signed data to hash, "
                f"got {len(signed_data)}"
            )

        for i in range(self.code_slot_count):
            start = i * self.page_size
            end = min(start + self.page_size, self.signed_length)
            self._store_hash(
                (self.special_slot_count + i) * self.bytes_per_hash,
                hashlib.sha1(signed_data[start:end]).digest(),
            )

    def special_slot_hash(self, slot: int) -> bytes:
        position = self._special_slot_position(slot)
        return bytes(self.hashes[position : position + self.bytes_per_hash])

    def code_slot_hash(self, index: int) -> bytes:
        if not 0 <= index < self.code_slot_count:
            raise IndexError(
                f"Code slot {index} out of range (have {self.code_slot_count})"
            )
        position = (self.special_slot_count + index) * self.bytes_per_hash
        return bytes(self.hashes[position : position + self.bytes_per_hash])

    @classmethod
    def unpack(
        cls, context: ReadingContext, start: int, length: int
    ) -> CodeDirectoryBlob:
        blob = cls()
        blob.version = context.read_u32()
        blob.flags = context.read_u32()
        hash_offset = context.read_u32()
        identifier_offset = context.read_u32()
        blob.special_slot_count = context.read_u32()
        blob.code_slot_count = context.read_u32()
        blob.signed_length = context.read_u32()
        blob.bytes_per_hash = context.read_u8()
        blob.hash_type = context.read_u8()
        blob.spare1 = context.read_u8()
        blob.log_page_size = context.read_u8()
        blob.spare2 = context.read_u32()
        if blob.version >= 0x20100:
            blob.scatter_offset = context.read_u32()

        # Read the identifier string
        context.push_position_and_jump(start + identifier_offset)
        blob.identifier = context.read_asciiz()
        context.pop_position()

        # The hash offset points at the first code slot,
        # the special slots sit in front of it
        total_hashes = blob.special_slot_count + blob.code_slot_count
        special_bytes = blob.bytes_per_hash * blob.special_slot_count
        context.push_position_and_jump(start + hash_offset - special_bytes)
        blob.hashes = bytearray(context.read_bytes(total_hashes * blob.bytes_per_hash))
        context.pop_position()

        return blob

    def pack(self, context: WritingContext):
        start = context.position - BLOB_HEADER_SIZE

        context.write_u32(self.version)
        context.write_u32(self.flags)

        # The hash offset is weird, it points to the first code page hash,
        # not the start of the hashes array
        hash_offset = context.write_deferred_offset_from(
            start - self.bytes_per_hash * self.special_slot_count
        )
        identifier_offset = context.write_deferred_offset_from(start)

        context.write_u32(self.special_slot_count)
        context.write_u32(self.code_slot_count)
        context.write_u32(self.signed_length)

        context.write_u8(self.bytes_per_hash)
        context.write_u8(self.hash_type)
        context.write_u8(self.spare1)
        context.write_u8(self.log_page_size)

        context.write_u32(self.spare2)
        context.write_u32(self.scatter_offset)

        # Write the identifier
        context.commit_deferred_field(identifier_offset)
        context.write_asciiz(self.identifier)

        # Write the hashes
        context.commit_deferred_field(hash_offset)
        context.write_bytes(bytes(self.hashes))

    def __str__(self):
        return (
            f"CodeDirectory v{self.version:X} flags={self.flags} "
            f"Ident: {self.identifier} "
            f"with {self.special_slot_count}+{self.code_slot_count} slots, "
            f"SigLimit 0x{self.signed_length:X}, "
            f"Hash(Len={self.bytes_per_hash} Type={self.hash_type} "
            f"Page={self.page_size})"
        )
