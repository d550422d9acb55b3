"""
Signs a Mach-O executable inside a staged bundle

The embedded signature is self referential: the header fields that locate it are
covered by the page hashes inside it, and its own length depends on the CMS blob
over the code directory. This is resolved in two passes. A dummy CMS over an
incomplete code directory fixes the payload length, the header is patched in place,
the pages are hashed and the code directory is signed again. The second CMS must be
exactly as long as the first.
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .blobs import (
    CD_APPLICATION_SLOT,
    CD_ENTITLEMENT_SLOT,
    CD_INFO_SLOT,
    CD_REQUIREMENTS_SLOT,
    CD_RESOURCE_DIR_SLOT,
    CSSLOT_CODEDIRECTORY,
    CSSLOT_ENTITLEMENTS,
    CSSLOT_REQUIREMENTS,
    CSSLOT_SIGNATURESLOT,
    CodeDirectoryBlob,
    CodeDirectorySignatureBlob,
    CodeSigningTableBlob,
    EntitlementsBlob,
    RequirementsBlob,
)
from .bundle import INFO_PLIST, BundleInfo, FileSystemAdapter
from .cms import SigningIdentity
from .config import SigningConfig
from .exceptions import (
    MalformedRecordError,
    SizeMismatchError,
    StructuralPreconditionError,
)
from .io import FieldPatch, WritingContext
from .macho import CodeSignatureCommand, MachObjectFile
from .resources import (
    CODE_RESOURCES_PATH,
    check_code_resources_marker,
    encode_code_resources,
    hash_resources,
)

# Room made at the end of the image when a signature is added for the first time
GROWTH_PAD = 256 * 1024

# A new signature starts at the end of __LINKEDIT rounded up to this
SIGNATURE_ALIGNMENT = 16


class SigningState(Enum):
    Unsigned = 0
    ResourcesHashed = 1
    StructureLocated = 2
    BlobsAllocated = 3
    DummySigned = 4
    HeaderPatched = 5
    HashesComputed = 6
    FinallySigned = 7
    Truncated = 8


def _round_up(value: int, alignment: int) -> int:
    return (value + alignment - 1) // alignment * alignment


class CodeSignatureBuilder:
    def __init__(
        self,
        executable: MachObjectFile,
        identity: SigningIdentity,
        bundle: BundleInfo,
        fs: FileSystemAdapter,
        config: Optional[SigningConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        # The caller's image is left alone, every mutation happens on this copy
        self.image = copy.deepcopy(executable)
        self.identity = identity
        self.bundle = bundle
        self.fs = fs
        self.config = config if config is not None else SigningConfig()
        self.logger = logger if logger is not None else logging.getLogger(__name__)

        self.state = SigningState.Unsigned
        self.code_resources: Optional[bytes] = None
        self.signature: Optional[CodeSigningTableBlob] = None
        self.patches: list[FieldPatch] = []

    def _advance(self, state: SigningState):
        assert state.value == self.state.value + 1, f"{self.state.name} -> {state.name}"
        self.state = state
        self.logger.info(f"Signing {self.bundle.identifier}: {state.name}")

    def _carried_requirements(self) -> RequirementsBlob:
        existing = self.image.read_code_signature()
        if existing is None:
            self.logger.info(
                "No existing signature, emitting an empty requirements table"
            )
            return RequirementsBlob.create_empty()

        blob = existing.get_blob_by_key(CSSLOT_REQUIREMENTS)
        if blob is None:
            self.logger.info(
                "Existing signature has no requirements, "
                "emitting an empty requirements table"
            )
            return RequirementsBlob.create_empty()
        if not isinstance(blob, RequirementsBlob):
            raise MalformedRecordError(
                f"Existing requirements slot holds a blob with magic "
                f"0x{blob.magic:X}, not a requirements table"
            )
        self.logger.debug(f"Maintaining existing requirements: {blob}")
        return blob

    def sign(self) -> bytes:
        if self.state != SigningState.Unsigned:
            raise RuntimeError(
                f"Signing already ran (state {self.state.name}), "
                "start over with a new builder"
            )

        # Both CMS passes must see the same time or their lengths may differ
        signing_time = self.config.signing_time or datetime.now(timezone.utc)

        # Seal the resources
        check_code_resources_marker(self.fs)
        resources_dir = self.config.resources_dir
        self.code_resources = encode_code_resources(
            hash_resources(self.fs, resources_dir), resources_dir
        )
        self._advance(SigningState.ResourcesHashed)

        # Find the tail segment and any existing signature
        linkedit = self.image.linkedit_segment()
        signature_command = self.image.code_signature_command()
        requirements = (
            self._carried_requirements()
            if self.config.maintain_requirements
            else RequirementsBlob.create_empty()
        )

        if signature_command is not None:
            if signature_command.data_end != linkedit.file_end:
                raise StructuralPreconditionError(
                    f"Existing code signature ends at "
                    f"0x{signature_command.data_end:X} but __LINKEDIT ends at "
                    f"0x{linkedit.file_end:X}, can only replace a signature "
                    "at the end of __LINKEDIT"
                )
            signature_offset = signature_command.data_offset
            added_signature = False
        else:
            signature_offset = _round_up(linkedit.file_end, SIGNATURE_ALIGNMENT)
            signature_command = CodeSignatureCommand(
                data_offset=signature_offset, data_size=0
            )
            self.image.add_command(signature_command)
            added_signature = True
        self.logger.debug(
            f"__LINKEDIT at 0x{linkedit.file_offset:X}+0x{linkedit.file_size:X}, "
            f"signature at 0x{signature_offset:X} "
            f"({'new' if added_signature else 'existing'})"
        )

        output = WritingContext()
        self.image.write(output)
        if added_signature:
            output.position = len(output.getvalue())
            output.write_zeros(GROWTH_PAD)
        self._advance(SigningState.StructureLocated)

        # Everything in front of the signature is signed
        code_directory = CodeDirectoryBlob.create(
            self.bundle.identifier, signature_offset
        )
        entitlements = EntitlementsBlob.create(self.config.entitlements)
        cms_blob = CodeDirectorySignatureBlob()

        self.signature = CodeSigningTableBlob()
        self.signature.add(CSSLOT_CODEDIRECTORY, code_directory)
        self.signature.add(CSSLOT_REQUIREMENTS, requirements)
        self.signature.add(CSSLOT_ENTITLEMENTS, entitlements)
        self.signature.add(CSSLOT_SIGNATURESLOT, cms_blob)
        self._advance(SigningState.BlobsAllocated)

        # Pass 1, only the lengths matter
        directory_length = len(code_directory.get_blob_bytes())
        cms_blob.sign_code_directory(self.identity, signing_time, code_directory)
        dummy_cms_length = len(cms_blob.data)
        payload = self.signature.get_blob_bytes()
        self.logger.debug(
            f"Dummy CMS is {dummy_cms_length} bytes, "
            f"signature payload is {len(payload)} bytes"
        )
        self._advance(SigningState.DummySigned)

        # Patch the header now that the payload length is known
        linkedit_length = signature_offset + len(payload) - linkedit.file_offset
        self.patches += linkedit.patch_file_length(output, linkedit_length)
        self.patches += signature_command.patch_offset_and_size(
            output, signature_offset, len(payload)
        )
        output.position = signature_offset
        output.write_bytes(payload)
        self._advance(SigningState.HeaderPatched)

        # Hash everything with the final header in place
        code_directory.generate_special_slot_hash(
            CD_INFO_SLOT, self.fs.read_all_bytes(INFO_PLIST)
        )
        code_directory.generate_special_slot_hash(
            CD_REQUIREMENTS_SLOT, requirements.get_blob_bytes()
        )
        code_directory.generate_special_slot_hash(
            CD_RESOURCE_DIR_SLOT, self.code_resources
        )
        code_directory.generate_special_slot_hash(CD_APPLICATION_SLOT)
        code_directory.generate_special_slot_hash(
            CD_ENTITLEMENT_SLOT, entitlements.get_blob_bytes()
        )
        code_directory.compute_image_hashes(output.getvalue()[:signature_offset])
        self._advance(SigningState.HashesComputed)

        # Pass 2, must come out exactly the same size
        final_directory_length = len(code_directory.get_blob_bytes())
        if final_directory_length != directory_length:
            raise SizeMismatchError(
                directory_length, final_directory_length, "Code directory"
            )
        cms_blob.sign_code_directory(self.identity, signing_time, code_directory)
        if len(cms_blob.data) != dummy_cms_length:
            raise SizeMismatchError(dummy_cms_length, len(cms_blob.data))
        final_payload = self.signature.get_blob_bytes()
        if len(final_payload) != len(payload):
            raise SizeMismatchError(
                len(payload), len(final_payload), "Signature payload"
            )
        self._advance(SigningState.FinallySigned)

        output.position = signature_offset
        output.write_bytes(final_payload)
        output.truncate(linkedit.file_end)
        self._advance(SigningState.Truncated)

        result = output.getvalue()
        self.logger.debug(f"Signed image is {len(result)} bytes")
        return result


def sign_bundle(
    fs: FileSystemAdapter,
    identity: SigningIdentity,
    config: Optional[SigningConfig] = None,
    logger: Optional[logging.Logger] = None,
) -> bytes:
    """
    Signs the executable named by the bundle's Info.plist and writes it
    (and CodeResources) back

    Nothing is written unless signing succeeds
    """
    config = config if config is not None else SigningConfig()
    bundle = BundleInfo.from_plist(fs.read_all_bytes(INFO_PLIST))
    executable_path = bundle.executable_path(config.executable_dir)
    image = MachObjectFile.from_bytes(fs.read_all_bytes(executable_path))

    builder = CodeSignatureBuilder(image, identity, bundle, fs, config, logger)
    signed = builder.sign()

    if config.write_code_resources:
        assert builder.code_resources is not None
        fs.write_all_bytes(CODE_RESOURCES_PATH, builder.code_resources)
    fs.write_all_bytes(executable_path, signed)
    return signed
