import datetime
import logging
import os
import plistlib
import struct
from pathlib import Path
from typing import Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.hashes import SHA256
from rich.logging import RichHandler

from machsign.cms import SigningIdentity

logging.basicConfig(level=logging.DEBUG, handlers=[RichHandler()], format="%(message)s")

SIGNING_TIME = datetime.datetime(2024, 3, 1, 12, 30, 0, tzinfo=datetime.timezone.utc)

TEXT_OFFSET = 0x1000
LINKEDIT_OFFSET = 0x2000
TEXT_DATA = bytes(range(256)) * 8
LINKEDIT_DATA = bytes([0xAB]) * 0x130
DYLIB_NAME = b"/usr/lib/libSystem.B.dylib"

LC_SEGMENT_64 = 0x19
LC_SYMTAB = 0x02
LC_UUID = 0x1B
LC_LOAD_DYLIB = 0x0C
LC_DYLD_INFO_ONLY = 0x22 | 0x80000000
LC_SOURCE_VERSION = 0x2A
LC_CODE_SIGNATURE = 0x1D

INFO_PLIST = plistlib.dumps(
    {
        "CFBundleIdentifier": "com.example.game",
        "CFBundleExecutable": "Game",
        "CFBundleName": "Game",
        "CFBundlePackageType": "APPL",
    }
)


def build_macho(
    little_endian: bool = True,
    include_linkedit: bool = True,
    linkedit: bytes = LINKEDIT_DATA,
    code_signature: Optional[tuple[int, int]] = None,
    extra_linkedit_segment: bool = False,
) -> bytes:
    """
    Lays out a small x86_64 executable by hand:
    header and load commands, __text at 0x1000, __LINKEDIT at 0x2000
    """
    e = "<" if little_endian else ">"

    def segment(
        name, vm_address, vm_size, file_offset, file_size, sections=b"", section_count=0
    ):
        return struct.pack(
            e + "II16sQQQQiiII",
            LC_SEGMENT_64,
            72 + len(sections),
            name,
            vm_address,
            vm_size,
            file_offset,
            file_size,
            7,
            5,
            section_count,
            0,
        ) + sections

    text_section = struct.pack(
        e + "16s16sQQIIIIIIII",
        b"__text",
        b"__TEXT",
        0x100000000 + TEXT_OFFSET,
        len(TEXT_DATA),
        TEXT_OFFSET,
        4,
        0,
        0,
        0x80000400,
        0,
        0,
        0,
    )
    bss_section = struct.pack(
        e + "16s16sQQIIIIIIII",
        b"__bss",
        b"__DATA",
        0x100003000,
        0x200,
        0,
        3,
        0,
        0,
        0x1,
        0,
        0,
        0,
    )

    name = DYLIB_NAME + b"\x00" * (8 - len(DYLIB_NAME) % 8)
    commands = [
        segment(b"__PAGEZERO", 0, 0x100000000, 0, 0),
        segment(b"__TEXT", 0x100000000, 0x2000, 0, LINKEDIT_OFFSET, text_section, 1),
        segment(b"__DATA", 0x100003000, 0x1000, 0, 0, bss_section, 1),
    ]
    if include_linkedit:
        commands.append(
            segment(b"__LINKEDIT", 0x100004000, 0x1000, LINKEDIT_OFFSET, len(linkedit))
        )
    if extra_linkedit_segment:
        commands.append(
            segment(b"__LINKEDIT", 0x100005000, 0x1000, LINKEDIT_OFFSET, len(linkedit))
        )
    commands += [
        struct.pack(
            e + "IIIIII",
            LC_SYMTAB,
            24,
            LINKEDIT_OFFSET,
            2,
            LINKEDIT_OFFSET + 0x20,
            0x10,
        ),
        struct.pack(e + "II", LC_DYLD_INFO_ONLY, 48) + bytes(40),
        struct.pack(e + "II", LC_UUID, 24) + bytes(range(16)),
        # Versions are xxxx.yy.zz nibbles, this one is 5.12.0
        struct.pack(
            e + "IIIIII", LC_LOAD_DYLIB, 24 + len(name), 24, 2, 0x00050C00, 0x00010000
        )
        + name,
        struct.pack(e + "IIQ", LC_SOURCE_VERSION, 16, 0x1234),
    ]
    if code_signature is not None:
        commands.append(struct.pack(e + "IIII", LC_CODE_SIGNATURE, 16, *code_signature))

    load_commands = b"".join(commands)
    header = struct.pack(
        e + "IiiIIIII",
        0xFEEDFACF,
        0x01000007,
        3,
        2,
        len(commands),
        len(load_commands),
        0x00200085,
        0,
    )

    image = bytearray(header + load_commands)
    image += bytes(TEXT_OFFSET - len(image))
    image += TEXT_DATA
    image += bytes(LINKEDIT_OFFSET - len(image))
    if include_linkedit:
        image += linkedit
    return bytes(image)


def make_certificate(
    common_name: str,
    key,
    issuer_name: Optional[str] = None,
    issuer_key=None,
) -> x509.Certificate:
    builder = x509.CertificateBuilder()
    builder = builder.subject_name(
        x509.Name([x509.NameAttribute(x509.NameOID.COMMON_NAME, common_name)])
    )
    builder = builder.issuer_name(
        x509.Name(
            [x509.NameAttribute(x509.NameOID.COMMON_NAME, issuer_name or common_name)]
        )
    )
    builder = builder.not_valid_before(datetime.datetime(2020, 1, 1))
    builder = builder.not_valid_after(datetime.datetime(2040, 1, 1))
    builder = builder.serial_number(x509.random_serial_number())
    builder = builder.public_key(key.public_key())
    return builder.sign(issuer_key or key, SHA256())


@pytest.fixture(scope="session")
def ca_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def ca_certificate(ca_key):
    return make_certificate("machsign Test Root", ca_key)


@pytest.fixture(scope="session")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def signing_certificate(signing_key, ca_key):
    return make_certificate(
        "Developer ID Application: Test", signing_key, "machsign Test Root", ca_key
    )


@pytest.fixture(scope="session")
def identity(signing_certificate, signing_key, ca_certificate):
    return SigningIdentity(signing_certificate, signing_key, [ca_certificate])


@pytest.fixture
def macho_bytes():
    return build_macho()


def stage_bundle(root: Path, executable: bytes, marker: bool = True) -> Path:
    (root / "MacOS").mkdir(parents=True)
    (root / "Resources" / "en.lproj").mkdir(parents=True)
    (root / "Info.plist").write_bytes(INFO_PLIST)
    (root / "MacOS" / "Game").write_bytes(executable)
    (root / "Resources" / "a.txt").write_bytes(b"hi")
    (root / "Resources" / "b.txt").write_bytes(b"bye")
    (root / "Resources" / "en.lproj" / "locversion.plist").write_bytes(b"<plist/>")
    if marker:
        os.symlink("_CodeSignature/CodeResources", root / "CodeResources")
    return root


@pytest.fixture
def bundle_dir(tmp_path, macho_bytes):
    return stage_bundle(tmp_path / "Game.app" / "Contents", macho_bytes)
