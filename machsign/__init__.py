from .builder import CodeSignatureBuilder, SigningState, sign_bundle
from .bundle import BundleInfo, DirectoryFileSystem, FileSystemAdapter, ZipFileSystem
from .cms import SigningIdentity
from .config import SigningConfig
from .exceptions import (
    ConfigurationError,
    MachSignError,
    MalformedRecordError,
    SizeMismatchError,
    StructuralPreconditionError,
    TruncatedInputError,
)
from .macho import MachObjectFile

__all__ = [
    "BundleInfo",
    "CodeSignatureBuilder",
    "ConfigurationError",
    "DirectoryFileSystem",
    "FileSystemAdapter",
    "MachObjectFile",
    "MachSignError",
    "MalformedRecordError",
    "SigningConfig",
    "SigningIdentity",
    "SigningState",
    "SizeMismatchError",
    "StructuralPreconditionError",
    "TruncatedInputError",
    "ZipFileSystem",
    "sign_bundle",
]
