"""
The resource directory (_CodeSignature/CodeResources) sealing the bundle resources
"""

from __future__ import annotations

import hashlib
import logging
import plistlib
import re
from typing import Mapping

from .bundle import FileSystemAdapter
from .exceptions import StructuralPreconditionError

logger = logging.getLogger(__name__)

# Symlink at the bundle root pointing at CODE_RESOURCES_PATH
CODE_RESOURCES_MARKER = "CodeResources"
CODE_RESOURCES_PATH = "_CodeSignature/CodeResources"

VERSION_PLIST = "version.plist"
DEFAULT_RESOURCES_DIR = "Resources"


def code_resources_rules(resources_dir: str = DEFAULT_RESOURCES_DIR) -> dict:
    prefix = "^" + re.escape(resources_dir.strip("/")) + "/"
    return {
        prefix: True,
        prefix + ".*\\.lproj/": {"optional": True, "weight": 1000.0},
        prefix + ".*\\.lproj/locversion.plist$": {"omit": True, "weight": 1100.0},
        "^version.plist$": True,
    }


CODE_RESOURCES_RULES = code_resources_rules()


def is_omitted(path: str, resources_dir: str = DEFAULT_RESOURCES_DIR) -> bool:
    return any(
        re.match(pattern, path)
        for pattern, rule in code_resources_rules(resources_dir).items()
        if isinstance(rule, dict) and rule.get("omit")
    )


def hash_files(
    files: Mapping[str, bytes], resources_dir: str = DEFAULT_RESOURCES_DIR
) -> dict[str, bytes]:
    hashes = {}
    for path, data in files.items():
        if is_omitted(path, resources_dir):
            logger.debug(f"Omitting {path} from the resource directory")
            continue
        hashes[path] = hashlib.sha1(data).digest()
    return hashes


def encode_code_resources(
    hashes: Mapping[str, bytes], resources_dir: str = DEFAULT_RESOURCES_DIR
) -> bytes:
    return plistlib.dumps(
        {"files": dict(hashes), "rules": code_resources_rules(resources_dir)},
        fmt=plistlib.FMT_XML,
    )


def build_code_resources(
    files: Mapping[str, bytes], resources_dir: str = DEFAULT_RESOURCES_DIR
) -> bytes:
    """
    Builds the CodeResources property list for bundle relative path -> contents
    """
    return encode_code_resources(hash_files(files, resources_dir), resources_dir)


def hash_resources(
    fs: FileSystemAdapter, resources_dir: str = DEFAULT_RESOURCES_DIR
) -> dict[str, bytes]:
    """
    Hashes every resource file the bundle reports (and version.plist, if there is one)
    """
    paths = list(fs.list_resource_files())
    if fs.exists(VERSION_PLIST):
        paths.append(VERSION_PLIST)

    contents = {path: fs.read_all_bytes(path) for path in paths}
    hashes = hash_files(contents, resources_dir)
    logger.debug(f"Hashed {len(hashes)} resource files")
    return hashes


def check_code_resources_marker(fs: FileSystemAdapter):
    if not fs.exists(CODE_RESOURCES_MARKER):
        raise StructuralPreconditionError(
            f"Bundle is missing the {CODE_RESOURCES_MARKER} symlink to "
            f"{CODE_RESOURCES_PATH}"
        )
