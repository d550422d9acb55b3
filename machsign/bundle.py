"""
Access to the staged bundle being signed, which can be a directory tree or a zip
archive

All paths are bundle relative and use forward slashes, e.g. `MacOS/Game` or
`Resources/a.txt`
"""

from __future__ import annotations

import logging
import os
import plistlib
import zipfile
from dataclasses import dataclass, field
from io import BytesIO
from pathlib import Path
from typing import Protocol

from .exceptions import MalformedRecordError, StructuralPreconditionError

logger = logging.getLogger(__name__)

INFO_PLIST = "Info.plist"


class FileSystemAdapter(Protocol):
    def read_all_bytes(self, path: str) -> bytes:
        ...

    def write_all_bytes(self, path: str, data: bytes):
        ...

    def list_resource_files(self) -> list[str]:
        ...

    def exists(self, path: str) -> bool:
        ...


class DirectoryFileSystem:
    def __init__(self, root: Path | str, resources_dir: str = "Resources"):
        self.root = Path(root)
        self.resources_dir = resources_dir

    def _resolve(self, path: str) -> Path:
        return self.root.joinpath(*path.split("/"))

    def read_all_bytes(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except FileNotFoundError as e:
            raise StructuralPreconditionError(f"Bundle is missing {path}") from e

    def write_all_bytes(self, path: str, data: bytes):
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        # Replace rather than write through an existing symlink
        if target.is_symlink():
            target.unlink()
        target.write_bytes(data)
        logger.debug(f"Wrote {len(data)} bytes to {target}")

    def list_resource_files(self) -> list[str]:
        resources = self._resolve(self.resources_dir)
        if not resources.is_dir():
            return []
        return sorted(
            path.relative_to(self.root).as_posix()
            for path in resources.rglob("*")
            if path.is_file()
        )

    def exists(self, path: str) -> bool:
        # A dangling symlink still counts, the CodeResources marker may point at a
        # file that is only written after signing
        return os.path.lexists(self._resolve(path))


class ZipFileSystem:
    """
    A bundle inside a zip archive, rooted at `prefix`

    Writes are kept in memory until save() re-emits the archive
    """

    def __init__(
        self,
        archive_path: Path | str,
        prefix: str = "",
        resources_dir: str = "Resources",
    ):
        self.archive_path = Path(archive_path)
        self.prefix = prefix.strip("/") + "/" if prefix.strip("/") else ""
        self.resources_dir = resources_dir
        self.overrides: dict[str, bytes] = {}

        try:
            with zipfile.ZipFile(self.archive_path) as archive:
                self._names = archive.namelist()
        except zipfile.BadZipFile as e:
            raise MalformedRecordError(
                f"{self.archive_path} is not a zip archive: {e}"
            ) from e

    def _name(self, path: str) -> str:
        return self.prefix + path

    def read_all_bytes(self, path: str) -> bytes:
        name = self._name(path)
        if name in self.overrides:
            return self.overrides[name]
        if name not in self._names:
            raise StructuralPreconditionError(f"Archive is missing {name}")
        with zipfile.ZipFile(self.archive_path) as archive:
            return archive.read(name)

    def write_all_bytes(self, path: str, data: bytes):
        self.overrides[self._name(path)] = data
        logger.debug(f"Staged {len(data)} bytes for {self._name(path)}")

    def list_resource_files(self) -> list[str]:
        start = self._name(self.resources_dir.strip("/") + "/")
        names = set(self._names) | set(self.overrides)
        return sorted(
            name[len(self.prefix) :]
            for name in names
            if name.startswith(start) and not name.endswith("/")
        )

    def exists(self, path: str) -> bool:
        name = self._name(path)
        return (
            name in self.overrides or name in self._names or name + "/" in self._names
        )

    def save(self, path: Path | str):
        """
        Writes the archive with all staged writes applied
        (the destination may be the source archive)
        """
        output = BytesIO()
        with zipfile.ZipFile(self.archive_path) as source, zipfile.ZipFile(
            output, "w", zipfile.ZIP_DEFLATED
        ) as destination:
            written = set()
            for info in source.infolist():
                if info.filename in self.overrides:
                    # A replaced symlink becomes a regular file
                    replacement = zipfile.ZipInfo(
                        info.filename, date_time=info.date_time
                    )
                    replacement.compress_type = zipfile.ZIP_DEFLATED
                    executable = info.external_attr >> 16 & 0o111
                    mode = 0o100755 if executable else 0o100644
                    replacement.external_attr = mode << 16
                    destination.writestr(replacement, self.overrides[info.filename])
                else:
                    destination.writestr(info, source.read(info))
                written.add(info.filename)

            for name, data in self.overrides.items():
                if name not in written:
                    destination.writestr(name, data, zipfile.ZIP_DEFLATED)

        Path(path).write_bytes(output.getvalue())
        logger.info(f"Saved {path} ({len(self.overrides)} files replaced or added)")


@dataclass
class BundleInfo:
    identifier: str
    executable: str
    properties: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_plist(cls, data: bytes) -> BundleInfo:
        try:
            properties = plistlib.loads(data)
        except (plistlib.InvalidFileException, ValueError) as e:
            raise MalformedRecordError(f"Info.plist is not a property list: {e}") from e
        if not isinstance(properties, dict):
            raise MalformedRecordError(
                "Info.plist must be a dictionary at the top level"
            )

        for key in ("CFBundleIdentifier", "CFBundleExecutable"):
            if not isinstance(properties.get(key), str) or not properties[key]:
                raise StructuralPreconditionError(f"Info.plist does not specify {key}")

        return cls(
            identifier=properties["CFBundleIdentifier"],
            executable=properties["CFBundleExecutable"],
            properties=properties,
        )

    def executable_path(self, executable_dir: str = "MacOS") -> str:
        executable_dir = executable_dir.strip("/")
        if not executable_dir:
            return self.executable
        return f"{executable_dir}/{self.executable}"
