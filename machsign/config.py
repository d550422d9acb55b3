from __future__ import annotations

import logging
import plistlib
from dataclasses import dataclass, fields
from datetime import datetime
from pathlib import Path
from typing import Optional

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class SigningConfig:
    # Carry the requirements blob of an already signed executable forward
    # instead of emitting an empty one
    maintain_requirements: bool = False
    # Entitlements plist text embedded in the signature
    entitlements: str = ""
    # Bundle relative directory holding CFBundleExecutable
    executable_dir: str = "MacOS"
    # Bundle relative directory whose files are listed in CodeResources
    resources_dir: str = "Resources"
    # Timestamp used for both signing passes, None means now
    signing_time: Optional[datetime] = None
    write_code_resources: bool = True

    @classmethod
    def from_dict(cls, values: dict) -> SigningConfig:
        expected = {
            "maintain_requirements": bool,
            "entitlements": str,
            "executable_dir": str,
            "resources_dir": str,
            "signing_time": datetime,
            "write_code_resources": bool,
        }
        assert set(expected) == {f.name for f in fields(cls)}

        kwargs = {}
        for key, value in values.items():
            if key not in expected:
                logger.warning(f"Ignoring unknown configuration key '{key}'")
                continue
            if not isinstance(value, expected[key]):
                raise ConfigurationError(
                    f"Configuration key '{key}' must be a {expected[key].__name__}, "
                    f"got {type(value).__name__}"
                )
            kwargs[key] = value
        return cls(**kwargs)

    @classmethod
    def load(cls, path: Path | str) -> SigningConfig:
        try:
            with open(path, "rb") as f:
                values = plistlib.load(f)
        except (OSError, plistlib.InvalidFileException) as e:
            raise ConfigurationError(f"Could not read configuration {path}: {e}") from e

        if not isinstance(values, dict):
            raise ConfigurationError(
                f"Configuration {path} must be a dictionary at the top level"
            )
        return cls.from_dict(values)
