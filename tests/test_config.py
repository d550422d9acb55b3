import datetime
import logging
import plistlib

import pytest

from machsign.config import SigningConfig
from machsign.exceptions import ConfigurationError


def test_defaults():
    config = SigningConfig()
    assert not config.maintain_requirements
    assert config.entitlements == ""
    assert config.executable_dir == "MacOS"
    assert config.resources_dir == "Resources"
    assert config.signing_time is None
    assert config.write_code_resources


def test_load(tmp_path):
    path = tmp_path / "signing.plist"
    path.write_bytes(
        plistlib.dumps(
            {
                "maintain_requirements": True,
                "executable_dir": "Binaries",
                "signing_time": datetime.datetime(2024, 3, 1, 12, 30),
                "write_code_resources": False,
            }
        )
    )
    config = SigningConfig.load(path)
    assert config.maintain_requirements
    assert config.executable_dir == "Binaries"
    assert config.resources_dir == "Resources"
    assert config.signing_time == datetime.datetime(2024, 3, 1, 12, 30)
    assert not config.write_code_resources


def test_unknown_keys_are_ignored(caplog):
    with caplog.at_level(logging.WARNING):
        config = SigningConfig.from_dict({"entitlements": "<plist/>", "verbose": True})
    assert config.entitlements == "<plist/>"
    assert "verbose" in caplog.text


def test_wrong_type():
    with pytest.raises(ConfigurationError, match="maintain_requirements"):
        SigningConfig.from_dict({"maintain_requirements": "yes"})


def test_not_a_dictionary(tmp_path):
    path = tmp_path / "signing.plist"
    path.write_bytes(plistlib.dumps(["maintain_requirements"]))
    with pytest.raises(ConfigurationError, match="dictionary"):
        SigningConfig.load(path)


def test_unreadable(tmp_path):
    with pytest.raises(ConfigurationError):
        SigningConfig.load(tmp_path / "missing.plist")

    path = tmp_path / "garbage.plist"
    path.write_bytes(b"garbage")
    with pytest.raises(ConfigurationError):
        SigningConfig.load(path)
