import zipfile

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from typer.testing import CliRunner

from conftest import build_macho
from machsign.cli import app
from machsign.macho import MachObjectFile

runner = CliRunner()


@pytest.fixture
def pem_files(tmp_path, identity):
    cert = tmp_path / "cert.pem"
    cert.write_bytes(identity.certificate.public_bytes(serialization.Encoding.PEM))
    key = tmp_path / "key.pem"
    key.write_bytes(
        identity.private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        )
    )
    chain = tmp_path / "chain.pem"
    chain.write_bytes(
        b"".join(c.public_bytes(serialization.Encoding.PEM) for c in identity.chain)
    )
    return ["--cert", str(cert), "--key", str(key), "--chain", str(chain)]


def assert_signed(data: bytes):
    signature = MachObjectFile.from_bytes(data).read_code_signature()
    assert signature is not None
    assert signature.code_directory.identifier == "com.example.game"


def test_sign_directory(bundle_dir, pem_files):
    result = runner.invoke(app, ["sign", str(bundle_dir), *pem_files])
    assert result.exit_code == 0, result.output
    assert_signed((bundle_dir / "MacOS" / "Game").read_bytes())
    assert (bundle_dir / "_CodeSignature" / "CodeResources").exists()


def test_sign_with_p12(tmp_path, bundle_dir, identity):
    p12 = tmp_path / "identity.p12"
    p12.write_bytes(
        pkcs12.serialize_key_and_certificates(
            b"test",
            identity.private_key,
            identity.certificate,
            identity.chain,
            serialization.BestAvailableEncryption(b"secret"),
        )
    )
    result = runner.invoke(
        app, ["sign", str(bundle_dir), "--p12", str(p12), "--password", "secret"]
    )
    assert result.exit_code == 0, result.output
    assert_signed((bundle_dir / "MacOS" / "Game").read_bytes())


def test_sign_with_entitlements(tmp_path, bundle_dir, pem_files):
    entitlements = tmp_path / "entitlements.plist"
    entitlements.write_text("<plist/>")
    result = runner.invoke(
        app, ["sign", str(bundle_dir), *pem_files, "--entitlements", str(entitlements)]
    )
    assert result.exit_code == 0, result.output

    signed = (bundle_dir / "MacOS" / "Game").read_bytes()
    signature = MachObjectFile.from_bytes(signed).read_code_signature()
    assert signature.get_blob_by_key(5).text == "<plist/>"


def test_sign_without_identity(bundle_dir):
    original = (bundle_dir / "MacOS" / "Game").read_bytes()
    result = runner.invoke(app, ["sign", str(bundle_dir)])
    assert result.exit_code == 1
    assert (bundle_dir / "MacOS" / "Game").read_bytes() == original


def test_sign_unsignable_executable(bundle_dir, pem_files):
    (bundle_dir / "MacOS" / "Game").write_bytes(build_macho(include_linkedit=False))
    result = runner.invoke(app, ["sign", str(bundle_dir), *pem_files])
    assert result.exit_code == 1


@pytest.fixture
def bundle_zip(tmp_path, bundle_dir):
    path = tmp_path / "Game.zip"
    with zipfile.ZipFile(path, "w") as archive:
        for name in ["Info.plist", "MacOS/Game", "Resources/a.txt", "Resources/b.txt"]:
            archive.write(bundle_dir / name, f"Game.app/Contents/{name}")
        archive.writestr(
            "Game.app/Contents/CodeResources", "_CodeSignature/CodeResources"
        )
    return path


def test_sign_zip(tmp_path, bundle_zip, pem_files):
    output = tmp_path / "Signed.zip"
    result = runner.invoke(
        app,
        [
            "sign",
            str(bundle_zip),
            *pem_files,
            "--prefix",
            "Game.app/Contents",
            "--output",
            str(output),
        ],
    )
    assert result.exit_code == 0, result.output

    with zipfile.ZipFile(output) as archive:
        assert_signed(archive.read("Game.app/Contents/MacOS/Game"))
        code_resources = archive.read("Game.app/Contents/_CodeSignature/CodeResources")
        assert code_resources.startswith(b"<?xml")


def test_sign_zip_needs_output(bundle_zip, pem_files):
    result = runner.invoke(
        app, ["sign", str(bundle_zip), *pem_files, "--prefix", "Game.app/Contents"]
    )
    assert result.exit_code == 1


def test_dump_unsigned(tmp_path, macho_bytes):
    path = tmp_path / "Game"
    path.write_bytes(macho_bytes)
    result = runner.invoke(app, ["dump", str(path)])
    assert result.exit_code == 0, result.output
    assert "with 9 load commands" in result.output
    assert "Segment64 '__LINKEDIT'" in result.output
    assert "Section '__TEXT,__text'" in result.output
    assert "Not signed" in result.output


def test_dump_signed(bundle_dir, pem_files):
    runner.invoke(app, ["sign", str(bundle_dir), *pem_files])
    result = runner.invoke(app, ["dump", str(bundle_dir / "MacOS" / "Game")])
    assert result.exit_code == 0, result.output
    assert "Ident: com.example.game" in result.output
    assert "Entitlements" in result.output
    assert "CMS Blob" in result.output


def test_dump_not_macho(tmp_path):
    path = tmp_path / "Game"
    path.write_bytes(b"#!/bin/sh\n")
    result = runner.invoke(app, ["dump", str(path)])
    assert result.exit_code == 1
