import logging
from pathlib import Path
from typing import Optional

import typer
from rich.logging import RichHandler
from typing_extensions import Annotated

from machsign.builder import sign_bundle
from machsign.bundle import DirectoryFileSystem, ZipFileSystem
from machsign.cms import SigningIdentity
from machsign.config import SigningConfig
from machsign.exceptions import ConfigurationError, MachSignError
from machsign.macho import MachObjectFile, Segment64Command

logging.basicConfig(level=logging.INFO, handlers=[RichHandler()], format="%(message)s")

app = typer.Typer()


def _set_verbose(verbose: bool):
    logging.getLogger().setLevel(logging.DEBUG if verbose else logging.INFO)


def _load_identity(
    p12: Optional[Path],
    password: Optional[str],
    cert: Optional[Path],
    key: Optional[Path],
    chain: Optional[Path],
) -> SigningIdentity:
    if p12 is not None:
        if cert is not None or key is not None:
            raise ConfigurationError("Use either --p12 or --cert/--key, not both")
        return SigningIdentity.from_pkcs12(p12.read_bytes(), password)
    if cert is not None and key is not None:
        return SigningIdentity.from_pem(
            cert.read_bytes(),
            key.read_bytes(),
            chain.read_bytes() if chain is not None else None,
            password,
        )
    raise ConfigurationError(
        "A signing identity is required: pass --p12, or --cert and --key"
    )


@app.command()
def sign(
    bundle: Annotated[
        Path, typer.Argument(exists=True, help="Staged bundle directory or zip archive")
    ],
    p12: Annotated[
        Optional[Path],
        typer.Option(exists=True, dir_okay=False, help="PKCS#12 signing identity"),
    ] = None,
    password: Annotated[
        Optional[str], typer.Option(help="Password for the PKCS#12 file or PEM key")
    ] = None,
    cert: Annotated[
        Optional[Path],
        typer.Option(exists=True, dir_okay=False, help="PEM signing certificate"),
    ] = None,
    key: Annotated[
        Optional[Path],
        typer.Option(exists=True, dir_okay=False, help="PEM private key"),
    ] = None,
    chain: Annotated[
        Optional[Path],
        typer.Option(exists=True, dir_okay=False, help="PEM issuer certificates"),
    ] = None,
    config: Annotated[
        Optional[Path],
        typer.Option(
            exists=True, dir_okay=False, help="Signing options property list"
        ),
    ] = None,
    entitlements: Annotated[
        Optional[Path],
        typer.Option(exists=True, dir_okay=False, help="Entitlements plist to embed"),
    ] = None,
    maintain_requirements: Annotated[
        bool, typer.Option(help="Keep the requirements of an existing signature")
    ] = False,
    prefix: Annotated[
        str,
        typer.Option(help="Bundle root inside the zip archive, e.g. Game.app/Contents"),
    ] = "",
    output: Annotated[
        Optional[Path], typer.Option(help="Where to write the signed zip archive")
    ] = None,
    verbose: Annotated[
        bool, typer.Option(help="Log every field patch and blob")
    ] = False,
):
    """
    Sign the executable of a staged bundle and seal its resources

    A directory is signed in place, a zip archive is written to --output
    """
    _set_verbose(verbose)
    try:
        signing_config = (
            SigningConfig.load(config) if config is not None else SigningConfig()
        )
        if entitlements is not None:
            signing_config.entitlements = entitlements.read_text()
        if maintain_requirements:
            signing_config.maintain_requirements = True
        identity = _load_identity(p12, password, cert, key, chain)
        logging.info(f"Signing as '{identity.common_name}'")

        if bundle.is_dir():
            if output is not None:
                logging.warning("--output is ignored when signing a directory in place")
            fs = DirectoryFileSystem(bundle, signing_config.resources_dir)
            sign_bundle(fs, identity, signing_config)
            logging.info(f"Signed {bundle}")
        else:
            if output is None:
                raise ConfigurationError(
                    "--output is required when signing a zip archive"
                )
            fs = ZipFileSystem(bundle, prefix, signing_config.resources_dir)
            sign_bundle(fs, identity, signing_config)
            fs.save(output)
            logging.info(f"Signed {bundle} into {output}")
    except MachSignError as e:
        logging.error(f"Signing failed: {e}")
        raise typer.Exit(1)


@app.command()
def dump(
    executable: Annotated[
        Path, typer.Argument(exists=True, dir_okay=False, help="Mach-O executable")
    ],
    verbose: Annotated[
        bool, typer.Option(help="Log every command and blob as it is read")
    ] = False,
):
    """
    Print the header, load commands and embedded signature of a Mach-O executable
    """
    _set_verbose(verbose)
    try:
        image = MachObjectFile.load(executable)
        typer.echo(str(image))
        for i, command in enumerate(image.commands):
            typer.echo(f"  [{i}] {command}")
            if isinstance(command, Segment64Command):
                for section in command.sections:
                    typer.echo(f"        {section}")

        signature = image.read_code_signature()
    except MachSignError as e:
        logging.error(f"Could not read {executable}: {e}")
        raise typer.Exit(1)

    if signature is None:
        typer.echo("Not signed")
    else:
        typer.echo(str(signature))


def main():
    app()


if __name__ == "__main__":
    main()
