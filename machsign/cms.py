"""
Detached CMS (PKCS#7) signatures over a code directory, and the identity used to
make them

The structure is assembled with asn1crypto, the RSA signature itself comes from
cryptography. Only RSA keys are accepted: a PKCS#1 v1.5 signature is always exactly
as long as the modulus, which keeps the DER length of the whole CMS blob fixed for a
given certificate chain and time.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union

from asn1crypto import cms as asn1cms
from asn1crypto import x509 as asn1x509
from asn1crypto.algos import DigestAlgorithmId, SignedDigestAlgorithmId
from asn1crypto.core import OctetString, UTCTime
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _password_bytes(password: Optional[Union[str, bytes]]) -> Optional[bytes]:
    if password is None or isinstance(password, bytes):
        return password
    return password.encode("utf-8")


@dataclass
class SigningIdentity:
    certificate: x509.Certificate
    private_key: rsa.RSAPrivateKey
    # Issuer chain, leaf first, not including `certificate`
    chain: list[x509.Certificate] = field(default_factory=list)

    def __post_init__(self):
        if not isinstance(self.private_key, rsa.RSAPrivateKey):
            raise ConfigurationError(
                "Only RSA signing keys are supported, "
                f"got {type(self.private_key).__name__}"
            )
        public_key = self.certificate.public_key()
        expected = self.private_key.public_key().public_numbers()
        if (
            not isinstance(public_key, rsa.RSAPublicKey)
            or public_key.public_numbers() != expected
        ):
            raise ConfigurationError(
                "The private key does not belong to the signing certificate"
            )

    @property
    def common_name(self) -> str:
        subject = self.certificate.subject
        names = subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)
        return str(names[0].value) if names else subject.rfc4514_string()

    @classmethod
    def from_pkcs12(
        cls, data: bytes, password: Optional[Union[str, bytes]] = None
    ) -> SigningIdentity:
        try:
            key, certificate, additional = pkcs12.load_key_and_certificates(
                data, _password_bytes(password)
            )
        except ValueError as e:
            raise ConfigurationError(f"Could not load PKCS#12 identity: {e}") from e
        if key is None or certificate is None:
            raise ConfigurationError(
                "PKCS#12 file must contain both a certificate and its private key"
            )
        return cls(certificate, key, list(additional or []))  # type: ignore

    @classmethod
    def from_pem(
        cls,
        cert_pem: bytes,
        key_pem: bytes,
        chain_pem: Optional[bytes] = None,
        password: Optional[Union[str, bytes]] = None,
    ) -> SigningIdentity:
        try:
            certificate = x509.load_pem_x509_certificate(cert_pem)
            key = serialization.load_pem_private_key(key_pem, _password_bytes(password))
            chain = x509.load_pem_x509_certificates(chain_pem) if chain_pem else []
        except ValueError as e:
            raise ConfigurationError(f"Could not load PEM identity: {e}") from e
        return cls(certificate, key, chain)  # type: ignore


def _to_asn1(certificate: x509.Certificate) -> asn1x509.Certificate:
    der = certificate.public_bytes(serialization.Encoding.DER)
    return asn1x509.Certificate.load(der)


def make_signed_attrs(digest: bytes, signing_time: datetime) -> asn1cms.CMSAttributes:
    if signing_time.tzinfo is None:
        signing_time = signing_time.replace(tzinfo=timezone.utc)

    content_type = asn1cms.CMSAttribute(
        {
            "type": asn1cms.CMSAttributeType.unmap("content_type"),
            "values": [asn1cms.ContentType.unmap("data")],
        }
    )

    time = UTCTime()
    time.set(signing_time.astimezone(timezone.utc))
    signing_time_attr = asn1cms.CMSAttribute(
        {"type": asn1cms.CMSAttributeType.unmap("signing_time"), "values": [time]}
    )

    message_digest = asn1cms.CMSAttribute(
        {
            "type": asn1cms.CMSAttributeType.unmap("message_digest"),
            "values": [OctetString(digest)],
        }
    )

    return asn1cms.CMSAttributes([content_type, signing_time_attr, message_digest])


def make_cms(
    identity: SigningIdentity, signed_attrs: asn1cms.CMSAttributes, signature: bytes
) -> asn1cms.ContentInfo:
    certificate = _to_asn1(identity.certificate)

    sid = asn1cms.SignerIdentifier(
        "issuer_and_serial_number",
        asn1cms.IssuerAndSerialNumber(
            {
                "issuer": certificate["tbs_certificate"]["issuer"],
                "serial_number": certificate["tbs_certificate"]["serial_number"],
            }
        ),
    )

    digest_algorithm = asn1cms.DigestAlgorithm({"algorithm": DigestAlgorithmId("sha1")})
    signature_algorithm = asn1cms.SignedDigestAlgorithm(
        {"algorithm": SignedDigestAlgorithmId("rsassa_pkcs1v15")}
    )

    signer_info = asn1cms.SignerInfo(
        {
            "version": asn1cms.CMSVersion(1),
            "sid": sid,
            "digest_algorithm": digest_algorithm,
            "signed_attrs": signed_attrs,
            "signature_algorithm": signature_algorithm,
            "signature": OctetString(signature),
        }
    )

    # Detached, so the encapsulated content is left out
    signed_data = asn1cms.SignedData(
        {
            "version": asn1cms.CMSVersion(1),
            "digest_algorithms": [digest_algorithm],
            "encap_content_info": asn1cms.ContentInfo({"content_type": "data"}),
            # A DER SET OF, asn1crypto sorts it by encoding on dump
            "certificates": [certificate] + [_to_asn1(c) for c in identity.chain],
            "signer_infos": [signer_info],
        }
    )

    return asn1cms.ContentInfo(
        {
            "content_type": asn1cms.ContentType.unmap("signed_data"),
            "content": signed_data,
        }
    )


def sign_detached(
    identity: SigningIdentity, content: bytes, signing_time: datetime
) -> bytes:
    """
    Signs `content` with SHA-1 / RSA PKCS#1 v1.5 and returns the DER encoded
    CMS ContentInfo
    """
    digest = hashlib.sha1(content).digest()
    signed_attrs = make_signed_attrs(digest, signing_time)
    signature = identity.private_key.sign(
        signed_attrs.dump(), padding.PKCS1v15(), hashes.SHA1()
    )

    result = make_cms(identity, signed_attrs, signature).dump()
    logger.debug(
        f"Signed {len(content)} bytes (sha1 {digest.hex()}) "
        f"as '{identity.common_name}', CMS is {len(result)} bytes"
    )
    return result


def describe_signature(data: bytes) -> str:
    if not data:
        return "empty"

    try:
        signed_data = asn1cms.ContentInfo.load(data)["content"]
        descriptions = []
        for signer in signed_data["signer_infos"]:
            sid = signer["sid"].chosen
            description = (
                f"signer issued by '{sid['issuer'].human_friendly}' "
                f"serial {sid['serial_number'].native}"
            )
            for attribute in signer["signed_attrs"]:
                kind = attribute["type"].native
                value = attribute["values"][0].native
                if kind == "signing_time":
                    description += f", signed at {value.isoformat()}"
                elif kind == "message_digest":
                    description += f", digest {value.hex()}"
            descriptions.append(description)
    except ValueError as e:
        return f"{len(data)} bytes, not a parseable CMS structure ({e})"

    return f"{len(data)} bytes, " + "; ".join(descriptions)
