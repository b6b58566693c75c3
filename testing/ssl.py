"""Self-signed SSL certificates for testing the broker over `wss://`.

Warning:
    None of the functions in this module are safe and should only be used
    for creating temporary self-signed certificates for testing.
"""

from __future__ import annotations

import datetime
import pathlib
import ssl
from typing import NamedTuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import generate_private_key
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.x509 import Certificate
from cryptography.x509.oid import NameOID


class SSLContextFixture(NamedTuple):
    """SSL fixture return type.

    Attributes:
        certfile: Path to the PEM certificate.
        keyfile: Path to the PEM private key.
        server_context: Context for a broker server.
        client_context: Context for a peer session which trusts
            `certfile` and verifies the `localhost` hostname.
    """

    certfile: str
    keyfile: str
    server_context: ssl.SSLContext
    client_context: ssl.SSLContext


@pytest.fixture(scope='session')
def ssl_context(tmp_path_factory: pytest.TempPathFactory) -> SSLContextFixture:
    """Create server and client SSL contexts for `localhost`."""
    tmp_path = tmp_path_factory.mktemp('ssl-context-fixture')
    certfile = tmp_path / 'cert.pem'
    keyfile = tmp_path / 'key.pem'
    cert, key = create_self_signed_cert('localhost')
    write_cert_key_pair(cert, key, certfile, keyfile)

    server_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    server_context.load_cert_chain(certfile, keyfile=keyfile)

    client_context = ssl.create_default_context(cafile=str(certfile))

    return SSLContextFixture(
        str(certfile),
        str(keyfile),
        server_context,
        client_context,
    )


def create_self_signed_cert(
    hostname: str,
    days: int = 1,
) -> tuple[Certificate, RSAPrivateKey]:
    """Create a self-signed certificate and private key for `hostname`."""
    key = generate_private_key(public_exponent=65537, key_size=2048)

    # Subject and issuer are the same for a self-signed certificate.
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, 'peerbroker'),
            x509.NameAttribute(NameOID.COMMON_NAME, hostname),
        ],
    )
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(hostname)]),
            critical=False,
        )
        .add_extension(
            x509.BasicConstraints(ca=True, path_length=None),
            critical=True,
        )
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
            critical=False,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(
                key.public_key(),
            ),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )

    return cert, key


def write_cert_key_pair(
    cert: Certificate,
    key: RSAPrivateKey,
    certfile: str | pathlib.Path,
    keyfile: str | pathlib.Path,
) -> None:
    """Write a certificate and unencrypted private key to PEM files."""
    with open(keyfile, 'wb') as f:
        f.write(
            key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.TraditionalOpenSSL,
                encryption_algorithm=serialization.NoEncryption(),
            ),
        )

    with open(certfile, 'wb') as f:
        f.write(cert.public_bytes(serialization.Encoding.PEM))
