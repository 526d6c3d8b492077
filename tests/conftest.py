import socket
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from ipaddress import ip_address

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, ExtensionOID, NameOID
from OpenSSL import SSL

LEAF_NAMES = ["chain.test", "www.chain.test"]
LEAF_IP = "127.0.0.1"


@dataclass
class Pki:
    root: x509.Certificate
    intermediate: x509.Certificate
    leaf: x509.Certificate
    leaf_key: ec.EllipticCurvePrivateKey


def _name(common_name):
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _issue(subject, key, issuer, issuer_key, *, ca, dns_names=None, extra_extensions=()):
    now = datetime.now(timezone.utc).replace(microsecond=0)
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(_name(issuer))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=ca,
                crl_sign=ca,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key.public_key()),
            critical=False,
        )
    )
    if dns_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName(
                [x509.DNSName(name) for name in dns_names]
                + [x509.IPAddress(ip_address(LEAF_IP))]
            ),
            critical=False,
        ).add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
        )
    for extension in extra_extensions:
        builder = builder.add_extension(extension, critical=False)
    return builder.sign(issuer_key, hashes.SHA256())


@pytest.fixture(scope="session")
def pki():
    root_key = ec.generate_private_key(ec.SECP256R1())
    intermediate_key = ec.generate_private_key(ec.SECP256R1())
    leaf_key = ec.generate_private_key(ec.SECP256R1())

    root = _issue("Test Root CA", root_key, "Test Root CA", root_key, ca=True)
    intermediate = _issue(
        "Test Intermediate CA", intermediate_key, "Test Root CA", root_key, ca=True
    )
    leaf = _issue(
        "chain.test",
        leaf_key,
        "Test Intermediate CA",
        intermediate_key,
        ca=False,
        dns_names=LEAF_NAMES,
    )
    return Pki(root=root, intermediate=intermediate, leaf=leaf, leaf_key=leaf_key)


@pytest.fixture
def root_bundle(pki, tmp_path):
    path = tmp_path / "roots.pem"
    path.write_bytes(pki.root.public_bytes(serialization.Encoding.PEM))
    return path


class TLSServer:
    """Serves a fixed certificate chain on localhost, one handshake per connection."""

    def __init__(self, leaf, key, extra_chain):
        ctx = SSL.Context(SSL.TLS_SERVER_METHOD)
        ctx.use_certificate(leaf)
        ctx.use_privatekey(key)
        for cert in extra_chain:
            ctx.add_extra_chain_cert(cert)
        ctx.set_tlsext_servername_callback(self._record_servername)
        self.ctx = ctx
        self.server_names = []

        self.sock = socket.socket()
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(5)
        self.sock.settimeout(0.1)
        self.port = self.sock.getsockname()[1]
        self.stopped = threading.Event()
        self.thread = threading.Thread(target=self._serve, daemon=True)
        self.thread.start()

    def _record_servername(self, conn):
        self.server_names.append(conn.get_servername())

    def _serve(self):
        while not self.stopped.is_set():
            try:
                client, _ = self.sock.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            client.setblocking(True)
            conn = SSL.Connection(self.ctx, client)
            conn.set_accept_state()
            try:
                conn.do_handshake()
            except SSL.Error:
                pass
            finally:
                client.close()

    def close(self):
        self.stopped.set()
        self.thread.join(timeout=5)
        self.sock.close()


@pytest.fixture
def tls_server(pki):
    server = TLSServer(pki.leaf, pki.leaf_key, [pki.intermediate])
    yield server
    server.close()


@pytest.fixture
def leaf_only_server(pki):
    server = TLSServer(pki.leaf, pki.leaf_key, [])
    yield server
    server.close()


@pytest.fixture
def silent_server():
    """Accepts TCP connections (via the backlog) but never answers."""
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    sock.listen(5)
    yield sock.getsockname()[1]
    sock.close()


@pytest.fixture
def closed_port():
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture(scope="session")
def other_root():
    key = ec.generate_private_key(ec.SECP256R1())
    return _issue("Unrelated Root CA", key, "Unrelated Root CA", key, ca=True)


@pytest.fixture
def broken_san_server():
    """Serves a self-signed cert whose SAN extension is not valid DER."""
    key = ec.generate_private_key(ec.SECP256R1())
    garbage_san = x509.UnrecognizedExtension(
        ExtensionOID.SUBJECT_ALTERNATIVE_NAME, b"\x30\x03\x82\x01"
    )
    cert = _issue(
        "broken.test", key, "broken.test", key, ca=False, extra_extensions=[garbage_san]
    )
    server = TLSServer(cert, key, [])
    yield server
    server.close()
