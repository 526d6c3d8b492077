import json
import os
import select
import socket
import ssl
import sys
import time
from collections.abc import Iterable, Sequence
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from ipaddress import IPv4Address, IPv6Address, ip_address
from typing import Any
from urllib.parse import urlsplit

import certifi
import click
import idna
from cryptography import x509
from cryptography.x509 import Certificate, GeneralName
from cryptography.x509.verification import PolicyBuilder, Store, VerificationError
from OpenSSL import SSL

__version__ = "2026.10.19"

DEFAULT_PORT = 443
DEFAULT_TIMEOUT = 5.0
CA_BUNDLE_ENVVAR = "CERTINSPECT_CA_BUNDLE"

VALID_CHAIN_MESSAGE = "Certificate chain is valid."
INVALID_CHAIN_PREFIX = "Certificate chain verification failed: "


class InspectorError(Exception):
    """Base class for everything that stops an inspection from completing."""


class MissingInputError(InspectorError):
    pass


class MalformedInputError(InspectorError):
    pass


class TLSConnectionError(InspectorError):
    """Dialing the target or completing the TLS handshake failed."""

    def __init__(self, message: str, target: "Target | None" = None) -> None:
        super().__init__(message)
        self.target = target


class NoCertificatesError(InspectorError):
    """The handshake completed, but the peer presented no certificates."""


class CertificateParseError(InspectorError):
    """The peer presented a certificate that cannot be parsed."""


@dataclass(frozen=True)
class Target:
    address: str
    port: int
    server_name: str

    def __str__(self) -> str:
        if isinstance(_as_ip(self.address), IPv6Address):
            return f"[{self.address}]:{self.port}"
        return f"{self.address}:{self.port}"

    @property
    def server_name_is_ip(self) -> bool:
        return _as_ip(self.server_name) is not None


@dataclass(frozen=True)
class CertificateSummary:
    subject: str
    issuer: str
    not_before: datetime
    not_after: datetime
    is_ca: bool
    signature_algorithm: str
    # Only ever filled for the leaf.
    dns_names: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "subject": self.subject,
            "issuer": self.issuer,
            "not_before": format_timestamp(self.not_before),
            "not_after": format_timestamp(self.not_after),
        }
        if self.dns_names:
            out["dns_names"] = list(self.dns_names)
        out["is_ca"] = self.is_ca
        out["signature_algorithm"] = self.signature_algorithm
        return out


@dataclass(frozen=True)
class ChainResult:
    target_url: str
    certificates: tuple[CertificateSummary, ...]
    validation_message: str

    @property
    def leaf(self) -> CertificateSummary:
        return self.certificates[0]

    @property
    def is_valid(self) -> bool:
        return self.validation_message == VALID_CHAIN_MESSAGE

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_url": self.target_url,
            "certificates": [cert.to_dict() for cert in self.certificates],
            "chain_validation_message": self.validation_message,
        }


def _as_ip(value: str) -> IPv4Address | IPv6Address | None:
    try:
        return ip_address(value)
    except ValueError:
        return None


def _normalize_hostname(hostname: str) -> str:
    if hostname.isascii() or _as_ip(hostname) is not None:
        return hostname
    try:
        return idna.encode(hostname).decode()
    except idna.IDNAError as error:
        raise MalformedInputError(f"Invalid hostname '{hostname}': {error}") from error


def _split_host_input(value: str) -> tuple[str, int | None]:
    """
    Splits a host, host:port or URL into (hostname, port).

    Bare values without a scheme are parsed as network locations,
    so 'example.com:8443' works the same as '//example.com:8443'.
    """
    # A bare IPv6 address can be confused
    # with a host:port combo, so let's try
    # to parse it as that first.
    if _as_ip(value) is not None:
        return value, None

    parsed = urlsplit(value)
    if not parsed.netloc:
        parsed = urlsplit(f"//{value}")

    if not parsed.hostname:
        raise MalformedInputError(f"No host found in '{value}'")

    try:
        port = parsed.port
    except ValueError as ve:
        raise MalformedInputError(f"Invalid port in '{value}'") from ve

    return _normalize_hostname(parsed.hostname), port


def parse_host_input(value: str, servername: str | None = None) -> Target:
    if not value:
        raise MissingInputError("A host to connect to is required.")
    hostname, port = _split_host_input(value)
    return Target(
        hostname,
        DEFAULT_PORT if port is None else port,
        _normalize_hostname(servername) if servername else hostname,
    )


def parse_https_url(url: str) -> Target:
    if not url:
        raise MissingInputError("Missing 'url' query parameter")
    parsed = urlsplit(url)
    if parsed.scheme != "https" or not parsed.hostname:
        raise MalformedInputError(f"Invalid URL '{url}', expected https://host[:port]")
    try:
        port = parsed.port
    except ValueError as ve:
        raise MalformedInputError(f"Invalid port in '{url}'") from ve

    hostname = _normalize_hostname(parsed.hostname)
    return Target(hostname, DEFAULT_PORT if port is None else port, hostname)


def target_from_ip_and_url(ip: str | None, url: str | None) -> Target:
    """
    Builds a target that dials `ip`, but presents and validates
    the hostname found in `url`.
    """
    if not ip or not url:
        raise MissingInputError("Query parameters 'ip' and 'url' are required.")
    hostname, port = _split_host_input(url)
    return Target(ip, DEFAULT_PORT if port is None else port, hostname)


def format_timestamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def get_not_before(cert: Certificate) -> datetime:
    return cert.not_valid_before_utc


def get_not_after(cert: Certificate) -> datetime:
    return cert.not_valid_after_utc


def get_dns_names(cert: Certificate) -> tuple[str, ...]:
    # Extensions are parsed lazily, so a broken one only shows up here.
    try:
        ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except (x509.ExtensionNotFound, x509.DuplicateExtension, ValueError):
        return ()
    return tuple(ext.value.get_values_for_type(x509.DNSName))


def get_is_ca(cert: Certificate) -> bool:
    try:
        ext = cert.extensions.get_extension_for_class(x509.BasicConstraints)
    except (x509.ExtensionNotFound, x509.DuplicateExtension, ValueError):
        return False
    return ext.value.ca


def get_signature_algorithm_name(cert: Certificate) -> str:
    oid = cert.signature_algorithm_oid
    name = oid._name
    return oid.dotted_string if name == "Unknown OID" else name


def summarize_certificate(cert: Certificate, *, with_names: bool) -> CertificateSummary:
    return CertificateSummary(
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        not_before=get_not_before(cert),
        not_after=get_not_after(cert),
        is_ca=get_is_ca(cert),
        signature_algorithm=get_signature_algorithm_name(cert),
        dns_names=get_dns_names(cert) if with_names else (),
    )


def summarize_chain(certs: Sequence[Certificate]) -> tuple[CertificateSummary, ...]:
    return tuple(
        summarize_certificate(cert, with_names=index == 0)
        for index, cert in enumerate(certs)
    )


def load_trust_roots(ca_bundle: str | None = None) -> list[Certificate]:
    """
    Loads the trust anchors used for chain verification.

    Uses the given bundle, then the bundle named by $CERTINSPECT_CA_BUNDLE,
    then the OpenSSL default CA file of this host and finally the
    bundle shipped with certifi.
    """
    path = ca_bundle or os.environ.get(CA_BUNDLE_ENVVAR)
    if not path:
        default_cafile = ssl.get_default_verify_paths().cafile
        path = default_cafile if default_cafile else certifi.where()

    try:
        with open(path, "rb") as f:
            roots = x509.load_pem_x509_certificates(f.read())
    except (OSError, ValueError) as error:
        raise InspectorError(f"Unable to load trusted roots from {path}: {error}") from error
    return roots


def build_intermediate_pool(certs: Sequence[Certificate]) -> list[Certificate]:
    # The first cert is the leaf, everything after it is a candidate intermediate.
    return list(certs[1:])


def verify_chain(
    certs: Sequence[Certificate],
    server_name: str,
    roots: Sequence[Certificate],
    now: datetime | None = None,
) -> str:
    """
    Verifies the leaf against the presented intermediates and the
    given roots, for the given name. Returns a message describing
    the outcome: a failed verification is a result, not an error.
    """
    ip = _as_ip(server_name)

    try:
        subject = x509.IPAddress(ip) if ip is not None else x509.DNSName(server_name)
        builder = PolicyBuilder().store(Store(list(roots)))
        if now is not None:
            builder = builder.time(now.astimezone(timezone.utc).replace(tzinfo=None))
        verifier = builder.build_server_verifier(subject)
        verifier.verify(certs[0], build_intermediate_pool(certs))
    except (VerificationError, ValueError) as error:
        return f"{INVALID_CHAIN_PREFIX}{error}"
    return VALID_CHAIN_MESSAGE


def https_url(host: str) -> str:
    if isinstance(_as_ip(host), IPv6Address):
        return f"https://[{host}]"
    return f"https://{host}"


def open_connection(target: Target, timeout: float) -> socket.socket:
    try:
        return socket.create_connection((target.address, target.port), timeout=timeout)
    except OSError as error:
        raise TLSConnectionError(f"Unable to connect to {target}: {error}", target) from error


def _do_handshake(conn: SSL.Connection, sock: socket.socket, deadline: float) -> None:
    # The socket has a timeout, so it is non-blocking underneath,
    # and OpenSSL will ask us to wait for it.
    while True:
        try:
            conn.do_handshake()
            return
        except (SSL.WantReadError, SSL.WantWriteError) as want:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError("TLS handshake timed out")
            if isinstance(want, SSL.WantReadError):
                ready = select.select([sock], [], [], remaining)[0]
            else:
                ready = select.select([], [sock], [], remaining)[1]
            if not ready:
                raise TimeoutError("TLS handshake timed out")


def fetch_peer_chain(target: Target, timeout: float = DEFAULT_TIMEOUT) -> list[Certificate]:
    """
    Connects to the target and returns the certificate chain
    the peer presented, in the order it was presented.

    The handshake does not verify the peer, so that untrusted
    chains can be inspected too. See verify_chain() for that.
    """
    deadline = time.monotonic() + timeout
    sock = open_connection(target, timeout)

    with closing(sock):
        ctx = SSL.Context(SSL.SSLv23_METHOD)
        conn = SSL.Connection(ctx, sock)
        # IP addresses are not permitted in servername
        # so only add if we are validating a DNS name.
        if not target.server_name_is_ip:
            conn.set_tlsext_host_name(target.server_name.encode())
        conn.set_connect_state()

        try:
            _do_handshake(conn, sock, deadline)
        except (SSL.Error, OSError) as error:
            raise TLSConnectionError(
                f"TLS handshake with {target} failed: {str(error) or type(error).__name__}",
                target,
            ) from error

        chain = conn.get_peer_cert_chain()

    if not chain:
        raise NoCertificatesError(f"{target} did not provide any certificates")
    try:
        return [cert.to_cryptography() for cert in chain]
    except ValueError as error:
        raise CertificateParseError(
            f"{target} presented a certificate that cannot be parsed: {error}"
        ) from error


def inspect(
    address: str,
    port: int = DEFAULT_PORT,
    server_name: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    *,
    roots: Sequence[Certificate] | None = None,
) -> ChainResult:
    """
    Fetches the certificate chain from address:port, presenting
    `server_name` in the handshake, and verifies it for that name.
    """
    if not address:
        raise MissingInputError("An address to connect to is required.")
    if not server_name:
        raise MissingInputError("A name to validate the certificate against is required.")

    server_name = _normalize_hostname(server_name)
    target = Target(address, port, server_name)
    certs = fetch_peer_chain(target, timeout)

    if roots is None:
        roots = load_trust_roots()

    return ChainResult(
        target_url=https_url(server_name),
        certificates=summarize_chain(certs),
        validation_message=verify_chain(certs, server_name, roots),
    )


def inspect_target(
    target: Target,
    timeout: float = DEFAULT_TIMEOUT,
    *,
    roots: Sequence[Certificate] | None = None,
) -> ChainResult:
    return inspect(target.address, target.port, target.server_name, timeout, roots=roots)


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__)
@click.argument("host")
@click.option("--servername", help="Name to send in the handshake and validate against.")
@click.option("--timeout", default=DEFAULT_TIMEOUT, show_default=True, help="Seconds to wait.")
@click.option(
    "--ca-bundle",
    envvar=CA_BUNDLE_ENVVAR,
    type=click.Path(exists=True, dir_okay=False),
    help="PEM file with the trusted roots.",
)
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
def main(
    host: str,
    servername: str | None,
    timeout: float,
    ca_bundle: str | None,
    *,
    as_json: bool,
) -> None:
    """Shows and verifies the certificate chain exposed by a host."""
    try:
        target = parse_host_input(host, servername)
    except InspectorError as error:
        raise click.BadParameter(str(error), param_hint="HOST") from error

    click.secho(
        f"Connecting to '{target}' as '{target.server_name}'", err=True
    )

    try:
        roots = load_trust_roots(ca_bundle)
        result = inspect_target(target, timeout, roots=roots)
    except NoCertificatesError as error:
        click.secho(f"Could not retrieve a certificate chain: {error}", fg="red", err=True)
        sys.exit(4)
    except InspectorError as error:
        click.secho(str(error), fg="red", err=True)
        sys.exit(3)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        for index, summary in enumerate(result.certificates):
            print_summary(summary, target.server_name, is_leaf=index == 0)
        click.secho(result.validation_message, fg="green" if result.is_valid else "red")

    if not result.is_valid:
        sys.exit(1)


def print_field(header: str, values: Iterable[str | int | None]) -> None:
    if values and any(values):
        click.secho(f"[{header}]")
        for value in values:
            click.echo(f"  {value}")


def name_matches_destination(
    name: GeneralName, destination: str | IPv4Address | IPv6Address
) -> bool:
    if name.value == destination:
        return True

    if isinstance(name.value, str) and isinstance(destination, str):
        # Working with domain names, not IPs - check for wildcard.
        return (
            name.value.startswith("*.")
            and destination.count(".") > 1  # can't have *.no
            and name.value.split(".", maxsplit=1)[1]
            == destination.split(".", maxsplit=1)[1]
        )

    return False


def print_summary(summary: CertificateSummary, destination: str, *, is_leaf: bool) -> None:
    sans = []
    for name in summary.dns_names:
        if is_leaf and name_matches_destination(x509.DNSName(name), destination):
            sans.append(click.style(name, fg="green"))
        else:
            sans.append(name)

    click.secho("#############################################################")

    print_field("Subject", [summary.subject])
    print_field("Issuer", [summary.issuer])
    print_field("Not before", [format_timestamp(summary.not_before)])
    print_field("Not after", [format_timestamp(summary.not_after)])
    print_field("SANs", sans)
    print_field("CA", ["yes" if summary.is_ca else "no"])
    print_field("Signature alg", [summary.signature_algorithm])

    if summary.issuer == summary.subject:
        click.secho("Self signed cert!", fg="red")

    click.echo()


if __name__ == "__main__":
    main()
