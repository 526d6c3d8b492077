"""
HTTP front for certinspect.

GET /check-ssl?ip=...&url=...   JSON description of the chain served by `ip`,
                                validated for the host in `url`.
GET /?url=https://host[:port]   One line of text with the expiry of the
                                certificate served by that host.
"""

from collections.abc import Sequence

import click
import uvicorn
from cryptography.x509 import Certificate
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from certinspect import (
    DEFAULT_TIMEOUT,
    InspectorError,
    MissingInputError,
    NoCertificatesError,
    TLSConnectionError,
    __version__,
    format_timestamp,
    inspect_target,
    parse_https_url,
    target_from_ip_and_url,
)

DEFAULT_LISTEN_PORT = 8080

router = APIRouter()


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def text_response(status_code: int, message: str) -> PlainTextResponse:
    return PlainTextResponse(f"{message}\n", status_code=status_code)


def debug_echo(enabled: bool, message: str) -> None:
    if enabled:
        click.secho(f"Debug: {message}", fg="yellow", err=True)


@router.get("/check-ssl")
def check_ssl(request: Request, ip: str | None = None, url: str | None = None):
    try:
        target = target_from_ip_and_url(ip, url)
    except InspectorError as error:
        return error_response(400, str(error))

    try:
        result = inspect_target(
            target,
            request.app.state.timeout,
            roots=request.app.state.roots,
        )
    except TLSConnectionError as error:
        return error_response(500, f"Failed to connect via TLS: {error}")
    except NoCertificatesError:
        return error_response(500, "Server did not provide any certificates.")
    except InspectorError as error:
        return error_response(500, str(error))

    return JSONResponse(content=result.to_dict())


@router.get("/", response_class=PlainTextResponse)
def certificate_expiry(request: Request, url: str | None = None, debug: str | None = None):
    debug_enabled = debug == "true"

    try:
        target = parse_https_url(url or "")
    except MissingInputError:
        debug_echo(debug_enabled, "no 'url' parameter given")
        return text_response(400, "Missing 'url' query parameter")
    except InspectorError as error:
        debug_echo(debug_enabled, f"invalid url - {error}")
        return text_response(400, "Invalid 'url' format. Example: https://example.com:8443")

    try:
        result = inspect_target(
            target,
            request.app.state.timeout,
            roots=request.app.state.roots,
        )
    except NoCertificatesError as error:
        debug_echo(debug_enabled, str(error))
        return text_response(500, "No certificates found")
    except InspectorError as error:
        debug_echo(debug_enabled, f"connection failed - {error}")
        return text_response(500, "Failed to connect to the server")

    debug_echo(debug_enabled, result.validation_message)
    if not result.is_valid:
        return text_response(500, "Failed to connect to the server")

    return text_response(
        200,
        f"SSL certificate for {url} expires on {format_timestamp(result.leaf.not_after)}",
    )


def create_app(
    roots: Sequence[Certificate] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> FastAPI:
    """
    Builds the application. Without `roots` the trusted roots
    of the host are loaded for every check.
    """
    app = FastAPI(
        title="certinspect",
        description="Shows the TLS certificate chain of an endpoint and whether it is valid.",
        version=__version__,
    )
    app.state.roots = roots
    app.state.timeout = timeout
    app.include_router(router)
    return app


app = create_app()


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(version=__version__)
@click.option("--host", default="0.0.0.0", show_default=True, help="Address to listen on.")
@click.option(
    "--port",
    envvar="PORT",
    type=click.IntRange(1, 65535),
    default=DEFAULT_LISTEN_PORT,
    show_default=True,
    help="Port to listen on.",
)
@click.option("--timeout", default=DEFAULT_TIMEOUT, show_default=True, help="Seconds to wait per check.")
def serve(host: str, port: int, timeout: float) -> None:
    """Serves the certificate checks over HTTP."""
    click.secho(f"Server is listening on port {port}", err=True)
    uvicorn.run(create_app(timeout=timeout), host=host, port=port)


if __name__ == "__main__":
    serve()
