"""Forward tunnelled HTTP requests to the local server."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from socket2me.core.config import LocalConfig, SessionSettings
from socket2me.core.exceptions import format_error_for_user
from socket2me.protocol.messages import RequestMessage, ResponseMessage
from socket2me.security.allowlist import PathAllowlist

logger = structlog.get_logger()

PATH_NOT_ALLOWED = "path not allowed"

# Never forwarded in either direction; the relay frames each message itself.
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Dropped from responses: they describe the local wire encoding, not the decoded body.
ENTITY_HEADERS = frozenset({"content-encoding", "content-length"})


@dataclass
class ProxyConfig:
    """Configuration for requests to the local server.

    Attributes:
        connect_timeout: Timeout for establishing connection to local service.
        read_timeout: Timeout for reading response from local service.
            Set to None for no timeout (indefinite - for long-running APIs).
        write_timeout: Timeout for sending request to local service.
        pool_timeout: Timeout for getting connection from pool.
        max_connections: Maximum concurrent connections to local service.
        max_keepalive: Maximum keepalive connections to maintain.
        verify: TLS verification for https local targets (bool or CA bundle path).
    """

    connect_timeout: float = 5.0
    read_timeout: float | None = None
    write_timeout: float = 5.0
    pool_timeout: float = 5.0
    max_connections: int = 100
    max_keepalive: int = 20
    verify: bool | str = True

    @classmethod
    def from_settings(cls, settings: SessionSettings, local: LocalConfig) -> ProxyConfig:
        return cls(
            connect_timeout=settings.local_connect_timeout,
            read_timeout=settings.local_read_timeout,
            write_timeout=settings.local_write_timeout,
            verify=local.ssl.verify,
        )


def _header_value(value: Any) -> str:
    if isinstance(value, list | tuple):
        return ", ".join(str(v) for v in value)
    return str(value)


def request_headers(headers: Mapping[str, Any]) -> dict[str, str]:
    """Headers to send to the local server.

    ``Host`` is dropped so the local server sees its own host rather than
    the public tunnel hostname.
    """
    result: dict[str, str] = {}
    for name, value in headers.items():
        lowered = name.lower()
        if lowered == "host" or lowered in HOP_BY_HOP_HEADERS:
            continue
        result[name] = _header_value(value)
    return result


def response_headers(raw: Iterable[tuple[bytes, bytes]]) -> dict[str, str]:
    """Collapse raw response headers into a map, keeping the server's casing.

    The body is delivered decoded, so its encoding and length headers go too.
    """
    result: dict[str, str] = {}
    canonical: dict[str, str] = {}
    for raw_name, raw_value in raw:
        name = raw_name.decode("latin-1")
        value = raw_value.decode("latin-1")
        lowered = name.lower()
        if lowered in HOP_BY_HOP_HEADERS or lowered in ENTITY_HEADERS:
            continue
        if lowered in canonical:
            key = canonical[lowered]
            result[key] = f"{result[key]}, {value}"
        else:
            canonical[lowered] = name
            result[name] = value
    return result


class RequestForwarder:
    """Executes one tunnelled request against the local server.

    ``forward`` always returns a response envelope: 403 for paths outside
    the allowlist, 502 when the local call fails, otherwise whatever the
    local server answered.
    """

    def __init__(
        self,
        local: LocalConfig,
        allowlist: PathAllowlist | None = None,
        proxy_config: ProxyConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        verbose: bool = False,
    ) -> None:
        self.local = local
        self.allowlist = allowlist if allowlist is not None else local.build_allowlist()
        self.proxy_config = proxy_config or ProxyConfig(verify=local.ssl.verify)
        self.verbose = verbose
        self._http_client = http_client

    @property
    def base_url(self) -> str:
        return self.local.base_url

    def build_url(self, path: str) -> str:
        """Local URL for a request path; the path (and query) is used verbatim."""
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self.base_url}{path}"

    def _create_http_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            connect=self.proxy_config.connect_timeout,
            read=self.proxy_config.read_timeout,
            write=self.proxy_config.write_timeout,
            pool=self.proxy_config.pool_timeout,
        )
        limits = httpx.Limits(
            max_connections=self.proxy_config.max_connections,
            max_keepalive_connections=self.proxy_config.max_keepalive,
        )
        # Redirects go back to the caller so it can handle cookies and Location itself.
        return httpx.AsyncClient(
            timeout=timeout,
            limits=limits,
            follow_redirects=False,
            verify=self.proxy_config.verify,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = self._create_http_client()
        return self._http_client

    async def forward(self, request: RequestMessage) -> ResponseMessage:
        """Forward a request and build the response envelope. Never raises."""
        check = self.allowlist.check(request.path)
        if not check.allowed:
            logger.warning(
                "Path not allowed",
                request_id=request.id,
                method=request.method,
                path=request.path,
            )
            return ResponseMessage.json_error(request.id, 403, PATH_NOT_ALLOWED)

        try:
            return await self._forward(request)
        except Exception as e:
            message = format_error_for_user(e)
            logger.error(
                "Local request failed",
                request_id=request.id,
                method=request.method,
                path=request.path,
                error=message,
            )
            return ResponseMessage.json_error(request.id, 502, message)

    async def _forward(self, request: RequestMessage) -> ResponseMessage:
        method = request.method.upper()
        url = self.build_url(request.path)
        headers = request_headers(request.headers)
        # An empty body is sent as no body so the local server doesn't see one.
        body = request.body or None

        logger.info("Handling request", request_id=request.id, method=method, url=url)
        if self.verbose:
            logger.debug(
                "Request details",
                request_id=request.id,
                headers=headers,
                body=body,
            )

        client = self._get_client()
        async with client.stream(method, url, headers=headers, content=body) as resp:
            body_chunks = []
            async for chunk in resp.aiter_bytes(chunk_size=65536):
                body_chunks.append(chunk)
            content = b"".join(body_chunks)
            headers_out = response_headers(resp.headers.raw)
            status = resp.status_code

        if self.verbose:
            logger.debug(
                "Response details",
                request_id=request.id,
                status=status,
                headers=headers_out,
                body=content,
            )

        return ResponseMessage.build(request.id, status, headers_out, content)

    async def aclose(self) -> None:
        """Release pooled connections to the local server."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
