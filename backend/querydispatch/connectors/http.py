"""
HTTP-API connector.

The query is a URL template, optionally prefixed with a method:

    /branches/{branch}/costs          (GET)
    POST https://api.example.com/report

``{name}`` placeholders are filled with URL-quoted params; remaining params go
to the query string (GET) or the JSON body (POST). Uses httpx with the request
timeout. Outbound targets must pass a host allow-list and, optionally, a
private-address block.
"""

import ipaddress
import logging
import re
import socket
from datetime import date, time
from decimal import Decimal
from typing import Any
from urllib.parse import quote, urlparse

import httpx

from querydispatch.connectors.base import Connector, NativeResult
from querydispatch.core.config import HttpApiSettings, Settings
from querydispatch.core.errors import (
    ConnectorError,
    DispatchError,
    PermanentBackendError,
    QueryTimeoutError,
    TransientBackendError,
    ValidationError,
)
from querydispatch.schemas import DataSourceKindEnum

_log = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 30.0

_METHODS = ("GET", "POST")
_PATH_PARAM = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")
_TRANSIENT_STATUS = frozenset({408, 429})

_BLOCKED_NETWORKS = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),  # link-local / cloud metadata
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),  # IPv6 private
    ipaddress.ip_network("fe80::/10"),  # IPv6 link-local
]


def _is_private_ip(host: str) -> bool:
    """Return True if *host* resolves to a private/reserved IP address."""
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        try:
            resolved = socket.getaddrinfo(host, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
            addr = ipaddress.ip_address(resolved[0][4][0])
        except (socket.gaierror, OSError, IndexError):
            return True  # cannot resolve → block
    return any(addr in net for net in _BLOCKED_NETWORKS)


def _host_matches(hostname: str, allowed_hosts: frozenset[str]) -> bool:
    """``*`` allows all, ``api.example.com`` exact, ``*.example.com`` any subdomain."""
    if "*" in allowed_hosts or hostname in allowed_hosts:
        return True
    return any(p.startswith("*.") and hostname.endswith(p[1:]) for p in allowed_hosts)


class HttpRequestSpec:
    """A URL template resolved against params."""

    __slots__ = ("method", "url", "query_params", "json_body")

    def __init__(self, method: str, url: str, query_params: dict[str, Any], json_body: dict[str, Any] | None) -> None:
        self.method = method
        self.url = url
        self.query_params = query_params
        self.json_body = json_body


def _plain(value: Any) -> Any:
    """Dates and decimals as strings so they survive query strings and JSON bodies."""
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, time)):
        return value.isoformat()
    return value


def build_request(template: str, params: dict[str, Any]) -> HttpRequestSpec:
    """Split off the method, substitute ``{name}`` path params, route the rest."""
    text = template.strip()
    method = "GET"
    head, _, rest = text.partition(" ")
    if head.upper() in _METHODS and rest.strip():
        method = head.upper()
        text = rest.strip()
    elif " " in text:
        raise ValidationError(f"Unsupported HTTP method in query: {head!r}")

    used: set[str] = set()

    def _sub(m: re.Match) -> str:
        name = m.group(1)
        if name not in params or params[name] is None:
            raise ValidationError(f"Missing value for path parameter {name!r}")
        used.add(name)
        return quote(str(params[name]), safe="")

    url = _PATH_PARAM.sub(_sub, text)
    rest_params = {k: _plain(v) for k, v in params.items() if k not in used}
    if method == "GET":
        return HttpRequestSpec(method, url, rest_params, None)
    return HttpRequestSpec(method, url, {}, rest_params)


def rows_from_json(payload: Any) -> list[Any]:
    """JSON array -> rows; JSON object -> one row; scalars become {"value": x}."""
    if isinstance(payload, list):
        return [item if isinstance(item, dict) else {"value": item} for item in payload]
    if isinstance(payload, dict):
        return [payload]
    return [{"value": payload}]


def classify_error(e: Exception) -> DispatchError:
    if isinstance(e, DispatchError):
        return e
    if isinstance(e, httpx.TimeoutException):
        return QueryTimeoutError(f"HTTP request timed out: {e}")
    if isinstance(e, (httpx.TransportError, ConnectionError)):
        return TransientBackendError(f"HTTP API unavailable: {e}")
    return PermanentBackendError(f"HTTP request failed: {e}")


def error_for_status(response: httpx.Response) -> ConnectorError:
    status = response.status_code
    message = f"HTTP {status}: {response.reason_phrase}"
    if status >= 500 or status in _TRANSIENT_STATUS:
        return TransientBackendError(message, status_code=status)
    return PermanentBackendError(message, status_code=status)


class HttpApiConnector(Connector):
    """Handles are httpx.Client instances (keep-alive per pooled handle)."""

    kind = DataSourceKindEnum.HTTP_API

    def __init__(
        self,
        config: HttpApiSettings,
        *,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        max_rows: int = 10000,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config = config
        self.timeout = timeout
        self.max_rows = max_rows
        self._transport = transport
        self._allowed_hosts = frozenset(h.lower() for h in config.allowed_hosts)

    @classmethod
    def from_settings(cls, config: HttpApiSettings, settings: Settings) -> "HttpApiConnector":
        return cls(config, timeout=settings.REQUEST_TIMEOUT, max_rows=settings.MAX_ROWS)

    def check_url_allowed(self, url: str) -> None:
        """Raise PermanentBackendError when the URL target is not allowed."""
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise PermanentBackendError(
                f"URL scheme '{parsed.scheme}' is not allowed; only http/https."
            )
        hostname = (parsed.hostname or "").lower()
        if not hostname:
            raise PermanentBackendError("URL has no hostname.")
        if self.config.block_private_addresses and _is_private_ip(hostname):
            raise PermanentBackendError(
                f"Requests to private/internal addresses are blocked: {hostname}"
            )
        if not _host_matches(hostname, self._allowed_hosts):
            raise PermanentBackendError(
                f"Host '{hostname}' is not in the allowed hosts. "
                f"Allowed: {', '.join(sorted(self._allowed_hosts)) or '(none)'}."
            )

    def _absolute_url(self, url: str) -> str:
        if urlparse(url).scheme:
            return url
        if not self.config.base_url:
            raise ValidationError(f"Relative URL {url!r} but no base_url is configured")
        return self.config.base_url.rstrip("/") + "/" + url.lstrip("/")

    def validate(self, query: str, params: dict[str, Any]) -> None:
        spec = build_request(query, params)
        self._absolute_url(spec.url)

    def connect(self) -> httpx.Client:
        headers = {"Accept": "application/json", **self.config.headers}
        if self.config.api_key:
            header = self.config.api_key_header
            value = self.config.api_key
            if header.lower() == "authorization" and " " not in value:
                value = f"Bearer {value}"
            headers[header] = value
        kwargs: dict[str, Any] = {"timeout": self.timeout, "headers": headers}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.Client(**kwargs)

    def run(self, handle: httpx.Client, query: str, params: dict[str, Any]) -> NativeResult:
        spec = build_request(query, params)
        url = self._absolute_url(spec.url)
        self.check_url_allowed(url)
        _log.debug("Calling %s %s", spec.method, url)
        try:
            response = handle.request(
                spec.method,
                url,
                params=spec.query_params or None,
                json=spec.json_body,
            )
        except Exception as e:
            raise classify_error(e) from e
        if not response.is_success:
            raise error_for_status(response)
        if not response.content.strip():
            # 204 No Content and friends
            return NativeResult(rows=[])
        try:
            payload = response.json()
        except ValueError as e:
            raise PermanentBackendError(f"HTTP API did not return JSON: {e}") from e
        rows = rows_from_json(payload)
        return NativeResult(rows=rows[: self.max_rows])

    def ping(self, handle: httpx.Client) -> bool:
        return not handle.is_closed
