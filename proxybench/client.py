"""Instrumented HTTP client that times each phase of a request through SOCKS5.

Every call dials a brand new connection: a pooled connection would report
zero for the connect and handshake phases.
"""
import functools
import http.client
import ipaddress
import logging
import socket
import ssl
from dataclasses import dataclass
from urllib.parse import urlparse

import socks

from .errors import (ConfigError, ConnectError, HandshakeError, HTTPStatusError,
                     ProbeError, RequestTimeout, TLSError)
from .timings import PhaseCollector

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DIRECT_NAME = "Direct Connection"

REQUEST_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Connection": "close",
}

# SOCKS5 replies meaning the proxy itself could not reach the target
_UNREACHABLE_REPLIES = ("0x03", "0x04", "0x05")


@dataclass(frozen=True)
class Target:
    scheme: str
    host: str
    port: int
    path: str

    @property
    def default_port(self):
        return 443 if self.scheme == "https" else 80


def parse_target(url):
    try:
        parsed = urlparse(url)
    except ValueError as exc:
        raise ProbeError(f"invalid target URL {url!r}: {exc}") from exc
    scheme = parsed.scheme.lower()
    if scheme not in ("http", "https"):
        raise ProbeError(f"only http:// or https:// URLs are supported, got: {url}")
    if not parsed.hostname:
        raise ProbeError(f"missing host in URL: {url}")
    try:
        port = parsed.port
    except ValueError as exc:
        raise ProbeError(f"invalid port in URL {url}: {exc}") from exc
    path = parsed.path or "/"
    if parsed.query:
        path = f"{path}?{parsed.query}"
    return Target(scheme, parsed.hostname, port or (443 if scheme == "https" else 80), path)


def parse_proxy_address(address):
    """Split ``host:port`` (or ``[v6]:port``) into its parts."""
    parsed = urlparse(f"socks5://{address}")
    try:
        port = parsed.port
    except ValueError as exc:
        raise ConfigError(f"invalid proxy address {address!r}: {exc}") from exc
    if not parsed.hostname or port is None:
        raise ConfigError(f"invalid proxy address {address!r}, expected host:port")
    return parsed.hostname, port


def ip_family(host):
    """Address family of a literal IP, or None for a domain name."""
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return None
    return socket.AF_INET6 if ip.version == 6 else socket.AF_INET


def resolve(host, port, collector, phase):
    """Resolve ``host`` and record the lookup as ``phase``.

    Literal IPs skip the lookup and leave the phase at zero.
    """
    family = ip_family(host)
    if family is not None:
        return family, host
    try:
        with collector.measure(phase):
            infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as exc:
        raise ConnectError(f"cannot resolve {host}: {exc}") from exc
    family, _, _, _, sockaddr = infos[0]
    log.debug(f'Resolved {host} to {sockaddr[0]} in {collector.get(phase) / 1e6:.2f}ms')
    return family, sockaddr[0]


def derive_handshake(dial, tcp_connect, dns):
    """SOCKS5 negotiation time, estimated as the dial minus its known parts.

    PySocks connects and negotiates inside one call, so this is an
    approximation rather than a byte-level measurement. Clock jitter between
    the sub-intervals can make the raw difference negative; it is clamped.
    """
    return max(0, dial - tcp_connect - dns)


def insecure_tls_context():
    # Certificates are not verified: only handshake latency is measured
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    context.set_alpn_protocols(["http/1.1"])
    return context


class _TimedSocksSocket(socks.socksocket):
    """socksocket that notes when TCP to the proxy is up and negotiation starts."""

    def __init__(self, collector, family=socket.AF_INET):
        super().__init__(family, socket.SOCK_STREAM)
        self._collector = collector
        self.negotiation_started = None

    def _negotiate_timed_SOCKS5(self, *dest_addr):
        self.negotiation_started = self._collector.now()
        socks.socksocket._negotiate_SOCKS5(self, *dest_addr)

    _proxy_negotiators = {**socks.socksocket._proxy_negotiators,
                          socks.SOCKS5: _negotiate_timed_SOCKS5}


class _FirstByteReader:
    """Wraps a response file object and fires a callback on the status line."""

    def __init__(self, fp, on_first_byte):
        self._fp = fp
        self._on_first_byte = on_first_byte

    def readline(self, *args):
        line = self._fp.readline(*args)
        if line and self._on_first_byte is not None:
            self._on_first_byte()
            self._on_first_byte = None
        return line

    def __getattr__(self, name):
        return getattr(self._fp, name)


class _TracedResponse(http.client.HTTPResponse):

    def __init__(self, sock, debuglevel=0, method=None, url=None, on_first_byte=None):
        super().__init__(sock, debuglevel, method, url)
        if on_first_byte is not None:
            self.fp = _FirstByteReader(self.fp, on_first_byte)


class _TracedConnection(http.client.HTTPConnection):
    """HTTPConnection whose connect() is the client's instrumented dial."""

    def __init__(self, target, dial, timeout, on_first_byte):
        super().__init__(target.host, target.port, timeout=timeout)
        self.default_port = target.default_port
        self._dial = dial
        self.response_class = functools.partial(_TracedResponse, on_first_byte=on_first_byte)

    def connect(self):
        self.sock = self._dial()


def _translate(exc):
    """Map a PySocks, ssl, socket or http.client failure onto ProbeError."""
    socket_err = getattr(exc, "socket_err", None)
    if isinstance(exc, socks.ProxyError):
        if isinstance(socket_err, socket.timeout):
            return RequestTimeout(f"timed out talking to proxy: {exc.msg}")
        if isinstance(exc, socks.ProxyConnectionError):
            return ConnectError(str(exc))
        # negotiation failures arrive wrapped in GeneralProxyError
        reply = socket_err if isinstance(socket_err, socks.ProxyError) else exc
        if isinstance(reply, socks.SOCKS5Error) and reply.msg[:4] in _UNREACHABLE_REPLIES:
            return ConnectError(f"proxy could not reach target: {reply.msg}")
        return HandshakeError(str(exc))
    if isinstance(exc, ssl.SSLError):
        return TLSError(str(exc))
    if isinstance(exc, socket.timeout):
        return RequestTimeout(str(exc) or "timed out")
    if isinstance(exc, http.client.HTTPException):
        return ProbeError(f"invalid HTTP response: {exc!r}")
    return ConnectError(str(exc) or repr(exc))


class _Client:
    name = DIRECT_NAME

    def __init__(self, timeout=DEFAULT_TIMEOUT):
        self.timeout = timeout
        self._tls = insecure_tls_context()

    def execute(self, target_url):
        """Run one GET and return ``(PhaseTimings, error)``.

        The timings are populated even when the request fails; ``error`` is
        None only for a 2xx/3xx response.
        """
        collector = PhaseCollector()
        started = collector.now()
        status_code = 0
        error = None
        try:
            status_code = self._round_trip(target_url, collector, started)
        except ProbeError as exc:
            error = exc
        else:
            if not 200 <= status_code < 400:
                error = HTTPStatusError(status_code)
        collector.since("total", started)

        if error is None:
            return collector.to_timings(success=True, status_code=status_code), None
        message = str(error) if isinstance(error, HTTPStatusError) else f"request failed: {error}"
        log.debug(f'{self.name}: {target_url} -> {message}')
        return collector.to_timings(success=False, status_code=status_code,
                                    error_message=message, error_reason=error.reason), error

    def _round_trip(self, target_url, collector, started):
        target = parse_target(target_url)
        conn = _TracedConnection(
            target,
            functools.partial(self._open, target, collector),
            self.timeout,
            on_first_byte=functools.partial(collector.since, "ttfb", started),
        )
        try:
            conn.request("GET", target.path, headers=REQUEST_HEADERS)
            response = conn.getresponse()
            response.close()
            return response.status
        except ProbeError:
            raise
        except (OSError, http.client.HTTPException) as exc:
            raise _translate(exc) from exc
        except UnicodeError as exc:
            raise ConnectError(f"invalid host name {target.host!r}: {exc}") from exc
        finally:
            conn.close()

    def _open(self, target, collector):
        raise NotImplementedError

    def _secure(self, sock, target, collector):
        if target.scheme != "https":
            return sock
        try:
            with collector.measure("tls_handshake"):
                return self._tls.wrap_socket(sock, server_hostname=target.host)
        except Exception:
            sock.close()
            raise


class DirectClient(_Client):
    """Sends requests straight to the target; proxy phases stay zero."""

    def _open(self, target, collector):
        family, address = resolve(target.host, target.port, collector, "target_dns")
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            with collector.measure("target_tcp_connect"):
                sock.connect((address, target.port))
        except Exception:
            sock.close()
            raise
        log.debug(f'TCP connection to {address}:{target.port} established.')
        return self._secure(sock, target, collector)


class ProxyClient(_Client):
    """Sends requests through a SOCKS5 proxy, name resolution done by the proxy."""

    def __init__(self, address, name=None, username=None, password=None, timeout=DEFAULT_TIMEOUT):
        super().__init__(timeout)
        self.address = address
        self.proxy_host, self.proxy_port = parse_proxy_address(address)
        self.name = name or address
        self.username = username or None
        self.password = password or None

    def _open(self, target, collector):
        dial_started = collector.now()
        family, proxy_ip = resolve(self.proxy_host, self.proxy_port, collector, "proxy_dns")

        sock = _TimedSocksSocket(collector, family)
        sock.set_proxy(socks.SOCKS5, proxy_ip, self.proxy_port, rdns=True,
                       username=self.username, password=self.password)
        sock.settimeout(self.timeout)
        tcp_started = collector.now()
        try:
            sock.connect((target.host, target.port))
        except Exception:
            sock.close()
            raise
        tunnel_ready = collector.now()

        if sock.negotiation_started is not None:
            collector.record("proxy_tcp_connect", sock.negotiation_started - tcp_started)
        dial = tunnel_ready - dial_started
        collector.record("socks5_handshake", derive_handshake(
            dial, collector.get("proxy_tcp_connect"), collector.get("proxy_dns")))
        # Target name is resolved by the proxy, so target_dns stays zero
        collector.record("target_tcp_connect", dial)
        log.debug(f'SOCKS5 tunnel to {target.host}:{target.port} via {self.address} '
                  f'established in {dial / 1e6:.2f}ms')
        return self._secure(sock, target, collector)


def make_client(proxy=None, timeout=DEFAULT_TIMEOUT):
    """Build a client for a ProxyConfig, or a direct client when ``proxy`` is None."""
    if proxy is None:
        return DirectClient(timeout)
    return ProxyClient(proxy.address, proxy.name, proxy.username, proxy.password, timeout)
