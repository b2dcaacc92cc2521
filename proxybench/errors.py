"""Error taxonomy for proxy latency measurements."""


class ProbeError(Exception):
    """Base class for a failed trial."""
    reason = "other_error"


class ConnectError(ProbeError):
    """Proxy or target unreachable."""
    reason = "connect_error"


class HandshakeError(ProbeError):
    """SOCKS5 negotiation or authentication rejected."""
    reason = "handshake_error"


class TLSError(ProbeError):
    reason = "tls_error"


class HTTPStatusError(ProbeError):
    """Response status outside 200-399."""
    reason = "http_error"

    def __init__(self, status_code):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class RequestTimeout(ProbeError):
    reason = "timeout"


class RunCancelled(Exception):
    """A run was stopped by the operator before all trials were dispatched."""
    reason = "cancelled"

    def __init__(self, run):
        super().__init__(f"run '{run.test_name}' cancelled after {run.completed_count}/{run.total_count} trials")
        self.run = run


class ConfigError(ValueError):
    pass
