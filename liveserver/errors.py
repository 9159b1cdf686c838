class LiveServerError(Exception):
    """Base class for every error raised by the live server."""


class ConfigError(LiveServerError):
    pass


class RootNotFound(LiveServerError):
    def __init__(self, root_dir):
        super().__init__(f"Root directory not found: {root_dir}")
        self.root_dir = root_dir


class CertificateError(LiveServerError):
    pass


class BindError(LiveServerError):
    """A bind failure that is not worth retrying on another port."""

    def __init__(self, port, cause):
        super().__init__(f"Cannot listen on port {port}: {cause}")
        self.port = port
        self.cause = cause


class BindPermissionDenied(BindError):
    pass


class PortExhausted(LiveServerError):
    def __init__(self, first_port, attempts):
        last = first_port + attempts - 1
        super().__init__(f"No available port in range {first_port}-{last}")
        self.first_port = first_port
        self.attempts = attempts


class ProxyUpstreamUnreachable(LiveServerError):
    def __init__(self, target, cause):
        super().__init__(f"Upstream {target} unreachable: {cause}")
        self.target = target
        self.cause = cause


class InjectionReadFailure(LiveServerError):
    def __init__(self, path, cause):
        super().__init__(f"Cannot read {path} for injection: {cause}")
        self.path = path
        self.cause = cause
