# Required packages:
# pip install aiohttp watchdog
from .binder import bind_with_retry
from .channel import RELOAD_MESSAGE, ReloadChannel
from .config import ServerConfig, load_settings
from .content import RELOAD_SNIPPET, ContentServer, create_app, inject_reload_snippet
from .errors import (
    BindError,
    BindPermissionDenied,
    CertificateError,
    ConfigError,
    InjectionReadFailure,
    LiveServerError,
    PortExhausted,
    ProxyUpstreamUnreachable,
    RootNotFound,
)
from .lifecycle import LifecycleState, RunningServerState, ServerLifecycle, StartResult
from .proxy import ReverseProxyRouter
from .watcher import ChangeEvent, ChangeWatcher, watch

__version__ = "0.1.0"
