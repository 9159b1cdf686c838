"""Server configuration.

A ``ServerConfig`` is built once per run and never mutated. Settings come
from the host (an editor ``settings.json``, the command line, or a plain
mapping) and use the same keys and defaults as the editor extension::

    port         5500
    browser      ""
    root         "/"
    https        false
    cors         true
    proxy        {}
    ignoreFiles  [".git", ".vscode", "node_modules"]
"""

import json
import os
from dataclasses import dataclass
from collections.abc import Mapping

from .errors import ConfigError

SETTINGS_NAMESPACE = "liveServer."

DEFAULT_PORT = 5500
DEFAULT_IGNORE_FILES = (".git", ".vscode", "node_modules")
DEFAULT_MAX_PORT_ATTEMPTS = 10

DEFAULTS = {
    "port": DEFAULT_PORT,
    "browser": "",
    "root": "/",
    "https": False,
    "cors": True,
    "proxy": {},
    "ignoreFiles": list(DEFAULT_IGNORE_FILES),
}


@dataclass(frozen=True)
class ServerConfig:
    root_dir: str
    port: int = DEFAULT_PORT
    browser: str = ""
    https: bool = False
    cors: bool = True
    proxy: tuple = ()
    ignore_files: tuple = DEFAULT_IGNORE_FILES
    host: str = None
    cert_file: str = None
    key_file: str = None
    max_port_attempts: int = DEFAULT_MAX_PORT_ATTEMPTS

    def __post_init__(self):
        if not os.path.isabs(self.root_dir):
            raise ConfigError(f"root_dir must be absolute: {self.root_dir!r}")
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"port out of range: {self.port}")
        if self.max_port_attempts < 1:
            raise ConfigError("max_port_attempts must be at least 1")
        for prefix, target in self.proxy:
            if not prefix.startswith("/"):
                raise ConfigError(f"proxy prefix must start with '/': {prefix!r}")
            if not target.startswith(("http://", "https://")):
                raise ConfigError(f"proxy target must be an http(s) URL: {target!r}")

    @property
    def scheme(self):
        return "https" if self.https else "http"

    @classmethod
    def from_settings(cls, workspace, settings=None, **overrides):
        """Build a config from editor-style settings rooted at ``workspace``."""
        merged = dict(DEFAULTS)
        for key, value in (settings or {}).items():
            if key.startswith(SETTINGS_NAMESPACE):
                key = key[len(SETTINGS_NAMESPACE):]
            if key in DEFAULTS and value is not None:
                merged[key] = value

        proxy = merged["proxy"]
        if not isinstance(proxy, Mapping):
            raise ConfigError(f"proxy must be a mapping of prefix to URL, got {type(proxy).__name__}")
        ignore = merged["ignoreFiles"]
        if isinstance(ignore, str) or not all(isinstance(p, str) for p in ignore):
            raise ConfigError("ignoreFiles must be a list of glob strings")

        try:
            port = int(merged["port"])
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"port must be an integer: {merged['port']!r}") from exc

        workspace = os.path.abspath(workspace)
        root_dir = os.path.normpath(os.path.join(workspace, str(merged["root"]).lstrip("/\\")))

        return cls(
            root_dir=root_dir,
            port=port,
            browser=str(merged["browser"] or ""),
            https=bool(merged["https"]),
            cors=bool(merged["cors"]),
            proxy=tuple((str(k), str(v)) for k, v in proxy.items()),
            ignore_files=tuple(ignore),
            **overrides,
        )


def load_settings(path):
    """Read a JSON settings file, keeping only live server keys."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as exc:
        raise ConfigError(f"Cannot read settings file {path}: {exc}") from exc
    except ValueError as exc:
        raise ConfigError(f"Invalid JSON in settings file {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Settings file {path} must contain a JSON object")

    settings = {}
    for key, value in data.items():
        bare = key[len(SETTINGS_NAMESPACE):] if key.startswith(SETTINGS_NAMESPACE) else key
        if bare in DEFAULTS:
            settings[bare] = value
    return settings
