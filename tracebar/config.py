"""
Config system - typed toolbar configuration with layered loading.

Merge precedence (later overrides earlier):
    defaults < config file (YAML/JSON) < .env file < TRACE_* env vars < overrides
"""

import json
import logging
import os
import posixpath
import types
from dataclasses import MISSING, asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union, get_args, get_origin
from urllib.parse import urlsplit

from dotenv import dotenv_values

from .faults import TraceConfigFault

logger = logging.getLogger("tracebar.config")


SIMPLE_STATIC_EXTENSIONS = ("js", "css", "ico", "ttf", "jpg", "jpeg", "png", "webp")

EXTENDED_STATIC_EXTENSIONS = (
    "js", "css", "jpg", "jpeg", "png", "gif", "bmp", "svg", "ico", "webp", "ttf", "woff", "woff2",
    "eot", "otf", "mp3", "mp4", "wav", "wma", "wmv", "avi", "mpg", "mpeg", "rm", "rmvb", "flv",
    "swf", "mkv", "pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx", "txt", "zip",
    "rar", "7z", "tar", "gz", "bz2", "tgz", "tbz", "tbz2", "tb2", "t7z", "jar", "war", "ear", "zipx",
    "apk", "ipa", "exe", "dmg", "pkg", "deb", "rpm", "msi", "md", "log",
)

STATIC_PREFIXES = ("captcha/", "tn_code/")


class ConfigError(TraceConfigFault):
    """Raised when configuration validation fails."""


@dataclass
class TraceConfig:
    """
    Toolbar configuration.

    ``enabled`` left as ``None`` means "decide per request" (see
    ``is_enable_trace``); an explicit bool always wins.

    The callable fields are strategy hooks configured in code:

    - ``end_hook(tabs)`` receives every finished trace.
    - ``status_handlers[status](exc, request)`` may return a Response.
    - ``module_handlers[module](exc, request)`` may return a Response.
    - ``fallback_renderer(exc, request)`` is the host's default error
      response, used whenever the toolbar's own rendering fails.
    """

    enabled: Optional[bool] = None
    debug: bool = False
    environment: str = "local"
    locale: str = "en"
    editor: str = "vscode"
    base_path: str = ""
    module_namespace: str = ""
    asset_prefix: str = "/_trace/assets"
    api_prefix: str = "api/"
    app_name: str = "app"
    app_version: str = ""
    database: Dict[str, Any] = field(default_factory=dict)
    dont_report: List[str] = field(default_factory=list)
    log_already_recorded: bool = False
    static_extensions: List[str] = field(default_factory=lambda: list(SIMPLE_STATIC_EXTENSIONS))
    static_prefixes: List[str] = field(default_factory=lambda: list(STATIC_PREFIXES))
    vendor_markers: List[str] = field(
        default_factory=lambda: ["site-packages", "dist-packages", "/vendor/"]
    )
    partition_ttl: float = 3600.0
    reported_cap: int = 100
    reported_ttl: float = 3600.0

    end_hook: Optional[Callable[..., Any]] = field(default=None, repr=False, compare=False)
    status_handlers: Dict[int, Callable[..., Any]] = field(
        default_factory=dict, repr=False, compare=False
    )
    module_handlers: Dict[str, Callable[..., Any]] = field(
        default_factory=dict, repr=False, compare=False
    )
    fallback_renderer: Optional[Callable[..., Any]] = field(default=None, repr=False, compare=False)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod")

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view (hooks omitted)."""
        data = asdict(self)
        for name in _CODE_ONLY_FIELDS:
            data.pop(name, None)
        return data


_CODE_ONLY_FIELDS = ("end_hook", "status_handlers", "module_handlers", "fallback_renderer")


class TraceConfigLoader:
    """
    Loads and merges toolbar configuration from multiple sources.
    """

    def __init__(self, env_prefix: str = "TRACE_"):
        self.env_prefix = env_prefix
        self.config_data: Dict[str, Any] = {}

    @classmethod
    def load(
        cls,
        path: Optional[str] = None,
        *,
        env_prefix: str = "TRACE_",
        env_file: Optional[str] = None,
        environ: Optional[Dict[str, str]] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> TraceConfig:
        """
        Build a TraceConfig from all sources.

        Args:
            path: YAML or JSON config file
            env_prefix: Prefix for environment variables
            env_file: Path to .env file
            environ: Environment mapping (defaults to os.environ)
            overrides: Manual overrides (highest precedence)
        """
        loader = cls(env_prefix=env_prefix)

        if path:
            loader._load_file(Path(path))

        if env_file:
            loader._load_env_file(env_file)

        loader._load_from_env(os.environ if environ is None else environ)

        if overrides:
            loader._merge_dict(loader.config_data, overrides)

        return loader.build()

    def build(self) -> TraceConfig:
        return self._instantiate_dataclass(TraceConfig, self.config_data)

    def _load_file(self, path: Path) -> None:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}", path=str(path))

        if path.suffix in (".yaml", ".yml"):
            self._load_yaml_file(path)
        elif path.suffix == ".json":
            self._load_json_file(path)
        else:
            raise ConfigError(f"Unsupported config file type: {path.suffix}", path=str(path))

    def _load_json_file(self, path: Path) -> None:
        with open(path) as f:
            data = json.load(f)
        self._merge_dict(self.config_data, self._unwrap(data))

    def _load_yaml_file(self, path: Path) -> None:
        """Load YAML config file."""
        import yaml

        with open(path) as f:
            data = yaml.safe_load(f) or {}
        self._merge_dict(self.config_data, self._unwrap(data))

    @staticmethod
    def _unwrap(data: Any) -> Dict[str, Any]:
        """Accept both a bare mapping and one nested under a ``trace`` key."""
        if not isinstance(data, dict):
            raise ConfigError("Config file must contain a mapping")
        if isinstance(data.get("trace"), dict):
            return data["trace"]
        return data

    def _load_env_file(self, path: str) -> None:
        """Load config from .env file."""
        if not Path(path).exists():
            logger.debug(f"Env file {path} not found, skipping")
            return

        for key, value in dotenv_values(path).items():
            if value is not None and key.startswith(self.env_prefix):
                self._set_nested(key, value)

    def _load_from_env(self, environ: Dict[str, str]) -> None:
        for key, value in environ.items():
            if key.startswith(self.env_prefix):
                self._set_nested(key, value)

    def _set_nested(self, key: str, value: str) -> None:
        """Convert TRACE_DATABASE__HOST to nested dict."""
        key = key[len(self.env_prefix):]

        # Split by double underscore for nested keys
        parts = key.lower().split("__")

        current = self.config_data
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]

        current[parts[-1]] = self._parse_value(value)

    def _parse_value(self, value: str) -> Any:
        """Parse string value to appropriate type."""
        if value.lower() in ("true", "yes", "on"):
            return True
        if value.lower() in ("false", "no", "off"):
            return False
        if value.lower() in ("null", "none", ""):
            return None

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        if value.startswith(("{", "[")):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass

        return value

    def _merge_dict(self, target: dict, source: dict) -> None:
        """Deep merge source into target."""
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._merge_dict(target[key], value)
            else:
                target[key] = value

    def _instantiate_dataclass(self, config_class: type, data: dict):
        """Instantiate dataclass config with validation."""
        known = {f.name for f in fields(config_class)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown trace config keys: {', '.join(unknown)}")

        kwargs = {}
        for field_info in fields(config_class):
            name = field_info.name
            if name in data:
                value = data[name]
                if not self._check_type(value, field_info.type):
                    raise ConfigError(
                        f"Config field '{name}' expected {field_info.type}, "
                        f"got {type(value).__name__}",
                        field=name,
                    )
                kwargs[name] = value
            elif field_info.default is not MISSING:
                kwargs[name] = field_info.default
            elif field_info.default_factory is not MISSING:
                kwargs[name] = field_info.default_factory()

        return config_class(**kwargs)

    def _check_type(self, value: Any, expected_type: Any) -> bool:
        """Basic type checking."""
        origin = get_origin(expected_type)
        if origin is types.UnionType or origin is Union:
            if value is None:
                return True
            return any(self._check_type(value, arg) for arg in get_args(expected_type) if arg is not type(None))

        if origin:
            if origin is list and isinstance(value, tuple):
                return True
            try:
                return isinstance(value, origin)
            except TypeError:
                return True

        if expected_type is float and isinstance(value, int) and not isinstance(value, bool):
            return True

        try:
            return isinstance(value, expected_type)
        except TypeError:
            return True


def is_static_file(url: str, simple_or_ext: Union[bool, Sequence[str]] = True) -> bool:
    """
    Whether ``url`` points at a static resource, judged by extension.

    ``True`` checks a short list of common assets, ``False`` a long one;
    a sequence checks exactly those extensions. With a bool, paths under
    ``captcha/`` or ``tn_code/`` also count as static.
    """
    path = urlsplit(url).path
    ext = posixpath.splitext(path)[1].lstrip(".").lower()

    if isinstance(simple_or_ext, bool):
        known = SIMPLE_STATIC_EXTENSIONS if simple_or_ext else EXTENDED_STATIC_EXTENSIONS
        if ext:
            return ext in known
        return path.strip("/").startswith(STATIC_PREFIXES)

    return bool(ext) and ext in [e.lower() for e in simple_or_ext]


def is_enable_trace(config: TraceConfig, request: Any) -> bool:
    """
    Whether the toolbar is active for ``request``.

    Outside an HTTP request (CLI, workers) tracing is always off.
    """
    if request is None:
        return False

    if isinstance(config.enabled, bool):
        return config.enabled

    try:
        return (
            (not config.is_production or config.debug)
            and not request.expects_json
            and not _is_configured_static(config, request.path)
        )
    except Exception:
        logger.debug("Trace enable check failed", exc_info=True)
        return False


def _is_configured_static(config: TraceConfig, path: str) -> bool:
    ext = posixpath.splitext(path)[1].lstrip(".").lower()
    if ext:
        return ext in [e.lower() for e in config.static_extensions]
    return path.strip("/").startswith(tuple(config.static_prefixes))


def get_trace_module_name(path: str, namespace: str = "") -> str:
    """
    Module a request belongs to: the first segment of its path.

    Falls back to ``"app"`` for top-level paths or when no module
    namespace is configured.
    """
    if not namespace:
        return "app"
    head, sep, _ = path.strip("/").partition("/")
    return head if sep and head else "app"
