"""
Tracebar - in-browser request trace panel for ASGI applications

Complete integration of:
- Collector: SQL queries, transactions, model events and views per request
- Recorder: ad-hoc ``trace(*values)`` debug messages with caller location
- Capture: exception report/render with request-scoped de-duplication
- Aggregator: tabbed trace (base, route, session, request, ...) per request
- Panel: collapsible panel injected into HTML or a JSON ``_debugger`` field
"""

__version__ = "0.1.0"

# ============================================================================
# Core
# ============================================================================

from .config import (
    ConfigError,
    TraceConfig,
    TraceConfigLoader,
    get_trace_module_name,
    is_enable_trace,
    is_static_file,
)
from .faults import (
    AssetNotFound,
    Fault,
    FaultDomain,
    HTTPAbort,
    Severity,
    TraceConfigFault,
    abort,
)
from .identity import current_request_id, new_request_id
from .request import Request
from .response import Response
from .signals import ConnectionInfo, MODEL_EVENTS, Signal, SignalBus, bus

# ============================================================================
# Trace pipeline
# ============================================================================

from .context import CaptureState, RouteInfo, TraceContext, current_context
from .store import PartitionedStore, ReportedHashSet
from .collector import EventCollector
from .recorder import MessageRecorder, trace
from .capture import ExceptionCapture
from .aggregator import TraceAggregator, format_param, mask_ip, size_format
from .panel import PanelRenderer
from .injector import HtmlInjector
from .assets import AssetResponder
from .tracer import Tracer
from .middleware import TraceMiddleware

__all__ = [
    "__version__",
    # Config
    "ConfigError",
    "TraceConfig",
    "TraceConfigLoader",
    "get_trace_module_name",
    "is_enable_trace",
    "is_static_file",
    # Faults
    "AssetNotFound",
    "Fault",
    "FaultDomain",
    "HTTPAbort",
    "Severity",
    "TraceConfigFault",
    "abort",
    # HTTP
    "Request",
    "Response",
    # Signals
    "ConnectionInfo",
    "MODEL_EVENTS",
    "Signal",
    "SignalBus",
    "bus",
    # Pipeline
    "current_request_id",
    "new_request_id",
    "CaptureState",
    "RouteInfo",
    "TraceContext",
    "current_context",
    "PartitionedStore",
    "ReportedHashSet",
    "EventCollector",
    "MessageRecorder",
    "trace",
    "ExceptionCapture",
    "TraceAggregator",
    "format_param",
    "mask_ip",
    "size_format",
    "PanelRenderer",
    "HtmlInjector",
    "AssetResponder",
    "Tracer",
    "TraceMiddleware",
]
