"""Top-level package for WMSSource."""

from __future__ import annotations

import os
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from wmssource import exceptions
from wmssource.capabilities import ServiceDescriptor, WMSVersion, resolve_capabilities
from wmssource.expressions import BBoxExpressions, BoundingBox, evaluate
from wmssource.scheduler import Frame, FrameClock, FrameScheduler
from wmssource.source import MapSource, SourceOptions, SourceState
from wmssource.template import RequestTemplate, build_template, fixed_template, percent_encode
from wmssource.utils import WMSSession

cert_path = os.getenv("WMSSOURCE_SSL_CERT")
if cert_path is not None and not Path(cert_path).exists():
    raise FileNotFoundError(cert_path)

try:
    __version__ = version("wmssource")
except PackageNotFoundError:
    __version__ = "999"

__all__ = [
    "BBoxExpressions",
    "BoundingBox",
    "Frame",
    "FrameClock",
    "FrameScheduler",
    "MapSource",
    "RequestTemplate",
    "ServiceDescriptor",
    "SourceOptions",
    "SourceState",
    "WMSSession",
    "WMSVersion",
    "__version__",
    "build_template",
    "evaluate",
    "exceptions",
    "fixed_template",
    "percent_encode",
    "resolve_capabilities",
]
