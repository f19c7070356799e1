"""A video source that renders frames from a WMS service."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from enum import Enum
from fractions import Fraction
from typing import TYPE_CHECKING, Any

import joblib
from loguru import logger

from wmssource import utils
from wmssource.capabilities import ServiceDescriptor, resolve_capabilities
from wmssource.exceptions import InputTypeError, InputValueError, SourceStateError
from wmssource.expressions import BBoxExpressions
from wmssource.scheduler import Frame, FrameClock, FrameScheduler, session_fetcher
from wmssource.template import RequestTemplate, build_template, fixed_template

if TYPE_CHECKING:
    from collections.abc import Iterator

    from pyproj import CRS
    from typing_extensions import Self

    from wmssource.scheduler import Sink
    from wmssource.utils import WMSSession

    CRSType = int | str | CRS

__all__ = ["MapSource", "SourceOptions", "SourceState", "parse_size", "parse_rate"]

SIZE_ABBR = {
    "ntsc": (720, 480),
    "pal": (720, 576),
    "qntsc": (352, 240),
    "qpal": (352, 288),
    "sqcif": (128, 96),
    "qcif": (176, 144),
    "cif": (352, 288),
    "4cif": (704, 576),
    "qqvga": (160, 120),
    "qvga": (320, 240),
    "vga": (640, 480),
    "svga": (800, 600),
    "xga": (1024, 768),
    "sxga": (1280, 1024),
    "uxga": (1600, 1200),
    "hd480": (852, 480),
    "hd720": (1280, 720),
    "hd1080": (1920, 1080),
    "2k": (2048, 1080),
    "uhd2160": (3840, 2160),
    "4k": (4096, 2160),
}
RATE_ABBR = {
    "ntsc": Fraction(30000, 1001),
    "pal": Fraction(25),
    "qntsc": Fraction(30000, 1001),
    "qpal": Fraction(25),
    "film": Fraction(24),
    "ntsc-film": Fraction(24000, 1001),
}
OPTION_ALIASES = {"s": "size", "r": "rate"}
EXPRESSION_OPTIONS = ("xref", "yref", "x1", "x2", "y1", "y2")


def parse_size(size: str | tuple[int, int]) -> tuple[int, int]:
    """Parse a frame size such as ``640x480`` or ``vga``."""
    if isinstance(size, tuple):
        if len(size) != 2 or not all(isinstance(v, int) and not isinstance(v, bool) for v in size):
            raise InputValueError("size", ["a (width, height) tuple of integers"], str(size))
        width, height = size
    elif isinstance(size, str):
        value = size.strip().lower()
        if value in SIZE_ABBR:
            return SIZE_ABBR[value]
        match = re.fullmatch(r"(\d+)\s*x\s*(\d+)", value)
        if match is None:
            raise InputValueError("size", ["WxH, e.g., 640x480", *SIZE_ABBR], size)
        width, height = (int(v) for v in match.groups())
    else:
        raise InputTypeError("size", "str or tuple", "640x480")

    if width <= 0 or height <= 0:
        raise InputValueError("size", ["positive width and height"], f"{width}x{height}")
    return int(width), int(height)


def parse_rate(rate: str | float | Fraction) -> Fraction:
    """Parse a frame rate such as ``25``, ``29.97``, ``30000/1001``, or ``ntsc``."""
    if isinstance(rate, str) and rate.strip().lower() in RATE_ABBR:
        return RATE_ABBR[rate.strip().lower()]
    try:
        value = Fraction(rate.strip() if isinstance(rate, str) else rate).limit_denominator(1001000)
    except (ValueError, TypeError, ZeroDivisionError) as ex:
        raise InputValueError("rate", ["a positive number or num/den", *RATE_ABBR], rate) from ex
    if value <= 0:
        raise InputValueError("rate", ["a positive number or num/den", *RATE_ABBR], rate)
    return value


@dataclass
class SourceOptions:
    """Configuration of a map source.

    Parameters
    ----------
    size : str or tuple, optional
        Frame size as ``WxH``, an abbreviation such as ``hd720``, or a
        ``(width, height)`` tuple, defaults to ``640x480``.
    rate : str, float, or Fraction, optional
        Frame rate, defaults to 25.
    end_pts : float, optional
        The terminal pts. It's not enforced by ``MapSource.produce_frame``,
        the pipeline should stop requesting frames when it's reached. Defaults to 400.
    xref, yref : str, optional
        Reference coordinate expressions, default to ``0``.
    x1, x2, y1, y2 : str, optional
        West, east, south, and north expressions, default to the whole world.
    url : str, optional
        The WMS service url. If not given, the built-in OpenStreetMap
        service is used without sending a GetCapabilities request.
    layers : str or list, optional
        The layers to request, defaults to an empty string.
    crs : str, int, or pyproj.CRS, optional
        The spatial reference of the bounding boxes, defaults to ``EPSG:4326``.
    timeout : float, optional
        Timeout of each request in seconds, defaults to None, i.e., no timeout.
    ssl : bool, optional
        Whether to verify SSL certificates, defaults to True.
    cache_capabilities : bool, optional
        Cache the capabilities document on disk, defaults to False.
    """

    size: str | tuple[int, int] = "640x480"
    rate: str | float | Fraction = 25
    end_pts: float = 400
    xref: str = "0"
    yref: str = "0"
    x1: str = "-180"
    x2: str = "180"
    y1: str = "-90"
    y2: str = "90"
    url: str | None = None
    layers: str | list[str] = ""
    crs: CRSType = 4326
    timeout: float | None = None
    ssl: bool = True
    cache_capabilities: bool = False
    width: int = field(init=False)
    height: int = field(init=False)
    frame_rate: Fraction = field(init=False)

    def __post_init__(self) -> None:
        self.width, self.height = parse_size(self.size)
        self.frame_rate = parse_rate(self.rate)
        if self.end_pts < 0:
            raise InputValueError("end_pts", ["a non-negative number"], str(self.end_pts))
        if not isinstance(self.layers, str):
            self.layers = ",".join(str(lyr) for lyr in self.layers)
        self.crs_str = utils.validate_crs(self.crs)
        if self.url is not None:
            if not self.url.strip():
                raise InputValueError("url", ["a non-empty http(s) url"], "")
            utils.check_scheme(self.url)
        self.expressions.validate()

    @classmethod
    def from_options(cls, **options: Any) -> SourceOptions:
        """Create the configuration from option names, including the short aliases.

        Examples
        --------
        >>> opts = SourceOptions.from_options(s="256x256", r="30000/1001", x1="-10")
        >>> opts.width, opts.height, opts.frame_rate
        (256, 256, Fraction(30000, 1001))
        """
        valid = [f.name for f in fields(cls) if f.init]
        kwargs: dict[str, Any] = {}
        for name, value in options.items():
            key = OPTION_ALIASES.get(name, name)
            if key not in valid:
                raise InputValueError("option", [*valid, *OPTION_ALIASES], name)
            kwargs[key] = value
        return cls(**kwargs)

    @property
    def expressions(self) -> BBoxExpressions:
        return BBoxExpressions(*(str(getattr(self, n)) for n in EXPRESSION_OPTIONS))

    @property
    def time_base(self) -> Fraction:
        """Duration of one frame in seconds."""
        return 1 / self.frame_rate


class SourceState(str, Enum):
    """Lifecycle states of a map source."""

    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    PRODUCING = "producing"
    TERMINATED = "terminated"


class MapSource:
    """Render video frames from a WMS service.

    Every frame's bounding box is computed from the ``x1``, ``x2``, ``y1``,
    and ``y2`` expressions, the map of that box is requested from the service,
    and the decoded image is returned as a frame with the next pts.

    Parameters
    ----------
    options : SourceOptions, optional
        The configuration, defaults to None which builds it from ``kwargs``.
    session : WMSSession, optional
        The session for all the requests, defaults to None which creates
        a session that is closed by ``stop``.
    sink : callable, optional
        A downstream consumer that receives every produced frame, defaults to None.
    **kwargs
        Options for ``SourceOptions.from_options`` when ``options`` is not given.

    Examples
    --------
    >>> src = MapSource(url="https://ows.terrestris.de/osm/service", layers="OSM-WMS")
    >>> frame = src.start().produce_frame()  # doctest: +SKIP
    """

    def __init__(
        self,
        options: SourceOptions | None = None,
        session: WMSSession | None = None,
        sink: Sink | None = None,
        **kwargs: Any,
    ) -> None:
        if options is None:
            options = SourceOptions.from_options(**kwargs)
        elif kwargs:
            raise InputTypeError("kwargs", "empty when options is given")
        self.options = options
        self.sink = sink
        self._session = session
        self._owns_session = session is None
        self.clock = FrameClock()
        self.state = SourceState.UNINITIALIZED
        self.descriptor: ServiceDescriptor | None = None
        self.template: RequestTemplate | None = None
        self._scheduler: FrameScheduler | None = None

    @property
    def time_base(self) -> Fraction:
        return self.options.time_base

    @property
    def session(self) -> WMSSession:
        if self._session is None:
            self._session = utils.WMSSession(
                disable=True, timeout=self.options.timeout, ssl=self.options.ssl
            )
            self._owns_session = True
        return self._session

    def _resolve(self, url: str) -> ServiceDescriptor:
        if self.options.cache_capabilities and not self._owns_session:
            logger.warning("Ignoring cache_capabilities, a session was given to the source.")
        if self._owns_session and self.options.cache_capabilities:
            with utils.WMSSession(
                disable=False, timeout=self.options.timeout, ssl=self.options.ssl
            ) as session:
                return resolve_capabilities(url, session)
        return resolve_capabilities(url, self.session)

    def start(self) -> Self:
        """Discover the service and build the request template.

        Configuration errors are raised here and the source stays uninitialized.
        """
        if self.state not in (SourceState.UNINITIALIZED, SourceState.TERMINATED):
            raise SourceStateError(
                self.state.value, (SourceState.UNINITIALIZED.value, SourceState.TERMINATED.value)
            )
        opts = self.options
        if opts.url is None:
            logger.info("No url is given, using the built-in OpenStreetMap WMS.")
            if opts.layers:
                logger.warning(f"Ignoring layers ({opts.layers}), using OSM-WMS.")
            descriptor = None
            template = fixed_template(opts.width, opts.height)
        else:
            descriptor = self._resolve(opts.url)
            template = build_template(
                descriptor, opts.layers, opts.width, opts.height, opts.crs_str
            )

        self.descriptor = descriptor
        self.template = template
        self.clock.reset()
        self._scheduler = FrameScheduler(
            template=template,
            expressions=opts.expressions,
            width=opts.width,
            height=opts.height,
            time_base=opts.time_base,
            fetch=session_fetcher(self.session),
            clock=self.clock,
            sink=self.sink,
        )
        self.state = SourceState.INITIALIZED
        logger.info(f"Request template: {template}")
        return self

    def produce_frame(self) -> Frame:
        """Produce the next frame, safe to call from several threads."""
        scheduler = self._scheduler
        if scheduler is None or self.state not in (
            SourceState.INITIALIZED,
            SourceState.PRODUCING,
        ):
            raise SourceStateError(
                self.state.value, (SourceState.INITIALIZED.value, SourceState.PRODUCING.value)
            )
        self.state = SourceState.PRODUCING
        return scheduler.produce_frame()

    def produce_frames(self, count: int, n_jobs: int = 4) -> list[Frame]:
        """Produce several frames concurrently.

        Parameters
        ----------
        count : int
            Number of frames.
        n_jobs : int, optional
            Number of threads pulling frames at the same time, defaults to 4.

        Returns
        -------
        list of Frame
            The frames sorted by pts.
        """
        if count < 1:
            raise InputTypeError("count", "positive integer")
        n_jobs = max(min(n_jobs, count), 1)
        frames = joblib.Parallel(n_jobs=n_jobs, prefer="threads")(
            joblib.delayed(self.produce_frame)() for _ in range(count)
        )
        return sorted(frames, key=lambda f: f.pts)

    def iter_frames(self) -> Iterator[Frame]:
        """Produce frames until the clock reaches ``end_pts``."""
        while self.clock.current < self.options.end_pts:
            yield self.produce_frame()

    def stop(self) -> None:
        """Release the session, ``start`` can be called again afterwards."""
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None
        self._scheduler = None
        self.state = SourceState.TERMINATED

    def __enter__(self) -> Self:
        return self.start()

    def __exit__(self, *args: object) -> None:
        self.stop()

    def __repr__(self) -> str:
        """Print the source properties."""
        opts = self.options
        service = self.descriptor.getmap_url if self.descriptor else "built-in OpenStreetMap"
        version = self.descriptor.version.value if self.descriptor else "1.1.1"
        return "\n".join(
            [
                "WMS map source with the following properties:",
                f"State: {self.state.value}",
                f"Service: {service}",
                f"Version: {version}",
                f"Layers: {'OSM-WMS' if opts.url is None else opts.layers}",
                f"Size: {opts.width}x{opts.height}",
                f"Frame rate: {opts.frame_rate}",
                f"Next pts: {self.clock.current}",
            ]
        )
