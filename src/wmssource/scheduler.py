"""Per-frame request cycle of the map source."""

from __future__ import annotations

import io
from dataclasses import dataclass, field
from fractions import Fraction
from threading import Lock
from typing import TYPE_CHECKING, Callable

import numpy as np
from loguru import logger
from PIL import Image, UnidentifiedImageError

from wmssource import utils
from wmssource.exceptions import ParseError, ResourceError, ServiceError
from wmssource.expressions import BBoxExpressions, BoundingBox, evaluate

if TYPE_CHECKING:
    from wmssource.template import RequestTemplate
    from wmssource.utils import WMSSession

    Fetcher = Callable[[str], bytes]
    Sink = Callable[["Frame"], None]

__all__ = ["Frame", "FrameClock", "FrameScheduler", "decode_frame", "session_fetcher"]

PIXEL_MODE = "RGBX"


class FrameClock:
    """A pts counter that is safe to share between threads.

    Parameters
    ----------
    start : int, optional
        The first pts to hand out, defaults to 0.
    """

    def __init__(self, start: int = 0) -> None:
        if start < 0:
            raise ValueError("start should be a non-negative integer.")
        self._next_pts = start
        self._lock = Lock()

    @property
    def current(self) -> int:
        """The pts that the next frame will get."""
        with self._lock:
            return self._next_pts

    def tick(self, on_tick: Callable[[int], None] | None = None) -> int:
        """Hand out the next pts.

        Parameters
        ----------
        on_tick : callable, optional
            Called with the pts while the lock is held, defaults to None.

        Returns
        -------
        int
            The pts, every call gets a distinct and larger value.
        """
        with self._lock:
            pts = self._next_pts
            self._next_pts += 1
            if on_tick is not None:
                on_tick(pts)
        return pts

    def reset(self, start: int = 0) -> None:
        with self._lock:
            self._next_pts = start

    def __repr__(self) -> str:
        return f"FrameClock(next_pts={self.current})"


@dataclass(eq=False)
class Frame:
    """A decoded map frame.

    Parameters
    ----------
    data : numpy.ndarray
        Pixels with ``(height, width, 4)`` shape in the RGBX layout.
    pts : int
        Presentation timestamp in ``time_base`` units.
    time_base : Fraction
        Duration of one tick in seconds.
    bbox : BoundingBox
        The bounding box of the map.
    url : str
        The GetMap request of the map.
    duration : int, optional
        Duration of the frame in ticks, defaults to 1.
    """

    data: np.ndarray = field(repr=False)
    pts: int
    time_base: Fraction
    bbox: BoundingBox
    url: str
    duration: int = 1

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    @property
    def time(self) -> float:
        """Presentation time in seconds."""
        return float(self.pts * self.time_base)

    def to_image(self) -> Image.Image:
        """Get the frame as a Pillow image."""
        return Image.fromarray(np.ascontiguousarray(self.data[..., :3]))


def decode_frame(content: bytes, width: int, height: int) -> np.ndarray:
    """Decode an image into an RGBX pixel buffer.

    Parameters
    ----------
    content : bytes
        The encoded image, e.g., PNG.
    width : int
        Width of the frame.
    height : int
        Height of the frame.

    Returns
    -------
    numpy.ndarray
        An array of ``uint8`` with ``(height, width, 4)`` shape.
    """
    if utils.is_service_exception(content):
        raise ServiceError(utils.check_response(content.decode("utf-8", errors="replace")))

    try:
        with Image.open(io.BytesIO(content)) as img:
            img.load()
            frame = img.convert(PIXEL_MODE)
    except (UnidentifiedImageError, OSError, SyntaxError) as ex:
        raise ParseError("map image", str(ex)) from ex

    if frame.size != (width, height):
        img_w, img_h = frame.size
        logger.warning(f"Resizing map image from {img_w}x{img_h} to {width}x{height}")
        frame = frame.resize((width, height), Image.Resampling.BILINEAR)

    try:
        return np.asarray(frame, dtype=np.uint8).copy()
    except MemoryError as ex:
        raise ResourceError(f"Failed to allocate a {width}x{height} frame buffer.") from ex


def session_fetcher(session: WMSSession) -> Fetcher:
    """Get a function that fetches map images with a session."""

    def fetch(url: str) -> bytes:
        resp = session.get(url)
        content_type = resp.headers.get("Content-Type")
        if utils.is_service_exception(resp.content, content_type):
            raise ServiceError(utils.check_response(resp.text), url)
        return resp.content

    return fetch


class FrameScheduler:
    """Produce map frames one request at a time.

    Notes
    -----
    ``produce_frame`` can be called from several threads at once. Only the
    pts assignment is serialized, map requests run concurrently. Frames that
    fail are dropped without taking a pts.

    Parameters
    ----------
    template : RequestTemplate
        The GetMap request template.
    expressions : BBoxExpressions
        Expressions of the bounding box.
    width : int
        Width of the frames.
    height : int
        Height of the frames.
    time_base : Fraction
        Duration of one tick in seconds, i.e., the inverse of the frame rate.
    fetch : callable
        A function that takes a url and returns the encoded image.
    clock : FrameClock, optional
        The pts counter, defaults to a new counter starting at 0.
    sink : callable, optional
        Downstream consumer that receives every produced frame, defaults to None.
    """

    def __init__(
        self,
        template: RequestTemplate,
        expressions: BBoxExpressions,
        width: int,
        height: int,
        time_base: Fraction,
        fetch: Fetcher,
        clock: FrameClock | None = None,
        sink: Sink | None = None,
    ) -> None:
        self.template = template
        self.expressions = expressions
        self.width = width
        self.height = height
        self.time_base = time_base
        self.fetch = fetch
        self.clock = FrameClock() if clock is None else clock
        self.sink = sink

    def produce_frame(self) -> Frame:
        """Request, decode, and timestamp the next frame."""
        t = float(self.clock.current * self.time_base)
        bbox = evaluate(self.expressions, t)
        url = self.template.fill(bbox)

        data = decode_frame(self.fetch(url), self.width, self.height)

        def _log(pts: int) -> None:
            logger.info(f"Draw from pts: {pts} {bbox}")
            logger.info(f"Used url: {url}")

        pts = self.clock.tick(_log)
        frame = Frame(data=data, pts=pts, time_base=self.time_base, bbox=bbox, url=url)
        if self.sink is not None:
            self.sink(frame)
        return frame
