"""GetMap request templates."""

from __future__ import annotations

import string
from dataclasses import dataclass
from typing import TYPE_CHECKING

from wmssource import utils
from wmssource.capabilities import ServiceDescriptor, WMSVersion
from wmssource.exceptions import ConfigurationError, InputValueError

if TYPE_CHECKING:
    from wmssource.expressions import BoundingBox

__all__ = ["RequestTemplate", "build_template", "fixed_template", "percent_encode", "is_unreserved"]

UNRESERVED = frozenset((string.ascii_letters + string.digits + "-_~/").encode())
BBOX_HOLE = "{west:.6f},{south:.6f},{east:.6f},{north:.6f}"
FIXED_BBOX_HOLE = BBOX_HOLE.replace(",", "%2C")
DEF_CRS = "EPSG:4326"
DEF_FORMAT = "image/png"

FIXED_SERVICE_URL = "https://ows.terrestris.de/osm/service"
FIXED_QUERY = (
    "service=WMS&version=1.1.1&request=GetMap&layers=OSM-WMS&styles=&format=image%2Fpng"
    + "&bbox={bbox}&width={width}&height={height}&srs=EPSG%3A4326&transparent=true"
)


def is_unreserved(byte: int, safe: str = "") -> bool:
    """Check if a byte can appear in a query value without escaping."""
    return byte in UNRESERVED or (byte < 128 and chr(byte) in safe)


def percent_encode(value: str, safe: str = "") -> str:
    """Percent-encode a string for a query string.

    ASCII letters, digits, ``-``, ``_``, ``~``, ``/``, and the characters in
    ``safe`` are kept as is and every other byte of the UTF-8 encoded string
    becomes ``%XX``.

    Examples
    --------
    >>> percent_encode("topp:states,roads")
    'topp%3Astates%2Croads'
    >>> percent_encode("EPSG:4326", safe=":")
    'EPSG:4326'
    """
    try:
        raw = value.encode("utf-8")
    except UnicodeEncodeError as ex:
        raise ConfigurationError(f"Failed to percent-encode {value!r}: {ex}") from ex
    return "".join(chr(b) if is_unreserved(b, safe) else f"%{b:02X}" for b in raw)


def _escape_braces(value: str) -> str:
    return value.replace("{", "{{").replace("}", "}}")


def _join_query(url: str) -> str:
    if url.endswith(("?", "&")):
        return url
    return f"{url}&" if "?" in url else f"{url}?"


@dataclass(frozen=True)
class RequestTemplate:
    """A GetMap url with a hole for the bounding box.

    Parameters
    ----------
    template : str
        The url in ``str.format`` syntax with the ``west``, ``south``,
        ``east``, and ``north`` fields.
    version : WMSVersion, optional
        The WMS version of the request, defaults to None for templates
        that were not built from a capabilities document.
    """

    template: str
    version: WMSVersion | None = None

    def __post_init__(self) -> None:
        if not self.template:
            raise ConfigurationError("The request template is empty.")

    def fill(self, bbox: BoundingBox) -> str:
        """Get the request url for a bounding box."""
        return self.template.format(west=bbox.x1, south=bbox.y1, east=bbox.x2, north=bbox.y2)

    def __str__(self) -> str:
        return self.template


def _check_size(width: int, height: int) -> None:
    if width <= 0 or height <= 0:
        raise InputValueError("size", ["positive width and height"], f"{width}x{height}")


def build_template(
    descriptor: ServiceDescriptor,
    layers: str,
    width: int,
    height: int,
    crs: str = DEF_CRS,
) -> RequestTemplate:
    """Build the GetMap request template of a WMS service.

    Parameters
    ----------
    descriptor : ServiceDescriptor
        The service descriptor from the capabilities document.
    layers : str
        Comma separated list of layers.
    width : int
        Width of the requested images in pixels.
    height : int
        Height of the requested images in pixels.
    crs : str, optional
        The spatial reference of the bounding boxes, defaults to ``EPSG:4326``.

    Returns
    -------
    RequestTemplate
        The request template.
    """
    _check_size(width, height)
    endpoint = utils.check_scheme(descriptor.getmap_url)

    payload = [
        ("service", percent_encode(descriptor.service_name)),
        ("version", descriptor.version.value),
        ("request", "GetMap"),
        ("layers", percent_encode(layers)),
        ("styles", ""),
        ("format", DEF_FORMAT),
        ("bbox", None),
        ("width", str(width)),
        ("height", str(height)),
        (descriptor.version.srs_key, percent_encode(crs, safe=":")),
    ]
    query = "&".join(
        f"{k}={BBOX_HOLE}" if v is None else _escape_braces(f"{k}={v}") for k, v in payload
    )
    return RequestTemplate(_escape_braces(_join_query(endpoint)) + query, descriptor.version)


def fixed_template(width: int, height: int) -> RequestTemplate:
    """Request template of the built-in OpenStreetMap WMS.

    This is the simplified mode that is used when no capabilities url
    is given: no discovery request is sent and the layer is always ``OSM-WMS``.
    """
    _check_size(width, height)
    query = FIXED_QUERY.format(bbox=FIXED_BBOX_HOLE, width=width, height=height)
    return RequestTemplate(f"{FIXED_SERVICE_URL}?{query}", WMSVersion.V111)
