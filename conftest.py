"""Configuration for pytest."""

from __future__ import annotations

import io
from threading import Lock

import pytest
import requests
from PIL import Image

from wmssource.exceptions import ServiceError, ServiceUnavailableError

CAPS_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<WMS_Capabilities {version} xmlns="http://www.opengis.net/wms"
    xmlns:xlink="http://www.w3.org/1999/xlink">
  {service}
  <Capability>
    <Request>
      <GetCapabilities>
        <Format>text/xml</Format>
      </GetCapabilities>
      {getmap}
    </Request>
  </Capability>
</WMS_Capabilities>
"""
GETMAP_TEMPLATE = """<GetMap>
        <Format>image/png</Format>
        <DCPType>
          <HTTP>
            <Get>
              <OnlineResource xlink:type="simple" {href}/>
            </Get>
          </HTTP>
        </DCPType>
      </GetMap>"""


def capabilities_xml(
    version: str | None = "1.3.0",
    name: str | None = "WMS",
    href: str | None = "http://example/wms/getmap",
    service: bool = True,
    getmap: bool = True,
) -> bytes:
    """Build a GetCapabilities document."""
    if service:
        name_node = "" if name is None else f"<Name>{name}</Name>"
        service_node = f"<Service>{name_node}<Title>Test map service</Title></Service>"
    else:
        service_node = ""
    getmap_node = ""
    if getmap:
        getmap_node = GETMAP_TEMPLATE.format(href="" if href is None else f'xlink:href="{href}"')
    return CAPS_TEMPLATE.format(
        version="" if version is None else f'version="{version}"',
        service=service_node,
        getmap=getmap_node,
    ).encode()


def png_bytes(
    width: int = 256, height: int = 256, color: tuple[int, int, int] = (10, 20, 30)
) -> bytes:
    """Encode a single color PNG image."""
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeSession:
    """Stand-in for ``WMSSession`` that answers from a routing table.

    Routes map a url without its query to ``(status, content, content_type)``
    or to a callable that takes the full url and returns such a tuple.
    """

    def __init__(self, routes):
        self.routes = routes
        self.calls = []
        self.closed = False
        self._lock = Lock()

    def get(self, url, params=None, headers=None):
        if params:
            url = requests.Request("GET", url, params=params).prepare().url
        with self._lock:
            self.calls.append(url)
        route = self.routes.get(url.split("?", 1)[0])
        if route is None:
            raise ServiceUnavailableError(url)
        status, content, content_type = route(url) if callable(route) else route
        if status >= 400:
            raise ServiceError(content.decode(), url)
        resp = requests.Response()
        resp.status_code = status
        resp._content = content
        resp.headers["Content-Type"] = content_type
        resp.url = url
        return resp

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def _add_standard_imports(doctest_namespace):
    """Add wmssource namespace for doctest."""
    import wmssource as wsrc

    doctest_namespace["wsrc"] = wsrc


@pytest.fixture
def png():
    return png_bytes()


@pytest.fixture
def make_png():
    return png_bytes


@pytest.fixture
def make_caps():
    return capabilities_xml


@pytest.fixture
def make_session():
    return FakeSession


@pytest.fixture
def wms_session(png):
    """A session for a 1.3.0 service at http://example/wms."""
    return FakeSession(
        {
            "http://example/wms": (200, capabilities_xml(), "text/xml"),
            "http://example/wms/getmap": (200, png, "image/png"),
        }
    )
