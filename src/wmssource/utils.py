"""Some utilities for WMSSource."""

from __future__ import annotations

import contextlib
import os
import sys
from pathlib import Path
from threading import Lock
from typing import TYPE_CHECKING, Any

import defusedxml.ElementTree as ETree
import pyproj
import requests
import urllib3
from loguru import logger
from pyproj.exceptions import CRSError as ProjCRSError
from requests.exceptions import RequestException
from requests_cache import CachedSession
from requests_cache.backends.sqlite import SQLiteCache
from urllib3.exceptions import InsecureRequestWarning
from yarl import URL

from wmssource.exceptions import (
    ConfigurationError,
    InputTypeError,
    ServiceError,
    ServiceUnavailableError,
    TransportError,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

    from typing_extensions import Self

    CRSType = int | str | pyproj.CRS

EXPIRE_AFTER = 60 * 60 * 24 * 7  # 1 week
HTTP_SCHEMES = ("http", "https")
__all__ = ["WMSSession", "check_response", "validate_crs", "strip_query", "resolve_href"]

logger.configure(
    handlers=[
        {
            "sink": sys.stdout,
            "colorize": True,
            "format": " | ".join(
                [
                    "{time:YYYY-MM-DD at HH:mm:ss}",  # noqa: FS003
                    "{name: ^15}.{function: ^15}:{line: >3}",  # noqa: FS003
                    "{message}",  # noqa: FS003
                ]
            ),
        }
    ]
)
if os.environ.get("WMSSOURCE_VERBOSE", "false").lower() == "true":
    logger.enable("wmssource")
else:
    logger.disable("wmssource")


def check_response(resp: str) -> str:
    """Extract error message from a response, if any.

    WMS servers report failures as a ``ServiceExceptionReport`` document
    whose last child holds the message.
    """
    try:
        root = ETree.fromstring(resp)
    except ETree.ParseError:
        return resp
    else:
        try:
            return str(root[-1][0].text).strip()
        except IndexError:
            try:
                return str(root[-1].text).strip()
            except IndexError:
                return str(root.text).strip()


def is_service_exception(content: bytes, content_type: str | None = None) -> bool:
    """Check if a GetMap response body is an XML service exception instead of an image."""
    if content_type is not None and "xml" in content_type.lower():
        return True
    head = content.lstrip()[:256].lower()
    return head.startswith(b"<?xml") or b"serviceexception" in head


def strip_query(url: str) -> str:
    """Remove the query string and the fragment from a url."""
    return str(URL(url).with_query(None).with_fragment(None))


def resolve_href(href: str | None, base_url: str) -> str | None:
    """Resolve an ``OnlineResource`` href against the capabilities url.

    Returns ``None`` when ``href`` is empty. Relative references, or
    references without an http(s) scheme, are joined to ``base_url``.
    """
    if not href or not href.strip():
        return None
    href = href.strip()
    url = URL(href)
    if url.scheme in HTTP_SCHEMES and url.host:
        return href
    return str(URL(base_url).join(URL(href)))


def check_scheme(url: str) -> str:
    """Make sure that a url uses http or https."""
    try:
        scheme = URL(url).scheme
    except ValueError as ex:
        raise ConfigurationError(f"Invalid url: {url}") from ex
    if scheme not in HTTP_SCHEMES:
        raise ConfigurationError(
            f"The url should use one of {', '.join(HTTP_SCHEMES)} schemes, got: {url}"
        )
    return url


def validate_crs(crs: CRSType) -> str:
    """Validate a CRS.

    Parameters
    ----------
    crs : str, int, or pyproj.CRS
        Input CRS.

    Returns
    -------
    str
        Validated CRS as a string, e.g., ``EPSG:4326``.
    """
    try:
        return pyproj.CRS(crs).to_string()
    except ProjCRSError as ex:
        raise InputTypeError("crs", "a valid CRS") from ex


class WMSSession:
    """A requests session for talking to WMS services.

    Notes
    -----
    Requests are never retried. Capabilities documents can be cached on disk
    with ``requests-cache``; map images should be requested through a session
    with caching disabled since every frame must hit the service.

    Parameters
    ----------
    cache_name : str, optional
        Path to a file for caching the session, default to None which uses
        ``./cache/http_cache.sqlite`` or ``WMSSOURCE_CACHE_NAME``.
    expire_after : int, optional
        Expiration time for the cache in seconds, defaults to 1 week or
        ``WMSSOURCE_CACHE_EXPIRE``.
    disable : bool, optional
        If ``True`` disable caching request/responses, defaults to ``True``.
    timeout : float, optional
        Timeout of each request in seconds, defaults to ``None``, i.e., block
        until the service responds.
    ssl : bool, optional
        If ``True`` verify SSL certificates, defaults to ``True``.
    """

    _lock = Lock()

    def __init__(
        self,
        cache_name: str | Path | None = None,
        expire_after: int = EXPIRE_AFTER,
        disable: bool = True,
        timeout: float | None = None,
        ssl: bool = True,
    ) -> None:
        if cache_name is None:
            self.cache_name = Path(
                os.getenv("WMSSOURCE_CACHE_NAME", Path("cache", "http_cache.sqlite"))
            )
        else:
            self.cache_name = Path(cache_name)

        self.expire_after = expire_after
        if self.expire_after == EXPIRE_AFTER:
            self.expire_after = int(os.getenv("WMSSOURCE_CACHE_EXPIRE", EXPIRE_AFTER))

        self.timeout = timeout
        self.ssl_cert = os.getenv("WMSSOURCE_SSL_CERT")

        self.disable = disable

        if not ssl:
            urllib3.disable_warnings(InsecureRequestWarning)
            self.session.verify = False

    def __del__(self) -> None:
        """Ensure resources are cleaned up."""
        with contextlib.suppress(Exception):
            self.close()

    @property
    def disable(self) -> bool:
        """Disable caching request/responses."""
        return self._disable

    @disable.setter
    def disable(self, value: bool) -> None:
        with self._lock:
            self._disable = value
            if not self._disable:
                self._disable = os.getenv("WMSSOURCE_CACHE_DISABLE", "false").lower() == "true"

            if self._disable:
                self.session = requests.Session()
            else:
                self.cache_name.parent.mkdir(exist_ok=True, parents=True)
                backend = SQLiteCache(self.cache_name, fast_save=True, timeout=1)
                self.session = CachedSession(expire_after=self.expire_after, backend=backend)
            if self.ssl_cert is not None:
                self.session.verify = self.ssl_cert

    def get(
        self,
        url: str,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, Any] | None = None,
    ) -> requests.Response:
        """Retrieve data from a url by GET and return the Response."""
        try:
            resp = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
        except requests.ConnectionError as ex:
            raise ServiceUnavailableError(url) from ex
        except RequestException as ex:
            raise TransportError(url, str(ex)) from ex

        try:
            resp.raise_for_status()
        except RequestException as ex:
            raise ServiceError(check_response(resp.text), resp.url) from ex
        else:
            return resp

    def close(self) -> None:
        """Close the session."""
        self.session.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
