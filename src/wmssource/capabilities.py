"""Discovery of a WMS service through its GetCapabilities document."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import defusedxml.ElementTree as ETree
from loguru import logger

from wmssource import utils
from wmssource.exceptions import (
    ConfigurationError,
    MissingInputError,
    ParseError,
    UnsupportedVersionError,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
    from xml.etree.ElementTree import Element

    from wmssource.utils import WMSSession

__all__ = [
    "WMSVersion",
    "ServiceDescriptor",
    "XMLNode",
    "parse_xml",
    "find_child",
    "find_path",
    "resolve_capabilities",
]

XLINK_NS = "http://www.w3.org/1999/xlink"
DEFAULT_SERVICE_NAME = "WMS"
GETMAP_PATH = ("Capability", "Request", "GetMap")
RESOURCE_PATH = ("DCPType", "HTTP", "Get", "OnlineResource")


class WMSVersion(str, Enum):
    """WMS protocol versions that requests can be built for."""

    V110 = "1.1.0"
    V111 = "1.1.1"
    V130 = "1.3.0"

    @property
    def srs_key(self) -> str:
        """Name of the spatial reference query parameter."""
        return "crs" if self is WMSVersion.V130 else "srs"

    @classmethod
    def supported(cls) -> tuple[str, ...]:
        return tuple(v.value for v in cls)

    @classmethod
    def from_string(cls, version: str) -> WMSVersion:
        """Get a supported version, e.g., ``1.0.0`` is recognized but not supported."""
        try:
            return cls(version.strip())
        except ValueError as ex:
            raise UnsupportedVersionError(version, cls.supported()) from ex


@dataclass(frozen=True)
class ServiceDescriptor:
    """What the source needs to know about a WMS service.

    Parameters
    ----------
    version : WMSVersion
        The protocol version advertised by the service.
    service_name : str
        The service name, ``WMS`` for most servers.
    getmap_url : str
        The GetMap endpoint.
    """

    version: WMSVersion
    service_name: str
    getmap_url: str


@dataclass
class XMLNode:
    """An element of a parsed XML document.

    Tag names are stored without their namespace. Attribute keys keep the
    ElementTree ``{namespace}local`` form.
    """

    name: str
    attributes: dict[str, str] = field(default_factory=dict)
    children: list[XMLNode] = field(default_factory=list)
    text: str = ""

    def get_attribute(self, name: str, namespace: str | None = None) -> str | None:
        """Get an attribute value by its local name, optionally within a namespace."""
        if namespace is not None:
            return self.attributes.get(f"{{{namespace}}}{name}")
        return self.attributes.get(name)

    def __repr__(self) -> str:
        return f"XMLNode(name={self.name!r}, children={len(self.children)})"


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _to_node(elem: Element) -> XMLNode:
    return XMLNode(
        name=_local_name(elem.tag),
        attributes=dict(elem.attrib),
        children=[_to_node(c) for c in elem if isinstance(c.tag, str)],
        text=(elem.text or "").strip(),
    )


def parse_xml(content: str | bytes) -> XMLNode:
    """Parse an XML document into a tree of ``XMLNode``."""
    try:
        root = ETree.fromstring(content)
    except ETree.ParseError as ex:
        raise ParseError("capabilities document", str(ex)) from ex
    return _to_node(root)


def find_child(node: XMLNode, name: str) -> XMLNode | None:
    """Find the first child of a node by its tag name, ignoring case.

    Returns ``None`` when there is no such child.
    """
    name = name.lower()
    return next((c for c in node.children if c.name.lower() == name), None)


def find_path(node: XMLNode, path: Iterable[str]) -> XMLNode:
    """Descend a node along a path of tag names.

    Raises
    ------
    MissingInputError
        If any of the nodes along the path is missing, with the path
        that was reached.
    """
    reached = [node.name]
    for name in path:
        child = find_child(node, name)
        if child is None:
            raise MissingInputError(f"Could not find {name} node under /{'/'.join(reached)}")
        node = child
        reached.append(child.name)
    return node


def read_descriptor(root: XMLNode, capabilities_url: str) -> ServiceDescriptor:
    """Extract the service descriptor from a parsed capabilities document.

    Parameters
    ----------
    root : XMLNode
        Root of the capabilities document.
    capabilities_url : str
        The url the document was requested from, used as the fallback
        GetMap endpoint.

    Returns
    -------
    ServiceDescriptor
        The service descriptor.
    """
    version = root.get_attribute("version")
    if not version:
        raise ConfigurationError(f"No version attribute in the /{root.name} node")
    wms_version = WMSVersion.from_string(version)

    service = find_child(root, "Service")
    if service is None:
        raise ConfigurationError(f"Could not find Service node under /{root.name}")

    name_node = find_child(service, "Name")
    if name_node is None or not name_node.text:
        logger.warning(f"No service name found, using {DEFAULT_SERVICE_NAME}.")
        service_name = DEFAULT_SERVICE_NAME
    else:
        service_name = name_node.text

    try:
        getmap = find_path(root, GETMAP_PATH)
    except MissingInputError as ex:
        raise ConfigurationError(f"Could not find GetMap node: {ex}") from ex

    try:
        resource = find_path(getmap, RESOURCE_PATH)
    except MissingInputError as ex:
        raise ConfigurationError(f"Could not find GetMap OnlineResource node: {ex}") from ex

    href = utils.resolve_href(resource.get_attribute("href", XLINK_NS), capabilities_url)
    if href is None:
        logger.warning(f"No GetMap href found, using {capabilities_url}.")
        href = capabilities_url

    return ServiceDescriptor(wms_version, service_name, utils.check_scheme(href))


def resolve_capabilities(
    url: str,
    session: WMSSession,
    params: Mapping[str, str] | None = None,
) -> ServiceDescriptor:
    """Get the service descriptor of a WMS service.

    Parameters
    ----------
    url : str
        The base url of the service. Any query string is discarded.
    session : WMSSession
        The session for sending the GetCapabilities request.
    params : dict, optional
        Extra query parameters for the GetCapabilities request, defaults to None.

    Returns
    -------
    ServiceDescriptor
        The version, name, and GetMap endpoint of the service.
    """
    base_url = utils.check_scheme(utils.strip_query(url))
    payload = {"service": "WMS", "request": "GetCapabilities"}
    if params:
        payload.update(params)

    logger.info(f"Requesting capabilities from {base_url}")
    resp = session.get(base_url, params=payload)
    descriptor = read_descriptor(parse_xml(resp.content), base_url)
    logger.info(
        " ".join(
            [
                f"Found {descriptor.service_name} version {descriptor.version.value}",
                f"with GetMap endpoint {descriptor.getmap_url}",
            ]
        )
    )
    return descriptor
