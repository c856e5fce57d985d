import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
from typing import Any, AsyncContextManager, AsyncIterator, Callable

import requests
from zeroconf import (
    BadTypeInNameException, Error as ZeroconfError, IPVersion,
    NotRunningException, ServiceInfo, ServiceListener, Zeroconf
)
from zeroconf.asyncio import AsyncServiceBrowser, AsyncZeroconf

from .shared.errors import DiscoveryChannelClosed, DiscoveryTimeout, MdnsError
from .shared.node import (
    OSCAccess, OSCContainerNode, OSCHostInfo, OSCMethodNode, OSCQueryNode,
    OSC_Type_String_to_Python_Type
)

logger = logging.getLogger(__name__)

OSCJSON_SERVICE_TYPE = "_oscjson._tcp.local."
OSC_SERVICE_TYPE = "_osc._udp.local."
VRCHAT_CLIENT_PREFIX = "VRChat-Client-"
DEFAULT_DISCOVERY_TIMEOUT = 5.0
LOOPBACK_IP = "127.0.0.1"


@dataclass(frozen=True)
class DiscoveredOscQueryService:
    """
    An OSCQuery service found on the network.

    Attributes
    ----------
    instance_name : str
        The mDNS full service name, e.g. "VRChat-Client-123456._oscjson._tcp.local."
    host_name : str
        The host name the service record points at.
    address : str
        The first IPv4 address of the service, loopback if it announced none.
    port : int
        The TCP port of the oscjson HTTP server.
    """
    instance_name: str
    host_name: str
    address: str
    port: int


@dataclass(frozen=True)
class ServiceResolved:
    """A service was added or updated and its records were resolved."""
    info: ServiceInfo


@dataclass(frozen=True)
class ServiceRemoved:
    """A service withdrew its records."""
    type_: str
    name: str


ServiceEvent = ServiceResolved | ServiceRemoved


class MdnsEventStream(object):
    """
    Queue of mDNS events fed by an OSCQueryListener.

    Description
    -----------
    Once closed, `next_event` drains whatever is still queued and then
    raises DiscoveryChannelClosed.
    """
    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, event: ServiceEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    async def next_event(self) -> ServiceEvent:
        """
        Waits for the next event.
        Potential Raises: DiscoveryChannelClosed
        """
        event = await self._queue.get()
        if event is self._CLOSED:
            # leave the marker for any later caller
            self._queue.put_nowait(event)
            raise DiscoveryChannelClosed(
                "mDNS channel closed while waiting for an OSCQuery service"
            )
        return event


class OSCQueryListener(ServiceListener):
    """
    Listens for OSCQuery services on the network and forwards them as events.

    Description
    -----------
    Zeroconf only reports names; add and update callbacks schedule a lookup of
    the full service info and push a ServiceResolved event once it arrives.
    If the mDNS stack stops underneath a lookup the stream is closed.
    """

    def __init__(self, aiozc: AsyncZeroconf, stream: MdnsEventStream) -> None:
        self.aiozc = aiozc
        self.stream = stream
        self._tasks: set[asyncio.Task] = set()

        super().__init__()

    def remove_service(self, zc: 'Zeroconf', type_: str, name: str) -> None:
        """
        Reports a service that left the network.

        Parameters
        ----------
        zc : Zeroconf
            The Zeroconf instance.
        type_ : str
            The type of the service.
        name : str
            The name of the service.
        """
        self.stream.put(ServiceRemoved(type_, name))

    def add_service(self, zc: 'Zeroconf', type_: str, name: str) -> None:
        """
        Resolves a newly seen service in the background.

        Parameters
        ----------
        zc : Zeroconf
            The Zeroconf instance.
        type_ : str
            The type of the service.
        name : str
            The name of the service.
        """
        task = asyncio.ensure_future(self._resolve(type_, name))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def update_service(self, zc: 'Zeroconf', type_: str, name: str) -> None:
        """Resolves a service whose records changed."""
        self.add_service(zc, type_, name)

    def cancel(self) -> None:
        """Cancels lookups that are still in flight."""
        for task in self._tasks:
            task.cancel()

    async def _resolve(self, type_: str, name: str) -> None:
        try:
            info = await self.aiozc.async_get_service_info(type_, name)
        except NotRunningException:
            logger.warning("mDNS stopped while resolving %s", name)
            self.stream.close()
            return
        except BadTypeInNameException:
            logger.debug("Ignoring malformed service name %s", name)
            return
        except (OSError, ZeroconfError) as e:
            logger.warning("Failed to resolve %s: %s", name, e)
            return

        if info is None:
            logger.debug("Service %s disappeared before it resolved", name)
            return

        self.stream.put(ServiceResolved(info))


@asynccontextmanager
async def browse(service_type: str = OSCJSON_SERVICE_TYPE) -> AsyncIterator[MdnsEventStream]:
    """
    Browses for `service_type` for the duration of the block.
    Potential Raises: MdnsError

    The browser and the zeroconf instance are shut down whichever way the
    block is left, including cancellation.

    Yields
    ------
    MdnsEventStream
        The stream of resolved and removed services.
    """
    try:
        aiozc = AsyncZeroconf()
    except (OSError, ZeroconfError) as e:
        raise MdnsError(f"Failed to start mDNS: {e}") from e

    stream = MdnsEventStream()
    listener = OSCQueryListener(aiozc, stream)
    browser = None
    try:
        try:
            browser = AsyncServiceBrowser(
                aiozc.zeroconf, [service_type], listener=listener
            )
        except (OSError, ZeroconfError) as e:
            raise MdnsError(f"Failed to browse for {service_type}: {e}") from e

        yield stream
    finally:
        listener.cancel()
        stream.close()
        if browser is not None:
            await browser.async_cancel()
        await aiozc.async_close()


def _name_matcher(match_name: str | Callable[[str], bool]) -> Callable[[str], bool]:
    if isinstance(match_name, str):
        return lambda name: name.startswith(match_name)
    return match_name


def _first_ipv4(info: ServiceInfo) -> str:
    addresses = info.parsed_addresses(IPVersion.V4Only)
    return addresses[0] if addresses else LOOPBACK_IP


async def discover(
    timeout: float = DEFAULT_DISCOVERY_TIMEOUT,
    service_type: str = OSCJSON_SERVICE_TYPE,
    match_name: str | Callable[[str], bool] = VRCHAT_CLIENT_PREFIX,
    browse: Callable[[str], AsyncContextManager[MdnsEventStream]] = browse,
) -> DiscoveredOscQueryService:
    """
    Finds the first service of `service_type` whose full name matches.
    Potential Raises: DiscoveryTimeout, DiscoveryChannelClosed, MdnsError

    The search never runs longer than `timeout` seconds in total, however
    many unrelated events arrive in the meantime.

    Parameters
    ----------
    timeout : float
        Upper bound for the whole search, in seconds.
    service_type : str
        The mDNS service type to browse and to require on matches.
    match_name : str or Callable[[str], bool]
        A prefix of the full service name, or a predicate over it.
    browse : callable
        Async context manager factory yielding an MdnsEventStream.

    Returns
    -------
    DiscoveredOscQueryService
        The first matching service.
    """
    matches = _name_matcher(match_name)
    loop = asyncio.get_running_loop()

    async with browse(service_type) as stream:
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise DiscoveryTimeout(
                    f"Discovery timed out without finding a {service_type} service"
                )

            try:
                event = await asyncio.wait_for(stream.next_event(), remaining)
            except asyncio.TimeoutError:
                raise DiscoveryTimeout(
                    f"Discovery timed out without finding a {service_type} service"
                ) from None

            if not isinstance(event, ServiceResolved):
                logger.debug("Ignoring mDNS event %s", event)
                continue

            info = event.info
            if info.type != service_type or not matches(info.name):
                logger.debug("Ignoring service %s", info.name)
                continue

            found = DiscoveredOscQueryService(
                instance_name=info.name,
                host_name=info.server or "",
                address=_first_ipv4(info),
                port=info.port or 0,
            )
            logger.info(
                "Found OSCQuery service %s at %s:%d",
                found.instance_name, found.address, found.port
            )
            return found


async def discover_vrchat_oscquery(
    timeout: float = DEFAULT_DISCOVERY_TIMEOUT
) -> DiscoveredOscQueryService:
    """Finds the oscjson service of a running VRChat client."""
    return await discover(timeout, OSCJSON_SERVICE_TYPE, VRCHAT_CLIENT_PREFIX)


class OSCQueryClient(object):
    """
    Represents a client for interacting with an OSCQuery service.

    Description
    -----------
    OSCQueryClient talks to the oscjson HTTP server of a discovered service.
    It retrieves the host information and the namespace tree and rebuilds
    OSCQueryNode objects from their JSON representation.

    Attributes
    ----------
    service : DiscoveredOscQueryService
        The service to query.
    """

    def __init__(self, service: DiscoveredOscQueryService, timeout: float = 10) -> None:
        if not isinstance(service, DiscoveredOscQueryService):
            raise TypeError("service isn't a DiscoveredOscQueryService!")

        self.service = service
        self.timeout = timeout
        self.last_json = None

    def _get_query_root(self) -> str:
        """Constructs the root URL of the oscjson HTTP server."""
        return f"http://{self.service.address}:{self.service.port}"

    def _handle_request(self, url: str) -> requests.Response | None:
        """
        Handles an HTTP GET request to the specified URL and returns the response.
        Potential Raises: requests.HTTPError

        Returns
        -------
        requests.Response or None
            The response object if the request is successful, otherwise None.
        """
        try:
            response = requests.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.warning("OSCQuery request to %s failed: %s", url, e)
            return None

        if response.status_code == 404:
            return None

        if response.status_code != 200:
            raise requests.HTTPError(
                f"Node query error: (HTTP {response.status_code}) {response.content!r}",
                response=response
            )

        return response

    def query_node(self, node_: str = "/") -> OSCQueryNode | None:
        """
        Retrieves a node and everything below it from the OSCQuery service.
        Potential Raises: requests.HTTPError, ValueError

        Parameters
        ----------
        node_ : str, optional
            The path of the node to query. Defaults to the root node ("/").

        Returns
        -------
        OSCQueryNode or None
            An OSCQueryNode object representing the path queried.
        """
        response = self._handle_request(self._get_query_root() + "/")
        if response is None:
            return None

        self.last_json = response.json()
        root = self._make_node_from_json(self.last_json)
        return root.find_subnode(node_)

    def get_host_info(self) -> OSCHostInfo | None:
        """
        Retrieves information about the host from the OSCQuery service, such as
        the host name, OSC IP address, port number and transport protocol.
        Potential Raises: requests.HTTPError

        Returns
        -------
        OSCHostInfo or None
            An OSCHostInfo object representing the host information if available
        """
        response = self._handle_request(self._get_query_root() + "/?HOST_INFO")
        if response is None:
            return None

        json: dict[str, Any] = response.json()
        return OSCHostInfo(
            name=json["NAME"],
            osc_ip=json.get("OSC_IP", self.service.address),
            osc_port=json.get("OSC_PORT", self.service.port),
            osc_transport=json.get("OSC_TRANSPORT", "UDP"),
            extensions=json.get("EXTENSIONS") or {},
        )

    def _make_node_from_json(self, json: dict[str, Any]) -> OSCQueryNode:
        """
        Parses a JSON node and creates the matching OSCQueryNode.
        Potential Raises: ValueError

        Nodes with a TYPE become OSCMethodNode, everything else becomes an
        OSCContainerNode. Values are converted to the Python types named by
        the type tag when they arrive as a list.
        """
        full_path = json.get("FULL_PATH", "/")
        description = json.get("DESCRIPTION")

        if "TYPE" not in json:
            node = OSCContainerNode(full_path, description)
            for name, sub_json in json.get("CONTENTS", {}).items():
                node.contents[name] = self._make_node_from_json(sub_json)
            return node

        type_ = json["TYPE"]
        value = json.get("VALUE")
        if isinstance(value, list):
            python_types = OSC_Type_String_to_Python_Type(type_)
            # an empty object stands for "no value yet"
            value = [
                python_types[i](v) if i < len(python_types) else v
                for i, v in enumerate(value)
                if not (isinstance(v, dict) and not v)
            ]

        return OSCMethodNode(
            full_path, OSCAccess(json.get("ACCESS", OSCAccess.NO_VALUE)),
            type_, value, description
        )
