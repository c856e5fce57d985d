import asyncio
from dataclasses import dataclass
import ipaddress
import logging
import socket
from typing import Any

from aiohttp import web
from zeroconf import Error as ZeroconfError, ServiceInfo
from zeroconf.asyncio import AsyncZeroconf

from .query import (
    DEFAULT_DISCOVERY_TIMEOUT, LOOPBACK_IP, OSC_SERVICE_TYPE,
    OSCJSON_SERVICE_TYPE, VRCHAT_CLIENT_PREFIX, DiscoveredOscQueryService,
    discover
)
from .shared.errors import (
    ConfigError, DiscoveryError, JsonError, ListenError, MdnsError, OSCQueryError
)
from .shared.node import (
    OSCAccess, OSCHostInfo, OSCMethodNode, OSCQueryTree,
    Python_Value_List_to_OSC_Type
)

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"
HOST_INFO_QUERY = "HOST_INFO"


def oscjson_host_name(app_name: str) -> str:
    """The mDNS host name both records of `app_name` point at."""
    return f"{app_name}.oscjson.local."


class OSCQueryAdvertisement(object):
    """
    Keeps the oscjson and osc records of one application on the network.

    Description
    -----------
    Owns the AsyncZeroconf instance the records were registered on. The
    records stay visible until `close` is called, which withdraws both and
    shuts the instance down.
    """

    def __init__(self, aiozc: AsyncZeroconf, services: list[ServiceInfo]) -> None:
        self.aiozc = aiozc
        self.services = services
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> "OSCQueryAdvertisement":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def close(self) -> None:
        """
        Withdraws every record and shuts down zeroconf.
        Potential Raises: MdnsError
        """
        if self._closed:
            return
        self._closed = True
        try:
            await self.aiozc.async_unregister_all_services()
        except ZeroconfError as e:
            raise MdnsError(f"Failed to withdraw services: {e}") from e
        finally:
            await self.aiozc.async_close()
        logger.info("Withdrew %d mDNS records", len(self.services))


def _advertised_ip(bind_ip: str) -> str:
    """The IPv4 address put into the records, loopback for wildcard binds."""
    ip = ipaddress.ip_address(bind_ip)
    if ip.version != 4 or ip.is_unspecified:
        return LOOPBACK_IP
    return str(ip)


def _service_info(
    service_type: str, app_name: str, port: int,
    properties: dict[str, Any], ip: str
) -> ServiceInfo:
    try:
        return ServiceInfo(
            service_type,
            f"{app_name}.{service_type}",
            port=port,
            properties=properties,
            server=oscjson_host_name(app_name),
            addresses=[socket.inet_pton(socket.AF_INET, ip)],
        )
    except ZeroconfError as e:
        raise MdnsError(f"Invalid {service_type} record for {app_name}: {e}") from e


async def advertise(
    app_name: str, bind_ip: str, http_port: int, osc_port: int
) -> OSCQueryAdvertisement:
    """
    Registers the oscjson (TCP) and osc (UDP) services of an application.
    Potential Raises: MdnsError

    Either both records are registered or none is: a failed registration
    closes the zeroconf instance, which withdraws anything already sent.

    Parameters
    ----------
    app_name : str
        Instance name of both services.
    bind_ip : str
        The address the servers listen on.
    http_port : int
        TCP port of the oscjson HTTP server.
    osc_port : int
        UDP port of the OSC server.

    Returns
    -------
    OSCQueryAdvertisement
        Handle owning the registration; close it to withdraw the records.
    """
    ip = _advertised_ip(bind_ip)
    services = [
        _service_info(
            OSCJSON_SERVICE_TYPE, app_name, http_port,
            {"name": app_name, "osc_port": str(osc_port), "osc_transport": "UDP"},
            ip
        ),
        _service_info(OSC_SERVICE_TYPE, app_name, osc_port, {"name": app_name}, ip),
    ]

    try:
        aiozc = AsyncZeroconf()
    except (OSError, ZeroconfError) as e:
        raise MdnsError(f"Failed to start mDNS: {e}") from e

    try:
        for info in services:
            # registration returns a task that finishes once the announcement went out
            await (await aiozc.async_register_service(info))
            logger.info("Registered %s on port %d", info.name, info.port)
    except (OSError, ZeroconfError) as e:
        await aiozc.async_close()
        raise MdnsError(f"Failed to register {app_name}: {e}") from e
    except BaseException:
        await aiozc.async_close()
        raise

    return OSCQueryAdvertisement(aiozc, services)


class OSCQueryHTTPHandler(object):
    """
    HTTP request handler for the oscjson server.

    Every request is answered with 200 and a JSON body: the host info when
    the query string is HOST_INFO (any case), the whole namespace tree
    otherwise. Path scoped queries such as "?VALUE" or "GET /avatar" are not
    supported and also return the whole tree.
    """

    def __init__(self, tree: OSCQueryTree, host_info: OSCHostInfo) -> None:
        self.tree = tree
        self.host_info = host_info

    async def handle(self, request: web.Request) -> web.Response:
        if request.query_string.upper() == HOST_INFO_QUERY:
            try:
                body = self.host_info.to_json()
            except JsonError:
                logger.exception("Failed to encode host info")
                body = ""
        else:
            try:
                body = await self.tree.snapshot_json()
            except JsonError:
                logger.exception("Failed to encode namespace tree")
                body = "{}"

        return web.Response(text=body, content_type=JSON_CONTENT_TYPE)

    def make_app(self) -> web.Application:
        """Builds an application routing every method and path to this handler."""
        app = web.Application()
        app.router.add_route("*", "/{tail:.*}", self.handle)
        return app


@dataclass
class OSCQueryServerConfig:
    """
    Settings of an OSCQueryService.

    Attributes
    ----------
    app_name : str
        Name of your OSC service, used for both mDNS records and HOST_INFO.
    osc_port : int
        UDP port your OSC server listens on.
    bind_ip : str
        Address of the oscjson HTTP server, also advertised as OSC_IP.
    http_port : int
        TCP port of the oscjson HTTP server, 0 lets the OS pick one.
    avatar_receiver : bool
        Adds "/avatar" so VRChat sends avatar changes and parameters.
    tracking_receiver : bool
        Adds "/tracking/vrsystem" so VRChat sends tracking data.
    verify_peer : bool
        Look for the peer once the records are advertised.
    require_peer : bool
        Fail startup when the peer cannot be found.
    peer_name_prefix : str
        Prefix of the peer's oscjson service name.
    discovery_timeout : float
        Seconds to look for the peer.
    discovery_grace : float
        Seconds to wait after advertising before looking for the peer.
    """
    app_name: str
    osc_port: int
    bind_ip: str = LOOPBACK_IP
    http_port: int = 0
    avatar_receiver: bool = False
    tracking_receiver: bool = False
    verify_peer: bool = True
    require_peer: bool = False
    peer_name_prefix: str = VRCHAT_CLIENT_PREFIX
    discovery_timeout: float = DEFAULT_DISCOVERY_TIMEOUT
    discovery_grace: float = 1.0

    def __post_init__(self) -> None:
        if not self.app_name or "." in self.app_name:
            raise ConfigError(
                "app_name must be non-empty and contain no dots", field="app_name"
            )
        if not 0 < self.osc_port < 65536:
            raise ConfigError("osc_port must be between 1 and 65535", field="osc_port")
        if not 0 <= self.http_port < 65536:
            raise ConfigError("http_port must be between 0 and 65535", field="http_port")
        try:
            ipaddress.ip_address(self.bind_ip)
        except ValueError as e:
            raise ConfigError(f"bind_ip is not an IP address: {e}", field="bind_ip") from e
        if self.discovery_timeout <= 0 or self.discovery_grace < 0:
            raise ConfigError(
                "discovery_timeout must be positive and discovery_grace not negative",
                field="discovery_timeout"
            )

    def receiver_paths(self) -> list[str]:
        """The containers the enabled receiver presets add to the tree."""
        paths = []
        if self.avatar_receiver:
            paths.append("/avatar")
        if self.tracking_receiver:
            paths.append("/tracking/vrsystem")
        return paths


class OSCQueryService(object):
    """
    A class providing an OSCQuery service. Sets up an oscjson HTTP server and
    advertises the oscjson server and the osc server on zeroconf.

    Description
    -----------
    `start` binds the HTTP server, advertises both records and, if
    configured, looks for a peer such as a VRChat client. `stop` undoes all
    of it. The service is also an async context manager.

    Attributes
    ----------
    config : OSCQueryServerConfig
        The settings the service was built from.
    tree : OSCQueryTree
        The namespace tree served over HTTP.
    host_info : OSCHostInfo or None
        The HOST_INFO record, set once started.
    peer : DiscoveredOscQueryService or None
        The peer found during startup, if any.
    """

    def __init__(self, config: OSCQueryServerConfig) -> None:
        self.config = config
        self.tree = OSCQueryTree()
        self.host_info: OSCHostInfo | None = None
        self.peer: DiscoveredOscQueryService | None = None
        self.http_port: int | None = None

        self._runner: web.AppRunner | None = None
        self._advertisement: OSCQueryAdvertisement | None = None

    async def __aenter__(self) -> "OSCQueryService":
        await self.start()
        return self

    async def __aexit__(self, *args) -> None:
        await self.stop()

    @property
    def running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        """
        Start the services required by the class.
        Potential Raises: ListenError, MdnsError, DiscoveryError, OSCQueryError

        A DiscoveryError is only raised when `require_peer` is set. On any
        failure everything already started is shut down again. Starting a
        service that is already running raises OSCQueryError; call `stop`
        first.
        """
        if self.running or self._advertisement is not None:
            raise OSCQueryError("Service is already running")

        config = self.config
        for path in config.receiver_paths():
            await self.tree.ensure_path(path)

        self.host_info = OSCHostInfo(
            config.app_name, config.bind_ip, config.osc_port, "UDP", {}
        )

        try:
            await self._start_http_server()
            self._advertisement = await advertise(
                config.app_name, config.bind_ip, self.http_port, config.osc_port
            )
            if config.verify_peer:
                await self._find_peer()
        except BaseException:
            await self.stop()
            raise

    async def stop(self) -> None:
        """
        Stop the services managed by the class.

        Withdraws the mDNS records and shuts the HTTP server down.
        """
        if self._advertisement is not None:
            advertisement, self._advertisement = self._advertisement, None
            try:
                await advertisement.close()
            except MdnsError:
                logger.exception("Failed to withdraw mDNS records")
        if self._runner is not None:
            runner, self._runner = self._runner, None
            await runner.cleanup()

    async def add_method(
        self, address: str, access: OSCAccess, type_: str,
        value: Any = None, description: str | None = None
    ) -> OSCMethodNode:
        """
        Add a method node to the served tree.
        Potential Raises: NodeError
        """
        return await self.tree.add_method(address, access, type_, value, description)

    async def advertise_endpoint(
        self, address: str, value: list[Any] | Any = None,
        access: OSCAccess = OSCAccess.READWRITE_VALUE
    ) -> None:
        """
        Advertise an endpoint with a given address and optional value.

        The type tag is derived from the Python values, booleans becoming
        "T" or "F"; without a value only the containers leading to `address`
        are created.

        Parameters
        ----------
        address : str
            The address of the endpoint.
        value : Any, optional
            The value of the endpoint. represents one or multiple values (default: None).
        access : OSCAccess, optional
            The access level of the endpoint (default: READWRITE_VALUE).
        """
        if value is None:
            await self.tree.ensure_path(address)
            return

        values = value if isinstance(value, list) else [value]
        type_ = Python_Value_List_to_OSC_Type(values)
        await self.tree.add_method(address, access, type_, values)

    async def _start_http_server(self) -> None:
        """Binds the oscjson HTTP server and resolves the port it got."""
        handler = OSCQueryHTTPHandler(self.tree, self.host_info)
        runner = web.AppRunner(handler.make_app(), access_log=None)
        await runner.setup()

        address = f"{self.config.bind_ip}:{self.config.http_port}"
        site = web.TCPSite(runner, self.config.bind_ip, self.config.http_port)
        try:
            await site.start()
        except OSError as e:
            await runner.cleanup()
            raise ListenError(f"Failed to bind HTTP server: {e}", address=address) from e

        self._runner = runner
        self.http_port = runner.addresses[0][1]
        logger.info(
            "OSCQuery HTTP server listening on %s:%d",
            self.config.bind_ip, self.http_port
        )

    async def _find_peer(self) -> None:
        # records need a moment to propagate before browsing finds anything
        await asyncio.sleep(self.config.discovery_grace)
        try:
            self.peer = await discover(
                self.config.discovery_timeout,
                OSCJSON_SERVICE_TYPE,
                self.config.peer_name_prefix,
            )
        except DiscoveryError as e:
            if self.config.require_peer:
                raise
            logger.warning(
                "No %s service found, continuing without it: %s",
                self.config.peer_name_prefix, e
            )


async def build_and_run(config: OSCQueryServerConfig) -> OSCQueryService:
    """
    Builds an OSCQueryService from `config` and starts it.
    Potential Raises: ListenError, MdnsError, DiscoveryError

    Returns
    -------
    OSCQueryService
        The running service; call `stop` (or use it as a context manager) to
        withdraw the records and close the server.
    """
    service = OSCQueryService(config)
    await service.start()
    return service
