class OSCQueryError(Exception):
    """
    Base class for every error raised by vrcoscquery.

    Description
    -----------
    Keyword arguments listed in `_context` are stored on the exception and
    appended to the message, so callers can inspect them and logs show them.
    """
    _context: tuple[str, ...] = ()

    def __init__(self, *args, **kwargs) -> None:
        for key in self._context:
            setattr(self, key, kwargs.pop(key, None))
        super().__init__(*args, **kwargs)

    def __str__(self) -> str:
        msg = super().__str__()
        for key in self._context:
            value = getattr(self, key, None)
            if value is not None:
                msg += f' "{value}"'
        return msg


class NodeError(OSCQueryError, ValueError):
    """
    Exception raised for errors related to OSCQuery nodes.

    Attributes
    ----------
    path : str or None
        The path of the node where the error occurred, if available.
    """
    _context = ('path',)


class ConfigError(OSCQueryError, ValueError):
    """Raised when an OSCQueryServerConfig holds an invalid value."""
    _context = ('field',)


class MdnsError(OSCQueryError):
    """The mDNS stack failed to start, browse, register or shut down."""


class JsonError(OSCQueryError):
    """A node or host info record could not be encoded."""


class ListenError(OSCQueryError):
    """
    The HTTP listener could not be bound.

    Attributes
    ----------
    address : str or None
        The "ip:port" the server tried to bind.
    """
    _context = ('address',)


class DiscoveryError(OSCQueryError):
    """Base class for failures of a bounded discovery search."""


class DiscoveryTimeout(DiscoveryError):
    """The deadline passed without a matching service being resolved."""


class DiscoveryChannelClosed(DiscoveryError):
    """The mDNS event stream ended before a matching service was resolved."""
