from collections.abc import Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import IntEnum
import json
from json import JSONEncoder
from types import MappingProxyType
from typing import Any, AsyncIterator, Iterator, List

from .errors import JsonError, NodeError
from .rwlock import ReadWriteLock


class OSCNodeEncoder(JSONEncoder):
    """
    Custom JSON encoder for OSCQueryNode and OSCHostInfo objects.

    Description
    -----------
    OSCNodeEncoder serializes the namespace tree and the host info record into
    the OSCQuery wire format. Optional fields are left out instead of being
    written as null:
        - OSCQueryNode (containers and methods, recursively)
        - OSCHostInfo
        - Python type objects (as OSC type tags)
    """

    def default(self, o: Any) -> dict[str, Any] | str:
        """
        Overrides the default method of JSONEncoder to customize serialization behavior
        for specific types.

        Parameters
        ----------
        o : OSCQueryNode or OSCHostInfo or type
            The object to be serialized.

        Returns
        -------
        dict or str
            The serialized representation of the object.
        """
        if isinstance(o, OSCQueryNode):
            return self._serialize_osc_query_node(o)

        if isinstance(o, type):
            return Python_Type_List_to_OSC_Type([o])

        if isinstance(o, OSCHostInfo):
            return self._serialize_osc_host_info(o)

        return super().default(o)

    def _serialize_osc_query_node(self, o: "OSCQueryNode") -> dict[str, Any]:
        """
        Serialize an OSCQueryNode object into a JSON-compatible dictionary.

        Child nodes are left as OSCQueryNode objects, the encoder calls back
        into `default` for each of them.
        """
        obj_dict: dict[str, Any] = {
            "FULL_PATH": o.full_path,
            "ACCESS": int(o.access),
        }
        if o.type_ is not None:
            obj_dict["TYPE"] = o.type_
        if o.value is not None:
            obj_dict["VALUE"] = o.value
        if o.description:
            obj_dict["DESCRIPTION"] = o.description
        if o.contents:
            obj_dict["CONTENTS"] = dict(o.contents)

        return obj_dict

    def _serialize_osc_host_info(self, o: "OSCHostInfo") -> dict[str, Any]:
        """
        Serialize an OSCHostInfo object into a JSON-compatible dictionary.

        Parameters
        ----------
        o : OSCHostInfo
            The OSCHostInfo object to be serialized.

        Returns
        -------
        dict
            The serialized representation of the OSCHostInfo object.
        """
        return {
            k.upper(): dict(v) if isinstance(v, Mapping) else v
            for k, v in vars(o).items()
            if v is not None
        }


class OSCAccess(IntEnum):
    """
    Enumeration representing access levels for OSC query nodes.
    """
    NO_VALUE = 0
    READONLY_VALUE = 1
    WRITEONLY_VALUE = 2
    READWRITE_VALUE = 3


class OSCQueryNode():
    """
    Represents a node in the OSCQuery structure.

    Description
    -----------
    A node is either an OSCContainerNode, which groups other nodes, or an
    OSCMethodNode, a concrete OSC address with a type tag. Both share the
    path lookup, iteration and JSON helpers defined here.

    Attributes
    ----------
    full_path : str
        The absolute, slash-delimited path of the node. The root is "/".
    description : str or None, optional
        A description of the node.
    """
    access: OSCAccess = OSCAccess.NO_VALUE
    type_: str | None = None
    value: Any = None

    def __init__(self, full_path: str, description: str | None = None) -> None:
        self.full_path = full_path
        self.description = description

    @property
    def contents(self) -> Mapping[str, 'OSCQueryNode']:
        """Child nodes keyed by their path segment."""
        return MappingProxyType({})

    @property
    def name(self) -> str:
        """The last segment of the full path, empty for the root node."""
        return self.full_path.rstrip("/").rsplit("/", 1)[-1]

    def find_subnode(self, full_path: str) -> 'OSCQueryNode | None':
        """
        Finds a node below (or equal to) this one based on its full path.

        Parameters
        ----------
        full_path : str
            The full path of the subnode to find.

        Returns
        -------
        OSCQueryNode or None
            The subnode if found, otherwise None.
        """
        if full_path.rstrip("/") == self.full_path.rstrip("/"):
            return self

        prefix = self.full_path.rstrip("/") + "/"
        if not full_path.startswith(prefix):
            return None

        node: OSCQueryNode | None = self
        for part in split_path(full_path[len(prefix):]):
            node = node.contents.get(part)
            if node is None:
                return None

        return node

    def to_json(self) -> str:
        """Converts the node and its contents to a JSON string."""
        try:
            return json.dumps(self, cls=OSCNodeEncoder)
        except (TypeError, ValueError) as e:
            raise JsonError(f"Cannot encode node {self.full_path}: {e}") from e

    def __iter__(self) -> Iterator['OSCQueryNode']:
        """
        Recursively iterates over the node and its contents

        Yields
        ------
        OSCQueryNode
            The current node being iterated over.
        """
        yield self
        for sub_node in self.contents.values():
            yield from sub_node

    def __str__(self) -> str:
        """
        Returns a human-readable representation of the node.
        - @ - Full Path
        - D - Description
        - T - Type
        - V - Value
        - C - Child Node
        - A - Access
        """
        return_parts = [
            f'@: {self.full_path} ',
            f'D: "{self.description}" ' if self.description else '',
            f'T:{self.type_} ' if self.type_ else '',
            f'V:{self.value} ' if self.value is not None else '',
            f'C:{len(self.contents)} ' if self.contents else '',
            f'A:{self.access.name} ' if self.access else '',
        ]
        return f'<{type(self).__name__}: ( {"".join(return_parts)})>'


class OSCContainerNode(OSCQueryNode):
    """A grouping node. Containers have no type, no value and no access."""

    def __init__(self, full_path: str, description: str | None = None) -> None:
        super().__init__(full_path, description)
        self._contents: dict[str, OSCQueryNode] = {}

    @property
    def contents(self) -> dict[str, OSCQueryNode]:
        return self._contents


class OSCMethodNode(OSCQueryNode):
    """
    A concrete OSC address.

    Attributes
    ----------
    access : OSCAccess
        Read and write permissions of the address.
    type_ : str
        The OSC type tag string, e.g. "f", "i", "s" or "ff".
    value : Any, optional
        The current value, left out of the JSON when None.
    """

    def __init__(self, full_path: str, access: OSCAccess, type_: str,
                 value: Any = None, description: str | None = None) -> None:
        super().__init__(full_path, description)
        self.access = OSCAccess(access)
        self.type_ = type_
        self.value = value


@dataclass(frozen=True)
class OSCHostInfo:
    """
    Represents information about an OSCQuery host.

    Attributes
    ----------
    name : str
        The name of the host.
    osc_ip : str
        The IP address for OSC communication.
    osc_port : int
        The port number for OSC communication.
    osc_transport : str
        The transport protocol for OSC communication, always "UDP" here.
    extensions : Mapping[str, bool]
        Protocol feature flags supported by the host, stored read-only.
        Empty by default.
    """
    name: str
    osc_ip: str
    osc_port: int
    osc_transport: str = "UDP"
    extensions: Mapping[str, bool] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "extensions", MappingProxyType(dict(self.extensions))
        )

    def to_json(self) -> str:
        """Converts the OSCHostInfo object to a JSON string."""
        try:
            return json.dumps(self, cls=OSCNodeEncoder)
        except (TypeError, ValueError) as e:
            raise JsonError(f"Cannot encode host info for {self.name}: {e}") from e

    def __str__(self) -> str:
        return self.to_json()


def split_path(path: str) -> list[str]:
    """Split an OSC address into its segments, ignoring empty ones."""
    return [part for part in path.strip("/").split("/") if part]


def new_container(full_path: str) -> OSCContainerNode:
    """Creates a container node with no type, no value and OSCAccess.NO_VALUE."""
    return OSCContainerNode(full_path)


def new_method(full_path: str, access: OSCAccess, type_: str,
               value: Any = None, description: str | None = None) -> OSCMethodNode:
    """Creates a method node for the given OSC address."""
    return OSCMethodNode(full_path, access, type_, value, description)


def ensure_path(root: OSCQueryNode, path: str) -> OSCQueryNode:
    """
    Returns the node at `path`, creating missing intermediate containers.
    Potential Raises: NodeError

    Existing nodes along the way are reused, so calling this twice with the
    same path leaves the tree untouched the second time.

    Parameters
    ----------
    root : OSCQueryNode
        The node the path is resolved against, normally the "/" container.
    path : str
        The absolute path to walk. "/" returns `root` itself.

    Returns
    -------
    OSCQueryNode
        The node found or created at `path`.
    """
    current = root
    base = root.full_path.rstrip("/")
    for part in split_path(path):
        base = f"{base}/{part}"
        if not isinstance(current, OSCContainerNode):
            raise NodeError(
                "Cannot create a child below a method node",
                path=current.full_path
            )

        child = current.contents.get(part)
        if child is None:
            child = current.contents[part] = new_container(base)
        current = child

    return current


def add_method(root: OSCQueryNode, path: str, access: OSCAccess, type_: str,
               value: Any = None, description: str | None = None) -> OSCMethodNode:
    """
    Inserts a method node at `path`, creating its ancestors as containers.
    Potential Raises: NodeError

    An existing method (or an empty container) at the same path is replaced.
    A container that still has children is never replaced, since that would
    silently drop part of the tree.

    Returns
    -------
    OSCMethodNode
        The node that was inserted.
    """
    parts = split_path(path)
    if not parts:
        raise NodeError("Cannot replace the root node with a method", path=path)

    parent = ensure_path(root, "/" + "/".join(parts[:-1]))
    if not isinstance(parent, OSCContainerNode):
        raise NodeError(
            "Cannot create a child below a method node", path=parent.full_path
        )

    name = parts[-1]
    full_path = f"{parent.full_path.rstrip('/')}/{name}"
    existing = parent.contents.get(name)
    if isinstance(existing, OSCContainerNode) and existing.contents:
        raise NodeError(
            "A container with children already exists at this address",
            path=full_path
        )

    node = new_method(full_path, access, type_, value, description)
    parent.contents[name] = node
    return node


class OSCQueryTree(object):
    """
    The namespace tree shared between the server and its request handlers.

    Description
    -----------
    Wraps a root container with a ReadWriteLock. Request handlers only take
    the read lock, so they never wait on each other; anything changing the
    tree takes the write lock and runs alone. All locking for the tree
    happens here.
    """

    def __init__(self, root: OSCQueryNode | None = None) -> None:
        self._root = root if root is not None else new_container("/")
        self._lock = ReadWriteLock()

    @asynccontextmanager
    async def read(self) -> AsyncIterator[OSCQueryNode]:
        """Yields the root node while holding the read lock."""
        async with self._lock.read():
            yield self._root

    @asynccontextmanager
    async def write(self) -> AsyncIterator[OSCQueryNode]:
        """Yields the root node while holding the write lock."""
        async with self._lock.write():
            yield self._root

    async def snapshot_json(self) -> str:
        """Encodes the whole tree under the read lock."""
        async with self.read() as root:
            return root.to_json()

    async def find_subnode(self, full_path: str) -> OSCQueryNode | None:
        async with self.read() as root:
            return root.find_subnode(full_path)

    async def ensure_path(self, path: str) -> OSCQueryNode:
        async with self.write() as root:
            return ensure_path(root, path)

    async def add_method(self, path: str, access: OSCAccess, type_: str,
                         value: Any = None,
                         description: str | None = None) -> OSCMethodNode:
        async with self.write() as root:
            return add_method(root, path, access, type_, value, description)


class TypeMappings:
    """
    Data class to cache the type lookups for osc or python conversions.
    Contains dictionaries mapping OSC types to Python types and vice versa.
    """
    _OSC_TO_PYTHON_TYPES = {
        'i': int,
        'f': float, 'h': float, 'd': float, 't': float,
        'T': bool, 'F': bool,
        's': str
    }

    _PYTHON_TO_OSC_TYPES = {
        int: 'i',
        float: 'f',
        bool: 'T',
        str: 's'
    }

    # Using MappingProxyType to create read-only views of dictionaries
    OSC_TO_PYTHON_TYPES = MappingProxyType(_OSC_TO_PYTHON_TYPES)
    PYTHON_TO_OSC_TYPES = MappingProxyType(_PYTHON_TO_OSC_TYPES)


def OSC_Type_String_to_Python_Type(
    typestr: str,
    type_map: MappingProxyType[str, type] = TypeMappings.OSC_TO_PYTHON_TYPES
) -> List[type]:
    """
    Convert an OSC type string to a list of corresponding Python types.
    Potential Raises: ValueError

    Parameters
    ----------
    typestr : str
        The OSC type string to convert.

    Returns
    -------
    list[type]
        A list of Python types corresponding to the OSC type string.
    """
    try:
        return [type_map[typevalue] for typevalue in typestr]

    except KeyError as e:
        raise ValueError(
            f"Unknown OSC type when converting! {e.args[0]} -> ???"
        ) from e


def Python_Type_List_to_OSC_Type(
    types_: List[type],
    type_map: MappingProxyType[type, str] = TypeMappings.PYTHON_TO_OSC_TYPES
) -> str:
    """
    Convert a list of Python types to a corresponding OSC type string.
    Potential Raises: ValueError

    Parameters
    ----------
    types_ : list[type]
        The list of Python types to convert.

    Returns
    -------
    str
        The OSC type string corresponding to the Python types.
    """
    try:
        osc_types = ''
        for type_ in types_:
            osc_types += type_map[type_]
        return osc_types

    except KeyError as e:
        raise ValueError(f"Cannot convert {e.args[0]} to OSC type!") from e


def Python_Value_List_to_OSC_Type(values: List[Any]) -> str:
    """
    Convert a list of Python values to the OSC type string describing them.
    Potential Raises: ValueError

    Unlike Python_Type_List_to_OSC_Type this looks at the values themselves,
    so booleans become 'T' or 'F' depending on what they hold.
    """
    return ''.join(
        ('T' if value else 'F') if isinstance(value, bool)
        else Python_Type_List_to_OSC_Type([type(value)])
        for value in values
    )
