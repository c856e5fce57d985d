import pytest
import requests

from vrcoscquery.query import DiscoveredOscQueryService, OSCQueryClient
from vrcoscquery.shared.node import (
    OSCAccess, OSCContainerNode, OSCHostInfo, OSCMethodNode
)

SERVICE = DiscoveredOscQueryService(
    instance_name="VRChat-Client-ABC123._oscjson._tcp.local.",
    host_name="VRChat-Client-ABC123.local.",
    address="192.168.1.20",
    port=9001,
)

TREE = {
    "FULL_PATH": "/",
    "ACCESS": 0,
    "CONTENTS": {
        "avatar": {
            "FULL_PATH": "/avatar",
            "ACCESS": 0,
            "CONTENTS": {
                "change": {
                    "FULL_PATH": "/avatar/change",
                    "ACCESS": 3,
                    "TYPE": "s",
                    "VALUE": ["avtr_123"],
                },
                "parameters": {
                    "FULL_PATH": "/avatar/parameters",
                    "ACCESS": 0,
                    "CONTENTS": {
                        "VelocityX": {
                            "FULL_PATH": "/avatar/parameters/VelocityX",
                            "ACCESS": 1,
                            "TYPE": "f",
                            "VALUE": [0],
                            "DESCRIPTION": "avatar velocity",
                        },
                        "Empty": {
                            "FULL_PATH": "/avatar/parameters/Empty",
                            "ACCESS": 3,
                            "TYPE": "i",
                            "VALUE": [{}],
                        },
                    },
                },
            },
        },
    },
}


@pytest.fixture
def get(mocker):
    return mocker.patch("vrcoscquery.query.requests.get")


def respond(mocker, status_code=200, payload=None):
    response = mocker.MagicMock(status_code=status_code, content=b"boom")
    response.json.return_value = payload
    return response


def test_rejects_other_objects():
    with pytest.raises(TypeError):
        OSCQueryClient("http://192.168.1.20:9001")  # type: ignore[arg-type]


def test_get_host_info(mocker, get):
    get.return_value = respond(mocker, payload={
        "NAME": "VRChat-Client-ABC123",
        "OSC_IP": "192.168.1.20",
        "OSC_PORT": 9000,
        "OSC_TRANSPORT": "UDP",
        "EXTENSIONS": {"ACCESS": True},
    })

    host_info = OSCQueryClient(SERVICE).get_host_info()

    get.assert_called_once_with("http://192.168.1.20:9001/?HOST_INFO", timeout=10)
    assert host_info == OSCHostInfo(
        "VRChat-Client-ABC123", "192.168.1.20", 9000, "UDP", {"ACCESS": True}
    )


def test_get_host_info_fills_missing_fields(mocker, get):
    get.return_value = respond(mocker, payload={"NAME": "Minimal"})

    host_info = OSCQueryClient(SERVICE).get_host_info()

    assert host_info == OSCHostInfo("Minimal", "192.168.1.20", 9001, "UDP", {})


def test_query_node_rebuilds_tree(mocker, get):
    get.return_value = respond(mocker, payload=TREE)
    client = OSCQueryClient(SERVICE)

    root = client.query_node()

    get.assert_called_once_with("http://192.168.1.20:9001/", timeout=10)
    assert isinstance(root, OSCContainerNode)
    assert client.last_json == TREE
    assert [node.full_path for node in root] == [
        "/", "/avatar", "/avatar/change", "/avatar/parameters",
        "/avatar/parameters/VelocityX", "/avatar/parameters/Empty",
    ]

    velocity = root.find_subnode("/avatar/parameters/VelocityX")
    assert isinstance(velocity, OSCMethodNode)
    assert velocity.access == OSCAccess.READONLY_VALUE
    assert velocity.value == [0.0]
    assert isinstance(velocity.value[0], float)
    assert velocity.description == "avatar velocity"
    assert root.find_subnode("/avatar/parameters/Empty").value == []


def test_query_node_returns_subnode(mocker, get):
    get.return_value = respond(mocker, payload=TREE)

    node = OSCQueryClient(SERVICE).query_node("/avatar/change")

    assert node.type_ == "s"
    assert node.value == ["avtr_123"]


def test_query_node_missing_path(mocker, get):
    get.return_value = respond(mocker, payload=TREE)

    assert OSCQueryClient(SERVICE).query_node("/tracking") is None


def test_not_found_returns_none(mocker, get):
    get.return_value = respond(mocker, status_code=404)

    assert OSCQueryClient(SERVICE).get_host_info() is None


def test_connection_error_returns_none(get):
    get.side_effect = requests.exceptions.ConnectionError("refused")

    assert OSCQueryClient(SERVICE).query_node() is None


def test_server_error_raises(mocker, get):
    get.return_value = respond(mocker, status_code=500)

    with pytest.raises(requests.HTTPError):
        OSCQueryClient(SERVICE).query_node()


def test_method_without_arguments_stays_a_method(mocker, get):
    get.return_value = respond(mocker, payload={
        "FULL_PATH": "/",
        "ACCESS": 0,
        "CONTENTS": {"reset": {"FULL_PATH": "/reset", "ACCESS": 2, "TYPE": ""}},
    })

    node = OSCQueryClient(SERVICE).query_node("/reset")

    assert isinstance(node, OSCMethodNode)
    assert node.type_ == ""
    assert node.access == OSCAccess.WRITEONLY_VALUE
