import json

import pytest

from origin.clusterconfig import (
    ConfigError,
    NodeInfo,
    check_discovery_node_list,
    load_local_config,
    read_cluster_config,
    read_local_cluster_config,
    read_local_service,
    read_service_config,
)


def _write(config_dir, name, data):
    cluster = config_dir / "cluster"
    cluster.mkdir(exist_ok=True)
    path = cluster / name
    path.write_text(json.dumps(data) if not isinstance(data, str) else data)
    return path


NODES = {
    "MasterDiscoveryNode": [],
    "NodeList": [
        {
            "NodeId": 1,
            "NodeName": "gate",
            "ListenAddr": "127.0.0.1:8001",
            "ServiceList": ["GateService", "_LocalService"],
        },
        {
            "NodeId": 2,
            "NodeName": "game",
            "Private": True,
            "ListenAddr": "127.0.0.1:8002",
            "ServiceList": ["GameService"],
        },
    ],
}

SERVICES = {
    "Service": {"GateService": {"Port": 1000}, "LocalService": {"Mode": "shared"}},
    "NodeService": [{"NodeId": 1, "GateService": {"Port": 2000}}],
}


def test_read_cluster_config_parses_nodes(tmp_path):
    path = _write(tmp_path, "nodes.json", NODES)
    content = read_cluster_config(path)
    assert [n.node_id for n in content.node_list] == [1, 2]
    assert content.node_list[1].private is True
    assert content.node_list[0].listen_addr == "127.0.0.1:8001"
    assert content.master_discovery_node == []


def test_node_info_keys_are_case_insensitive():
    node = NodeInfo.from_dict({"nodeid": 7, "listenaddr": "h:1", "servicelist": ["A"]})
    assert (node.node_id, node.listen_addr, node.service_list) == (7, "h:1", ["A"])


def test_node_info_bad_type_rejected():
    with pytest.raises(ConfigError):
        NodeInfo.from_dict({"NodeId": "one"})


def test_public_and_private_services(tmp_path):
    _write(tmp_path, "nodes.json", NODES)
    _, nodes = read_local_cluster_config(tmp_path, 1)
    assert len(nodes) == 1
    assert nodes[0].service_list == ["GateService", "LocalService"]
    assert nodes[0].public_service_list == ["GateService"]


def test_private_node_has_no_public_services(tmp_path):
    _write(tmp_path, "nodes.json", NODES)
    _, nodes = read_local_cluster_config(str(tmp_path) + "/", 2)
    assert nodes[0].public_service_list == []
    assert nodes[0].service_list == ["GameService"]


def test_node_id_zero_selects_all(tmp_path):
    _write(tmp_path, "nodes.json", NODES)
    _, nodes = read_local_cluster_config(tmp_path, 0)
    assert {n.node_id for n in nodes} == {1, 2}


def test_missing_node_raises(tmp_path):
    _write(tmp_path, "nodes.json", NODES)
    with pytest.raises(ConfigError, match="0 configurations"):
        read_local_cluster_config(tmp_path, 9)


def test_duplicate_node_across_files_raises(tmp_path):
    _write(tmp_path, "a.json", NODES)
    _write(tmp_path, "b.json", NODES)
    with pytest.raises(ConfigError, match="2 configurations"):
        read_local_cluster_config(tmp_path, 1)


def test_missing_cluster_dir_raises(tmp_path):
    with pytest.raises(ConfigError, match="Read dir"):
        read_local_cluster_config(tmp_path, 1)


def test_bad_json_file_raises(tmp_path):
    _write(tmp_path, "nodes.json", "{not json")
    with pytest.raises(ConfigError, match="read file path"):
        read_local_cluster_config(tmp_path, 1)


def test_check_discovery_node_list():
    a = NodeInfo(node_id=1, listen_addr="h:1")
    b = NodeInfo(node_id=2, listen_addr="h:2")
    assert check_discovery_node_list([a, b]) is True
    assert check_discovery_node_list([a, NodeInfo(node_id=1, listen_addr="h:3")]) is False
    assert check_discovery_node_list([a, NodeInfo(node_id=3, listen_addr="h:1")]) is False
    assert check_discovery_node_list([]) is True


def test_read_service_config(tmp_path):
    path = _write(tmp_path, "services.json", SERVICES)
    shared, per_node = read_service_config(path)
    assert shared == SERVICES["Service"]
    assert per_node == {1: SERVICES["NodeService"][0]}


def test_read_service_config_requires_node_id(tmp_path):
    path = _write(tmp_path, "services.json", {"NodeService": [{"GateService": {}}]})
    with pytest.raises(ConfigError, match="nodeId"):
        read_service_config(path)


def test_read_local_service_node_override(tmp_path):
    _write(tmp_path, "services.json", SERVICES)
    _write(tmp_path, "broken.json", "[")
    configs = read_local_service(tmp_path, 1, ["GateService", "LocalService", "Other"])
    assert configs == {
        "GateService": SERVICES["NodeService"][0]["GateService"],
        "LocalService": SERVICES["Service"]["LocalService"],
    }
    other_node = read_local_service(tmp_path, 2, ["GateService"])
    assert other_node == {"GateService": SERVICES["Service"]["GateService"]}


def test_load_local_config(tmp_path):
    _write(tmp_path, "nodes.json", NODES)
    _write(tmp_path, "services.json", SERVICES)
    config = load_local_config(tmp_path, 1)
    assert config.local_node_info.node_id == 1
    assert config.is_config_service("LocalService") is True
    assert config.is_config_service("GameService") is False
    assert config.get_service_cfg("GateService") == SERVICES["NodeService"][0]["GateService"]
    assert config.get_service_cfg("Unknown") is None
    assert config.get_node_ids_by_service("GateService") == [1]
    assert config.get_node_ids_by_service("GameService") == []
    assert list(config.map_id_node) == [1]


def test_load_local_config_rejects_bad_discovery(tmp_path):
    data = dict(NODES)
    data["MasterDiscoveryNode"] = [
        {"NodeId": 1, "ListenAddr": "h:1"},
        {"NodeId": 1, "ListenAddr": "h:2"},
    ]
    _write(tmp_path, "nodes.json", data)
    with pytest.raises(ConfigError, match="DiscoveryNode config is error!"):
        load_local_config(tmp_path, 1)