"""Reading the cluster and service configuration of a node."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

PathLike = Union[str, "os.PathLike[str]"]


class ConfigError(Exception):
    """Raised when the cluster configuration is missing or malformed."""


_STR_LIST_FIELDS = (
    "service_list",
    "public_service_list",
    "discovery_service",
    "neighbor_service",
)

_NODE_KEYS = {
    "nodeid": "node_id",
    "nodename": "node_name",
    "private": "private",
    "listenaddr": "listen_addr",
    "servicelist": "service_list",
    "publicservicelist": "public_service_list",
    "discoveryservice": "discovery_service",
    "neighborservice": "neighbor_service",
}


def _to_int(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{what} must be a number")
    if isinstance(value, float) and not value.is_integer():
        raise ConfigError(f"{what} must be an integer")
    return int(value)


def _convert_node_field(attr: str, value: Any) -> Any:
    if attr == "node_id":
        return _to_int(value, "NodeId")
    if attr == "private":
        if not isinstance(value, bool):
            raise ConfigError("Private must be a boolean")
        return value
    if attr in _STR_LIST_FIELDS:
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ConfigError(f"{attr} must be a list of strings")
        return list(value)
    if not isinstance(value, str):
        raise ConfigError(f"{attr} must be a string")
    return value


@dataclass
class NodeInfo:
    """One node of the cluster as configured."""

    node_id: int = 0
    node_name: str = ""
    private: bool = False
    listen_addr: str = ""
    service_list: list[str] = field(default_factory=list)
    public_service_list: list[str] = field(default_factory=list)
    discovery_service: list[str] = field(default_factory=list)
    neighbor_service: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "NodeInfo":
        """Build from a JSON object; keys match case-insensitively."""
        if not isinstance(data, dict):
            raise ConfigError("node info must be an object")
        kwargs = {}
        for key, value in data.items():
            attr = _NODE_KEYS.get(str(key).lower())
            if attr is None or value is None:
                continue
            kwargs[attr] = _convert_node_field(attr, value)
        return cls(**kwargs)


@dataclass
class NodeInfoList:
    """The content of one cluster configuration file."""

    master_discovery_node: list[NodeInfo] = field(default_factory=list)
    node_list: list[NodeInfo] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "NodeInfoList":
        if not isinstance(data, dict):
            raise ConfigError("cluster config must be an object")
        result = cls()
        for key, value in data.items():
            lowered = str(key).lower()
            if lowered not in ("masterdiscoverynode", "nodelist") or value is None:
                continue
            if not isinstance(value, list):
                raise ConfigError(f"{key} must be a list")
            nodes = [NodeInfo.from_dict(item) for item in value]
            if lowered == "masterdiscoverynode":
                result.master_discovery_node = nodes
            else:
                result.node_list = nodes
        return result


def _load_json(path: PathLike) -> Any:
    with open(path, encoding="utf-8") as handle:
        text = handle.read()
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"invalid JSON in {path}: {exc}") from exc


def read_cluster_config(path: PathLike) -> NodeInfoList:
    """Read one cluster configuration file."""
    return NodeInfoList.from_dict(_load_json(path))


def read_service_config(
    path: PathLike,
) -> tuple[dict[str, Any], dict[int, dict[str, Any]]]:
    """Read the shared ``Service`` section and the per-node ``NodeService`` entries."""
    data = _load_json(path)
    if not isinstance(data, dict):
        raise ConfigError("service config must be an object")

    service_config: dict[str, Any] = {}
    if "Service" in data:
        if not isinstance(data["Service"], dict):
            raise ConfigError("Service must be an object")
        service_config = data["Service"]

    node_services: dict[int, dict[str, Any]] = {}
    if "NodeService" in data:
        entries = data["NodeService"]
        if not isinstance(entries, list):
            raise ConfigError("NodeService must be a list")
        for entry in entries:
            if not isinstance(entry, dict):
                raise ConfigError("NodeService entries must be objects")
            if "NodeId" not in entry:
                raise ConfigError("NodeService list not find nodeId field")
            node_services[_to_int(entry["NodeId"], "NodeId")] = entry
    return service_config, node_services


def _cluster_files(config_dir: PathLike) -> list[Path]:
    cluster_dir = os.fspath(config_dir).rstrip("/") + "/cluster"
    try:
        entries = sorted(os.scandir(cluster_dir), key=lambda entry: entry.name)
    except OSError as exc:
        raise ConfigError(f"Read dir {cluster_dir} is fail :{exc}") from exc
    return [Path(entry.path) for entry in entries if not entry.is_dir()]


def read_local_cluster_config(
    config_dir: PathLike, node_id: int
) -> tuple[list[NodeInfo], list[NodeInfo]]:
    """Return the master discovery nodes and the nodes matching ``node_id``.

    A ``node_id`` of 0 selects every node. Services whose name starts with an
    underscore, and all services of a private node, stay off the public list.
    """
    masters: list[NodeInfo] = []
    nodes: list[NodeInfo] = []
    for path in _cluster_files(config_dir):
        try:
            content = read_cluster_config(path)
        except (OSError, ConfigError) as exc:
            raise ConfigError(f"read file path {path} is error:{exc}") from exc
        masters.extend(content.master_discovery_node)
        nodes.extend(
            node for node in content.node_list if node_id == 0 or node.node_id == node_id
        )

    if node_id != 0 and len(nodes) != 1:
        raise ConfigError(
            f"{len(nodes)} configurations were found for the configuration "
            f"with node ID {node_id}!"
        )

    for node in nodes:
        renamed = []
        for service in node.service_list:
            if not service.startswith("_") and not node.private:
                node.public_service_list.append(service)
                renamed.append(service)
            else:
                renamed.append(service.lstrip("_"))
        node.service_list = renamed
    return masters, nodes


def read_local_service(
    config_dir: PathLike, node_id: int, service_list: list[str]
) -> dict[str, Any]:
    """Collect the configuration of each named service; node entries override shared ones."""
    configs: dict[str, Any] = {}
    for path in _cluster_files(config_dir):
        try:
            shared, per_node = read_service_config(path)
        except (OSError, ConfigError):
            continue
        node_config = per_node.get(node_id)
        for service in service_list:
            if service in shared:
                configs[service] = shared[service]
            if node_config is not None and service in node_config:
                configs[service] = node_config[service]
    return configs


def check_discovery_node_list(nodes: list[NodeInfo]) -> bool:
    """True when no two discovery nodes share an id or a listen address."""
    seen_ids: set[int] = set()
    seen_addrs: set[str] = set()
    for node in nodes:
        if node.node_id in seen_ids or node.listen_addr in seen_addrs:
            return False
        seen_ids.add(node.node_id)
        seen_addrs.add(node.listen_addr)
    return True


@dataclass
class LocalClusterConfig:
    """The configuration of the local node and the services it hosts."""

    local_node_info: NodeInfo
    master_discovery_node_list: list[NodeInfo] = field(default_factory=list)
    local_service_cfg: dict[str, Any] = field(default_factory=dict)
    map_id_node: dict[int, NodeInfo] = field(default_factory=dict)
    map_service_node: dict[str, set[int]] = field(default_factory=dict)

    def is_config_service(self, service_name: str) -> bool:
        """True when the local node is configured to run ``service_name``."""
        nodes = self.map_service_node.get(service_name)
        return nodes is not None and self.local_node_info.node_id in nodes

    def get_service_cfg(self, service_name: str) -> Optional[Any]:
        return self.local_service_cfg.get(service_name)

    def get_node_ids_by_service(self, service_name: str) -> list[int]:
        """Ids of the known nodes that provide ``service_name``, ascending."""
        return sorted(self.map_service_node.get(service_name, ()))


def load_local_config(config_dir: PathLike, node_id: int) -> LocalClusterConfig:
    """Load everything the node ``node_id`` needs from ``config_dir``."""
    masters, nodes = read_local_cluster_config(config_dir, node_id)
    if not nodes:
        raise ConfigError(f"no node configuration found for node ID {node_id}")
    local = nodes[0]
    if not check_discovery_node_list(masters):
        raise ConfigError("DiscoveryNode config is error!")

    config = LocalClusterConfig(
        local_node_info=local,
        master_discovery_node_list=masters,
        local_service_cfg=read_local_service(config_dir, node_id, local.service_list),
    )
    config.map_id_node[local.node_id] = local
    for service in local.service_list:
        config.map_service_node.setdefault(service, set()).add(local.node_id)
    return config