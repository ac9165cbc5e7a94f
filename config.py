"""
This module defines the data structures for our configuration and the
loader that turns a YAML document into them. Every record keeps an optional
``args`` mapping that is passed through to the provider call, so resource
arguments not modelled here can still be set from YAML.
"""

import os
import yaml
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

SUBNET_TYPES = ("public", "isolated")
ENDPOINT_SERVICES = ("dynamodb", "s3", "sqs")
KEY_TYPES = ("S", "N", "B")
REMOVAL_POLICIES = ("retain", "destroy")
BILLING_MODES = ("PROVISIONED", "PAY_PER_REQUEST")

REQUIRED_KEYS = ["team", "service", "environment", "region"]


class ConfigError(ValueError):
    pass


@dataclass
class SubnetGroupSpec:
    name: str
    type: str = "public"
    cidr_mask: int = 24


@dataclass
class EndpointSpec:
    service: str


@dataclass
class NetworkSpec:
    name: str
    cidr: str = "10.0.0.0/16"
    availability_zones: List[str] = field(default_factory=list)
    subnets: List[SubnetGroupSpec] = field(default_factory=list)
    endpoints: List[EndpointSpec] = field(default_factory=list)
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CapacitySpec:
    instance_type: str = "t2.micro"
    desired_capacity: int = 1
    ami: str = "resolve:ssm:/aws/service/ecs/optimized-ami/amazon-linux-2/recommended/image_id"


@dataclass
class ClusterSpec:
    name: str
    cluster_name: str
    network: str
    capacity: CapacitySpec = field(default_factory=CapacitySpec)
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ImageSpec:
    repository_name: str
    repository_arn: str
    tag: str = "latest"


@dataclass
class ServiceSpec:
    name: str
    service_name: str
    cluster: str
    image: ImageSpec
    desired_count: int = 1
    memory_limit_mib: int = 256
    container_port: int = 80
    public_load_balancer: bool = True
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class KeySpec:
    name: str
    type: str = "S"


@dataclass
class TableSpec:
    name: str
    table_name: str
    partition_key: KeySpec
    billing_mode: str = "PROVISIONED"
    read_capacity: int = 5
    write_capacity: int = 5
    removal_policy: str = "retain"
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class QueueSpec:
    name: str
    queue_name: str
    visibility_timeout_seconds: int = 30
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CodeSpec:
    bucket: str
    key: str


@dataclass
class FunctionNetworkSpec:
    network: str
    subnet_type: str = "isolated"


@dataclass
class FunctionSpec:
    name: str
    function_name: str
    runtime: str
    handler: str
    code: CodeSpec
    timeout_seconds: int = 3
    memory_size: int = 128
    network: Optional[FunctionNetworkSpec] = None
    environment: Dict[str, str] = field(default_factory=dict)
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BucketSpec:
    name: str
    bucket_name: str
    removal_policy: str = "retain"
    auto_delete_objects: bool = False
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GrantSpec:
    resource: str
    principal: str
    permission: str


@dataclass
class EventSourceSpec:
    function: str
    queue: str
    batch_size: int = 10


@dataclass
class StackConfig:
    team: str
    service: str
    environment: str
    region: str
    stack_name: str
    tags: Dict[str, str] = field(default_factory=dict)
    networks: List[NetworkSpec] = field(default_factory=list)
    clusters: List[ClusterSpec] = field(default_factory=list)
    services: List[ServiceSpec] = field(default_factory=list)
    tables: List[TableSpec] = field(default_factory=list)
    buckets: List[BucketSpec] = field(default_factory=list)
    queues: List[QueueSpec] = field(default_factory=list)
    functions: List[FunctionSpec] = field(default_factory=list)
    event_sources: List[EventSourceSpec] = field(default_factory=list)
    grants: List[GrantSpec] = field(default_factory=list)


def load_config(file_path: str) -> StackConfig:
    """Load and validate YAML configuration from the given file path."""
    if not os.path.exists(file_path):
        raise ConfigError(f"Configuration file not found: {file_path}")
    try:
        with open(file_path, "r") as file:
            config_data = yaml.safe_load(file)
    except yaml.YAMLError as e:
        raise ConfigError(f"Malformed YAML in {file_path}: {e}") from None
    return parse_config(config_data)


def _mapping(value: Any, where: str) -> Dict[str, Any]:
    # An empty YAML section (all entries commented out) loads as None.
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Expected a mapping for {where}, got {type(value).__name__}")
    return value


def _entries(value: Any, where: str) -> List[Dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"Expected a list for {where}, got {type(value).__name__}")
    return [_mapping(entry, f"an entry of {where}") for entry in value]


def _require(entry: Dict[str, Any], key: str, where: str) -> Any:
    if key not in entry:
        raise ConfigError(f"Missing required key '{key}' in {where}")
    return entry[key]


def _choice(value: str, choices, what: str, where: str) -> str:
    if value not in choices:
        raise ConfigError(f"Invalid {what} '{value}' in {where}; expected one of {list(choices)}")
    return value


def _positive(value: Any, what: str, where: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ConfigError(f"{what} must be a positive integer in {where}, got {value!r}")
    return value


def _parse_network(entry: Dict[str, Any]) -> NetworkSpec:
    name = _require(entry, "name", "network")
    where = f"network '{name}'"
    subnets = []
    for subnet in _entries(entry.get("subnets"), f"subnets of {where}"):
        subnet_name = _require(subnet, "name", where)
        subnets.append(SubnetGroupSpec(
            name=subnet_name,
            type=_choice(subnet.get("type", "public"), SUBNET_TYPES, "subnet type", where),
            cidr_mask=_positive(subnet.get("cidr_mask", 24), "cidr_mask", where),
        ))
    if not subnets:
        raise ConfigError(f"{where} declares no subnets")
    endpoints = [
        EndpointSpec(service=_choice(ep.get("service"), ENDPOINT_SERVICES, "endpoint service", where))
        for ep in _entries(entry.get("endpoints"), f"endpoints of {where}")
    ]
    zones = _require(entry, "availability_zones", where) or []
    if not isinstance(zones, list):
        raise ConfigError(f"availability_zones of {where} must be a list")
    if not zones:
        raise ConfigError(f"{where} declares no availability zones")
    return NetworkSpec(
        name=name,
        cidr=entry.get("cidr", "10.0.0.0/16"),
        availability_zones=list(zones),
        subnets=subnets,
        endpoints=endpoints,
        args=_mapping(entry.get("args"), f"args of {where}"),
    )


def _parse_cluster(entry: Dict[str, Any]) -> ClusterSpec:
    name = _require(entry, "name", "cluster")
    where = f"cluster '{name}'"
    capacity = _mapping(entry.get("capacity"), f"capacity of {where}")
    defaults = CapacitySpec()
    return ClusterSpec(
        name=name,
        cluster_name=entry.get("cluster_name", name),
        network=_require(entry, "network", where),
        capacity=CapacitySpec(
            instance_type=capacity.get("instance_type", defaults.instance_type),
            desired_capacity=_positive(capacity.get("desired_capacity", 1), "desired_capacity", where),
            ami=capacity.get("ami", defaults.ami),
        ),
        args=_mapping(entry.get("args"), f"args of {where}"),
    )


def _parse_service(entry: Dict[str, Any]) -> ServiceSpec:
    name = _require(entry, "name", "load balanced service")
    where = f"service '{name}'"
    image = _mapping(_require(entry, "image", where), f"image of {where}")
    return ServiceSpec(
        name=name,
        service_name=entry.get("service_name", name),
        cluster=_require(entry, "cluster", where),
        image=ImageSpec(
            repository_name=_require(image, "repository_name", where),
            repository_arn=_require(image, "repository_arn", where),
            tag=image.get("tag", "latest"),
        ),
        desired_count=_positive(entry.get("desired_count", 1), "desired_count", where),
        memory_limit_mib=_positive(entry.get("memory_limit_mib", 256), "memory_limit_mib", where),
        container_port=_positive(entry.get("container_port", 80), "container_port", where),
        public_load_balancer=bool(entry.get("public_load_balancer", True)),
        args=_mapping(entry.get("args"), f"args of {where}"),
    )


def _parse_table(entry: Dict[str, Any]) -> TableSpec:
    name = _require(entry, "name", "table")
    where = f"table '{name}'"
    key = _mapping(_require(entry, "partition_key", where), f"partition_key of {where}")
    billing_mode = _choice(entry.get("billing_mode", "PROVISIONED"), BILLING_MODES, "billing mode", where)
    return TableSpec(
        name=name,
        table_name=entry.get("table_name", name),
        partition_key=KeySpec(
            name=_require(key, "name", where),
            type=_choice(key.get("type", "S"), KEY_TYPES, "key type", where),
        ),
        billing_mode=billing_mode,
        read_capacity=_positive(entry.get("read_capacity", 5), "read_capacity", where),
        write_capacity=_positive(entry.get("write_capacity", 5), "write_capacity", where),
        removal_policy=_choice(entry.get("removal_policy", "retain"), REMOVAL_POLICIES, "removal policy", where),
        args=_mapping(entry.get("args"), f"args of {where}"),
    )


def _parse_bucket(entry: Dict[str, Any]) -> BucketSpec:
    name = _require(entry, "name", "bucket")
    where = f"bucket '{name}'"
    return BucketSpec(
        name=name,
        bucket_name=entry.get("bucket_name", name),
        removal_policy=_choice(entry.get("removal_policy", "retain"), REMOVAL_POLICIES, "removal policy", where),
        auto_delete_objects=bool(entry.get("auto_delete_objects", False)),
        args=_mapping(entry.get("args"), f"args of {where}"),
    )


def _parse_queue(entry: Dict[str, Any]) -> QueueSpec:
    name = _require(entry, "name", "queue")
    where = f"queue '{name}'"
    return QueueSpec(
        name=name,
        queue_name=entry.get("queue_name", name),
        visibility_timeout_seconds=_positive(
            entry.get("visibility_timeout_seconds", 30), "visibility_timeout_seconds", where),
        args=_mapping(entry.get("args"), f"args of {where}"),
    )


def _parse_function(entry: Dict[str, Any]) -> FunctionSpec:
    name = _require(entry, "name", "function")
    where = f"function '{name}'"
    code = _mapping(_require(entry, "code", where), f"code of {where}")
    environment = _mapping(entry.get("environment"), f"environment of {where}")
    network = None
    if entry.get("network"):
        net = _mapping(entry["network"], f"network of {where}")
        network = FunctionNetworkSpec(
            network=_require(net, "name", where),
            subnet_type=_choice(net.get("subnet_type", "isolated"), SUBNET_TYPES, "subnet type", where),
        )
    return FunctionSpec(
        name=name,
        function_name=entry.get("function_name", name),
        runtime=_require(entry, "runtime", where),
        handler=_require(entry, "handler", where),
        code=CodeSpec(bucket=_require(code, "bucket", where), key=_require(code, "key", where)),
        timeout_seconds=_positive(entry.get("timeout_seconds", 3), "timeout_seconds", where),
        memory_size=_positive(entry.get("memory_size", 128), "memory_size", where),
        network=network,
        environment={str(k): str(v) for k, v in environment.items()},
        args=_mapping(entry.get("args"), f"args of {where}"),
    )


def parse_config(config_data: Any) -> StackConfig:
    if not isinstance(config_data, dict):
        raise ConfigError("Configuration document must be a mapping")

    # Ensure required keys exist
    for key in REQUIRED_KEYS:
        if key not in config_data:
            raise ConfigError(f"Missing required configuration key: {key}")

    grants = [
        GrantSpec(
            resource=_require(g, "resource", "grant"),
            principal=_require(g, "principal", "grant"),
            permission=_require(g, "permission", "grant"),
        )
        for g in _entries(config_data.get("grants"), "grants")
    ]
    event_sources = [
        EventSourceSpec(
            function=_require(es, "function", "event source"),
            queue=_require(es, "queue", "event source"),
            batch_size=_positive(es.get("batch_size", 10), "batch_size", "event source"),
        )
        for es in _entries(config_data.get("event_sources"), "event_sources")
    ]

    return StackConfig(
        team=config_data["team"],
        service=config_data["service"],
        environment=config_data["environment"],
        region=config_data["region"],
        stack_name=config_data.get("stack_name", f"{config_data['environment']}-{config_data['service']}-stack"),
        tags=_mapping(config_data.get("tags"), "tags"),
        networks=[_parse_network(e) for e in _entries(config_data.get("networks"), "networks")],
        clusters=[_parse_cluster(e) for e in _entries(config_data.get("clusters"), "clusters")],
        services=[_parse_service(e) for e in _entries(config_data.get("load_balanced_services"), "load_balanced_services")],
        tables=[_parse_table(e) for e in _entries(config_data.get("tables"), "tables")],
        buckets=[_parse_bucket(e) for e in _entries(config_data.get("buckets"), "buckets")],
        queues=[_parse_queue(e) for e in _entries(config_data.get("queues"), "queues")],
        functions=[_parse_function(e) for e in _entries(config_data.get("functions"), "functions")],
        event_sources=event_sources,
        grants=grants,
    )
