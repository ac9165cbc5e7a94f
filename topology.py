"""
The resource graph: typed resource nodes in declaration order plus the edges
between them (references, grants and event source bindings).

The graph is validated before anything is handed to the provisioning backend,
and it can be synthesized into a JSON document that is byte-identical for
identical input configuration.
"""

import hashlib
import ipaddress
import json
import re
import pulumi
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import permissions
from config import NetworkSpec, StackConfig

BUCKET_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9.-]{1,61}[a-z0-9]$")

# Attribute holding the provider-side name for each kind.
PHYSICAL_NAME_FIELDS = {
    "network": "name",
    "cluster": "cluster_name",
    "service": "service_name",
    "table": "table_name",
    "bucket": "bucket_name",
    "queue": "queue_name",
    "function": "function_name",
}

# Kind each reference role must point at.
REFERENCE_KINDS = {
    "network": "network",
    "cluster": "cluster",
    "code_bucket": "bucket",
}


class TopologyError(ValueError):
    pass


REF_PREFIX = "ref:"


def collect_refs(value: Any) -> List[str]:
    """Return the resource ids named by `ref:<resource>[.<attr>]` values, in order of appearance."""
    found: List[str] = []
    if isinstance(value, dict):
        for item in value.values():
            found.extend(collect_refs(item))
    elif isinstance(value, (list, tuple)):
        for item in value:
            found.extend(collect_refs(item))
    elif isinstance(value, str) and value.startswith(REF_PREFIX):
        found.append(value[len(REF_PREFIX):].split(".", 1)[0])
    return found


@dataclass
class PlannedSubnet:
    group: str
    type: str
    availability_zone: str
    cidr: str


@dataclass
class ResourceNode:
    id: str
    kind: str
    name: str
    spec: Any
    references: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "name": self.name,
            "properties": asdict(self.spec),
            "references": dict(self.references),
        }


@dataclass
class Grant:
    resource: str
    principal: str
    permission: str


@dataclass
class EventSourceBinding:
    function: str
    queue: str
    batch_size: int = 10


def plan_subnets(network: NetworkSpec) -> List[PlannedSubnet]:
    """Carve the subnet groups out of the network's address space.

    Blocks are allocated group by group and zone by zone, each one at the
    next free address aligned to its size.
    """
    try:
        space = ipaddress.IPv4Network(network.cidr)
    except ValueError as e:
        raise TopologyError(f"Invalid CIDR '{network.cidr}' for network '{network.name}': {e}") from None

    cursor = int(space.network_address)
    end = int(space.broadcast_address) + 1
    planned = []
    for group in network.subnets:
        if group.cidr_mask < space.prefixlen or group.cidr_mask > 28:
            raise TopologyError(
                f"Subnet group '{group.name}' mask /{group.cidr_mask} does not fit network "
                f"'{network.name}' ({network.cidr}); expected /{space.prefixlen}-/28")
        size = 2 ** (32 - group.cidr_mask)
        for zone in network.availability_zones:
            start = -(-cursor // size) * size
            if start + size > end:
                raise TopologyError(
                    f"Address space {network.cidr} of network '{network.name}' exhausted "
                    f"while planning subnet group '{group.name}' in {zone}")
            block = ipaddress.IPv4Network((start, group.cidr_mask))
            planned.append(PlannedSubnet(group.name, group.type, zone, str(block)))
            cursor = start + size
    return planned


class ResourceGraph:
    def __init__(self, stack_name: str):
        self.stack_name = stack_name
        self.nodes: Dict[str, ResourceNode] = {}
        self.grants: List[Grant] = []
        self.event_sources: List[EventSourceBinding] = []

    def _node(self, node_id: str, kind: Optional[str] = None, what: str = "resource") -> ResourceNode:
        if node_id not in self.nodes:
            raise TopologyError(f"Referenced {what} '{node_id}' is not declared.")
        node = self.nodes[node_id]
        if kind is not None and node.kind != kind:
            raise TopologyError(f"Referenced {what} '{node_id}' is a {node.kind}, expected a {kind}.")
        return node

    def of_kind(self, kind: str) -> List[ResourceNode]:
        return [node for node in self.nodes.values() if node.kind == kind]

    def add(self, kind: str, spec: Any, references: Optional[Dict[str, str]] = None) -> ResourceNode:
        if kind not in PHYSICAL_NAME_FIELDS:
            raise TopologyError(f"Unknown resource kind '{kind}'")
        if spec.name in self.nodes:
            raise TopologyError(f"Resource '{spec.name}' is declared more than once.")
        references = dict(references or {})
        for role, target in references.items():
            self._node(target, REFERENCE_KINDS.get(role), role.replace("_", " "))
        # Values resolved by the backend from other resources become edges too.
        for target in collect_refs([getattr(spec, "args", {}), getattr(spec, "environment", {})]):
            self._node(target)
            references.setdefault(f"{REF_PREFIX}{target}", target)
        node = ResourceNode(
            id=spec.name,
            kind=kind,
            name=getattr(spec, PHYSICAL_NAME_FIELDS[kind]),
            spec=spec,
            references=references,
        )
        self.nodes[node.id] = node
        pulumi.log.debug(f"Declared {kind} '{node.id}' ({node.name})")
        return node

    def grant(self, resource: str, principal: str, permission: str) -> Grant:
        target = self._node(resource)
        holder = self._node(principal, what="principal")
        if holder.kind not in permissions.PRINCIPAL_KINDS:
            raise TopologyError(
                f"Principal '{principal}' is a {holder.kind}; grants can only be made to "
                f"{' or '.join(permissions.PRINCIPAL_KINDS)} resources.")
        if not permissions.is_grantable(target.kind):
            raise TopologyError(f"Resource '{resource}' is a {target.kind} and cannot be granted.")
        try:
            permissions.actions_for(target.kind, permission)
        except KeyError as e:
            raise TopologyError(f"Grant on '{resource}': {e.args[0]}") from None
        edge = Grant(resource, principal, permission)
        if edge in self.grants:
            raise TopologyError(f"Grant {permission} on '{resource}' to '{principal}' is declared more than once.")
        self.grants.append(edge)
        return edge

    def bind_event_source(self, function: str, queue: str, batch_size: int = 10) -> EventSourceBinding:
        fn = self._node(function, "function", "function")
        q = self._node(queue, "queue", "queue")
        if q.spec.visibility_timeout_seconds < fn.spec.timeout_seconds:
            raise TopologyError(
                f"Queue '{queue}' visibility timeout ({q.spec.visibility_timeout_seconds}s) is shorter "
                f"than the timeout of function '{function}' ({fn.spec.timeout_seconds}s).")
        if any(b.function == function and b.queue == queue for b in self.event_sources):
            raise TopologyError(f"Queue '{queue}' is bound to function '{function}' more than once.")
        binding = EventSourceBinding(function, queue, batch_size)
        self.event_sources.append(binding)
        return binding

    def validate(self) -> None:
        order = {node_id: i for i, node_id in enumerate(self.nodes)}

        for node in self.nodes.values():
            for role, target in node.references.items():
                if target not in order or order[target] >= order[node.id]:
                    raise TopologyError(f"'{node.id}' references {role} '{target}' before it is declared.")

        seen: Dict[tuple, str] = {}
        for node in self.nodes.values():
            key = (node.kind, node.name)
            if key in seen:
                raise TopologyError(
                    f"{node.kind.capitalize()} name '{node.name}' is used by both '{seen[key]}' and '{node.id}'.")
            seen[key] = node.id

        for node in self.of_kind("bucket"):
            if not BUCKET_NAME_PATTERN.match(node.name) or ".." in node.name:
                raise TopologyError(f"Bucket name '{node.name}' of '{node.id}' is not a valid bucket name.")

        for edge in self.grants:
            if edge.resource not in order or edge.principal not in order:
                raise TopologyError(
                    f"Grant {edge.permission} on '{edge.resource}' to '{edge.principal}' "
                    f"references an undeclared resource.")
        grant_keys = [(e.resource, e.principal, e.permission) for e in self.grants]
        if len(set(grant_keys)) != len(grant_keys):
            raise TopologyError("The same grant is declared more than once.")

        for binding in self.event_sources:
            self._node(binding.queue, "queue", "queue")
            self._node(binding.function, "function", "function")
        binding_keys = [(b.function, b.queue) for b in self.event_sources]
        if len(set(binding_keys)) != len(binding_keys):
            raise TopologyError("The same event source binding is declared more than once.")

        for fn in self.of_kind("function"):
            self._check_private_reachability(fn)

    def _check_private_reachability(self, fn: ResourceNode) -> None:
        attachment = fn.spec.network
        if attachment is None:
            return
        # Function network interfaces never get public addresses, whatever the subnet type.
        subnet_type = attachment.subnet_type
        network = self._node(attachment.network, "network", "network")
        if not any(group.type == subnet_type for group in network.spec.subnets):
            raise TopologyError(
                f"Function '{fn.id}' is attached to {subnet_type} subnets but network "
                f"'{network.id}' has none.")
        endpoints = {ep.service for ep in network.spec.endpoints}
        for edge in self.grants:
            if edge.principal != fn.id:
                continue
            service = permissions.ENDPOINT_SERVICE_BY_KIND[self.nodes[edge.resource].kind]
            if service not in endpoints:
                raise TopologyError(
                    f"Function '{fn.id}' runs in {subnet_type} subnets of '{network.id}' but has no "
                    f"{service} endpoint to reach '{edge.resource}'.")

    def to_document(self) -> Dict[str, Any]:
        return {
            "stack": self.stack_name,
            "resources": [node.to_dict() for node in self.nodes.values()],
            "grants": [asdict(edge) for edge in self.grants],
            "event_sources": [asdict(binding) for binding in self.event_sources],
        }

    def synthesize(self) -> str:
        return json.dumps(self.to_document(), sort_keys=True, indent=2, separators=(",", ": ")) + "\n"

    def digest(self) -> str:
        return hashlib.sha256(self.synthesize().encode("utf-8")).hexdigest()


def build_graph(config: StackConfig) -> ResourceGraph:
    graph = ResourceGraph(config.stack_name)
    for network in config.networks:
        plan_subnets(network)
        graph.add("network", network)
    for cluster in config.clusters:
        graph.add("cluster", cluster, {"network": cluster.network})
    for service in config.services:
        graph.add("service", service, {"cluster": service.cluster})
    for table in config.tables:
        graph.add("table", table)
    for bucket in config.buckets:
        graph.add("bucket", bucket)
    for queue in config.queues:
        graph.add("queue", queue)
    for function in config.functions:
        references = {}
        if function.network is not None:
            references["network"] = function.network.network
        if function.code.bucket in graph.nodes:
            references["code_bucket"] = function.code.bucket
        graph.add("function", function, references)
    for binding in config.event_sources:
        graph.bind_event_source(binding.function, binding.queue, binding.batch_size)
    for grant in config.grants:
        graph.grant(grant.resource, grant.principal, grant.permission)
    graph.validate()
    pulumi.log.info(
        f"Resource graph '{graph.stack_name}': {len(graph.nodes)} resources, "
        f"{len(graph.grants)} grants, {len(graph.event_sources)} event sources")
    return graph
