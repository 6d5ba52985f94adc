"""Kubernetes resource objects watched and managed by the controller."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Mapping

_SERVICE_TYPES_WITH_CLUSTER_IP = frozenset({"ClusterIP", "NodePort", "LoadBalancer"})
_SERVICE_TYPES_WITH_NODE_PORT = frozenset({"NodePort", "LoadBalancer"})
_SELECTOR_OPERATORS = ("In", "NotIn", "Exists", "DoesNotExist")


class Protocol(str, enum.Enum):
    """Transport protocol of a service or endpoint port."""

    TCP = "TCP"
    UDP = "UDP"
    SCTP = "SCTP"

    def __str__(self) -> str:
        return self.value


@dataclass
class ObjectMeta:
    """Metadata shared by every resource."""

    name: str = ""
    namespace: str = ""
    uid: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class LabelSelector:
    """A label query: exact label matches plus set-based expressions.

    Each expression is a ``(key, operator, values)`` triple where the operator
    is one of ``In``, ``NotIn``, ``Exists`` or ``DoesNotExist``.
    """

    match_labels: dict[str, str] = field(default_factory=dict)
    match_expressions: list[tuple[str, str, tuple[str, ...]]] = field(default_factory=list)

    def __post_init__(self) -> None:
        normalised = []
        for key, operator, values in self.match_expressions:
            values = tuple(values or ())
            if operator not in _SELECTOR_OPERATORS:
                raise ValueError(f"{operator!r} is not a valid label selector operator")
            if operator in ("In", "NotIn") and not values:
                raise ValueError(f"operator {operator!r} for key {key!r} needs values")
            if operator in ("Exists", "DoesNotExist") and values:
                raise ValueError(f"operator {operator!r} for key {key!r} takes no values")
            normalised.append((key, operator, values))
        self.match_expressions = normalised

    def matches(self, labels: Mapping[str, str]) -> bool:
        """Return whether the given label set satisfies the selector."""
        for key, value in self.match_labels.items():
            if key not in labels or labels[key] != value:
                return False
        for key, operator, values in self.match_expressions:
            present = key in labels
            if operator == "In" and not (present and labels[key] in values):
                return False
            if operator == "NotIn" and present and labels[key] in values:
                return False
            if operator == "Exists" and not present:
                return False
            if operator == "DoesNotExist" and present:
                return False
        return True

    def __str__(self) -> str:
        requirements = [(key, f"{key}={value}") for key, value in self.match_labels.items()]
        for key, operator, values in self.match_expressions:
            joined = ",".join(sorted(values))
            text = {
                "In": f"{key} in ({joined})",
                "NotIn": f"{key} notin ({joined})",
                "Exists": key,
                "DoesNotExist": f"!{key}",
            }[operator]
            requirements.append((key, text))
        return ",".join(text for _, text in sorted(requirements, key=lambda r: r[0]))


class _Resource:
    """Accessors for resources that carry an ObjectMeta as ``metadata``."""

    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def labels(self) -> dict[str, str]:
        return self.metadata.labels

    @property
    def annotations(self) -> dict[str, str]:
        return self.metadata.annotations


@dataclass
class Pod(_Resource):
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    node_name: str = ""
    host_network: bool = False
    pod_ip: str = ""
    phase: str = ""


@dataclass
class ServicePort:
    name: str = ""
    protocol: Protocol = Protocol.TCP
    port: int = 0
    node_port: int = 0
    target_port: int = 0


@dataclass
class Service(_Resource):
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    type: str = "ClusterIP"
    cluster_ip: str = ""
    ports: list[ServicePort] = field(default_factory=list)
    external_ips: list[str] = field(default_factory=list)

    def cluster_ip_set(self) -> bool:
        """True when the service has a real cluster IP (not empty, not headless)."""
        return self.cluster_ip not in ("", "None")

    def has_cluster_ip(self) -> bool:
        return self.type in _SERVICE_TYPES_WITH_CLUSTER_IP

    def has_node_port(self) -> bool:
        return self.type in _SERVICE_TYPES_WITH_NODE_PORT


@dataclass
class EndpointAddress:
    ip: str = ""


@dataclass
class EndpointPort:
    name: str = ""
    port: int = 0
    protocol: Protocol = Protocol.TCP


@dataclass
class EndpointSubset:
    addresses: list[EndpointAddress] = field(default_factory=list)
    ports: list[EndpointPort] = field(default_factory=list)


@dataclass
class Endpoints(_Resource):
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    subsets: list[EndpointSubset] = field(default_factory=list)


@dataclass
class Namespace(_Resource):
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    phase: str = "Active"


@dataclass
class Node(_Resource):
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    phase: str = ""


@dataclass
class NetworkPolicy(_Resource):
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    policy_types: list[str] = field(default_factory=list)