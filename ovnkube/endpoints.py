"""Keeps the OVN load balancers in step with service endpoints."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Sequence

from .kube import Kube
from .loadbalancer import LoadBalancers
from .objects import Endpoints, Node, Protocol, Service, ServicePort
from .ovn_common import CommandError

logger = logging.getLogger(__name__)

_PROTOCOLS = (Protocol.TCP, Protocol.UDP)


@dataclass
class LbEndpoints:
    """Backend IPs of one named endpoint port and the port they listen on."""

    ips: list[str] = field(default_factory=list)
    port: int = 0


def lb_endpoints(endpoints: Endpoints) -> dict[Protocol, dict[str, LbEndpoints]]:
    """Group the backends of an Endpoints object by protocol and port name.

    Only TCP and UDP ports are collected; the result always holds both keys.
    """
    tables: dict[Protocol, dict[str, LbEndpoints]] = {protocol: {} for protocol in _PROTOCOLS}
    for subset in endpoints.subsets:
        for address in subset.addresses:
            for port in subset.ports:
                table = tables.get(Protocol(port.protocol))
                if table is None:
                    continue
                entry = table.get(port.name)
                ips = entry.ips if entry is not None else []
                table[port.name] = LbEndpoints(ips=[*ips, address.ip], port=port.port)
    logger.debug("Tcp table: %s\nUdp table: %s", tables[Protocol.TCP], tables[Protocol.UDP])
    return tables


def _matching_ports(service: Service, protocol: Protocol, name: str) -> list[ServicePort]:
    return [p for p in service.ports if p.protocol == protocol and p.name == name]


@dataclass
class EndpointsSync:
    """Turns endpoint events into load balancer VIPs for their services."""

    kube: Kube
    load_balancers: LoadBalancers
    nodeport_enable: bool = False
    poll_interval: float = 0.5
    poll_timeout: float = 300.0
    sleep: Callable[[float], None] = time.sleep

    def _service_for(self, endpoints: Endpoints) -> Service | None:
        try:
            return self.kube.get_service(endpoints.namespace, endpoints.name)
        except KeyError:
            # Endpoints without a service are normal, e.g. while a service is deleted.
            logger.debug(
                "no service found for endpoint %s in namespace %s",
                endpoints.name, endpoints.namespace,
            )
            return None

    def add_endpoints(self, endpoints: Endpoints) -> None:
        """Create cluster, node-port and external VIPs for the endpoints' service."""
        service = self._service_for(endpoints)
        if service is None:
            return
        if not service.cluster_ip_set():
            logger.debug(
                "Skipping service %s due to clusterIP = %r", service.name, service.cluster_ip
            )
            return
        for protocol, table in lb_endpoints(endpoints).items():
            for port_name, backends in table.items():
                for service_port in _matching_ports(service, protocol, port_name):
                    self._add_service_port(service, service_port, backends)

    def _add_service_port(
        self, service: Service, service_port: ServicePort, backends: LbEndpoints
    ) -> None:
        ips, target_port = backends.ips, backends.port
        protocol = str(service_port.protocol)
        if service.has_node_port() and self.nodeport_enable:
            logger.debug(
                "Creating Gateways IP for NodePort: %d, %s", service_port.node_port, ips
            )
            try:
                self.load_balancers.create_gateways_vip(
                    protocol, service_port.node_port, target_port, ips
                )
            except CommandError as exc:
                logger.error(
                    "Error in creating Node Port for svc %s, node port: %d - %s",
                    service.name, service_port.node_port, exc,
                )
                return
        if not service.has_cluster_ip():
            return
        try:
            lb = self.load_balancers.cluster_load_balancer(protocol)
        except (CommandError, LookupError) as exc:
            logger.error("Failed to get loadbalancer for %s (%s)", protocol, exc)
            return
        try:
            self.load_balancers.create_vip(
                lb, service.cluster_ip, service_port.port, ips, target_port
            )
        except CommandError as exc:
            logger.error(
                "Error in creating Cluster IP for svc %s, target port: %d - %s",
                service.name, target_port, exc,
            )
            return
        self.handle_external_ips(service, service_port, ips, target_port)

    def handle_node_port_lb(self, node: Node) -> None:
        """Once a new node's gateway is ready, add every node-port VIP to it."""
        gateway = "GR_" + node.name
        ready = self._wait_for_gateway(gateway)
        if ready is None:
            logger.error("timed out waiting for load balancer to be ready on node %r", node.name)
            return
        lb_tcp, lb_udp, physical_ip = ready
        gateway_lbs = {Protocol.TCP: lb_tcp, Protocol.UDP: lb_udp}

        for namespace in self.kube.get_namespaces():
            for endpoints in self.kube.get_endpoints(namespace.name):
                try:
                    service = self.kube.get_service(endpoints.namespace, endpoints.name)
                except KeyError:
                    continue
                if not service.has_node_port():
                    continue
                for protocol, table in lb_endpoints(endpoints).items():
                    lb = gateway_lbs[protocol]
                    for port_name, backends in table.items():
                        for service_port in _matching_ports(service, protocol, port_name):
                            try:
                                self.load_balancers.create_vip(
                                    lb, physical_ip, service_port.node_port,
                                    backends.ips, backends.port,
                                )
                            except CommandError as exc:
                                logger.error(
                                    "failed to create VIP in load balancer %s - %s", lb, exc
                                )

    def _gateway_state(self, gateway: str) -> tuple[str, str, str] | None:
        def lookup(fn: Callable[..., str], *args: str) -> str:
            try:
                return fn(*args)
            except CommandError:
                return ""

        lb_tcp = lookup(self.load_balancers.gateway_load_balancer, gateway, "TCP")
        if not lb_tcp:
            return None
        lb_udp = lookup(self.load_balancers.gateway_load_balancer, gateway, "UDP")
        if not lb_udp:
            return None
        physical_ip = lookup(self.load_balancers.gateway_physical_ip, gateway)
        if not physical_ip:
            return None
        return lb_tcp, lb_udp, physical_ip

    def _wait_for_gateway(self, gateway: str) -> tuple[str, str, str] | None:
        deadline = time.monotonic() + self.poll_timeout
        while True:
            self.sleep(self.poll_interval)
            state = self._gateway_state(gateway)
            if state is not None:
                return state
            if time.monotonic() >= deadline:
                return None

    def handle_external_ips(
        self,
        service: Service,
        service_port: ServicePort,
        ips: Sequence[str],
        target_port: int,
    ) -> None:
        """Add a VIP for each external IP on the default gateway's load balancer."""
        logger.debug("handling external IPs for svc %s", service.name)
        for external_ip in service.external_ips:
            lb = self.load_balancers.default_gateway_load_balancer(str(service_port.protocol))
            if not lb:
                logger.warning(
                    "No default gateway found for protocol %s\n\tNote: 'nodeport' flag "
                    "needs to be enabled for default gateway",
                    service_port.protocol,
                )
                continue
            try:
                self.load_balancers.create_vip(
                    lb, external_ip, service_port.port, ips, target_port
                )
            except CommandError:
                logger.error(
                    "Error in creating external IP for service: %s, externalIP: %s",
                    service.name, external_ip,
                )

    def delete_endpoints(self, endpoints: Endpoints) -> None:
        """Remove the cluster VIPs of the endpoints' service."""
        service = self._service_for(endpoints)
        if service is None or not service.cluster_ip_set():
            return
        for service_port in service.ports:
            protocol = str(service_port.protocol)
            try:
                lb = self.load_balancers.cluster_load_balancer(protocol)
            except (CommandError, LookupError) as exc:
                logger.error("Failed to get load-balancer for %s (%s)", protocol, exc)
                continue
            key = f'"{service.cluster_ip}:{service_port.port}"'
            try:
                self.load_balancers.nbctl("remove", "load_balancer", lb, "vips", key)
            except CommandError as exc:
                logger.error(
                    "Error in deleting endpoints for lb %s, stderr: %r (%s)",
                    lb, exc.stderr, exc,
                )