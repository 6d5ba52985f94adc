"""Load balancers and gateway routers in the OVN northbound database."""

from __future__ import annotations

import json
import logging
from typing import Callable, Optional, Sequence

from .ovn_common import CommandError, Nbctl

logger = logging.getLogger(__name__)

_CLUSTER_LB_IDS = {
    "TCP": "external_ids:k8s-cluster-lb-tcp=yes",
    "UDP": "external_ids:k8s-cluster-lb-udp=yes",
}


def _vip_key(service_ip: str, port: int) -> str:
    return f'"{service_ip}:{port}"'


class LoadBalancers:
    """Finds load balancers and manages their virtual IPs.

    ``default_gateway_router`` returns the name of the default gateway router;
    it may raise ``CommandError`` or ``LookupError`` when there is none.
    """

    def __init__(
        self,
        nbctl: Nbctl,
        default_gateway_router: Optional[Callable[[], str]] = None,
    ) -> None:
        self.nbctl = nbctl
        self.default_gateway_router = default_gateway_router
        self.cluster_cache: dict[str, str] = {}
        self.gateway_cache: dict[str, str] = {}

    def cluster_load_balancer(self, protocol: str) -> str:
        """UUID of the cluster's east-west load balancer for a protocol."""
        key = str(protocol)
        cached = self.cluster_cache.get(key)
        if cached is not None:
            return cached
        out = ""
        selector = _CLUSTER_LB_IDS.get(key)
        if selector is not None:
            out = self.nbctl(
                "--data=bare", "--no-heading", "--columns=_uuid", "find", "load_balancer",
                selector,
            )
        if not out:
            raise LookupError("no load-balancer found in the database")
        self.cluster_cache[key] = out
        return out

    def default_gateway_load_balancer(self, protocol: str) -> str:
        """UUID of the default gateway's load balancer for a protocol, or ""."""
        key = str(protocol)
        cached = self.gateway_cache.get(key)
        if cached is not None:
            return cached
        if self.default_gateway_router is None:
            logger.error("no default gateway router configured")
            return ""
        try:
            gateway = self.default_gateway_router()
        except (CommandError, LookupError) as exc:
            logger.error("%s", exc)
            return ""
        try:
            lb = self.nbctl(
                "--data=bare", "--no-heading", "--columns=_uuid", "find", "load_balancer",
                f"external_ids:{key}_lb_gateway_router={gateway}",
            )
        except CommandError:
            lb = ""
        if lb:
            self.gateway_cache[key] = lb
        return lb

    def vips(self, load_balancer: str) -> dict:
        """The VIP-to-backends map of a load balancer."""
        out = self.nbctl(
            "--data=bare", "--no-heading", "get", "load_balancer", load_balancer, "vips"
        )
        if not out:
            return {}
        return json.loads(out.replace("=", ":"))

    def delete_vip(self, load_balancer: str, vip: str) -> None:
        """Remove one VIP from a load balancer; failures are logged."""
        try:
            self.nbctl(
                "--if-exists", "remove", "load_balancer", load_balancer, "vips", f'"{vip}"'
            )
        except CommandError as exc:
            logger.error(
                "Error in deleting load balancer vip %s for %s stdout: %r, stderr: %r, error: %s",
                vip, load_balancer, exc.stdout, exc.stderr, exc,
            )

    def create_vip(
        self,
        load_balancer: str,
        service_ip: str,
        port: int,
        ips: Sequence[str],
        target_port: int,
    ) -> None:
        """Point ``service_ip:port`` at the given backends; no backends removes the VIP."""
        logger.debug(
            "Creating lb with %s, %s, %d, %s, %d",
            load_balancer, service_ip, port, list(ips), target_port,
        )
        if not ips:
            self.nbctl("remove", "load_balancer", load_balancer, "vips", _vip_key(service_ip, port))
            return
        backends = ",".join(f"{ip}:{target_port}" for ip in ips)
        target = f'vips:{_vip_key(service_ip, port)}="{backends}"'
        try:
            self.nbctl("set", "load_balancer", load_balancer, target)
        except CommandError as exc:
            logger.error(
                "Error in creating load balancer: %s stdout: %r, stderr: %r, error: %s",
                load_balancer, exc.stdout, exc.stderr, exc,
            )
            raise

    def gateways(self) -> list[str]:
        """Names of all gateway routers."""
        out = self.nbctl(
            "--data=bare", "--no-heading", "--columns=name", "find", "logical_router",
            "options:chassis!=null",
        )
        return out.split()

    def gateway_physical_ip(self, gateway: str) -> str:
        return self.nbctl("get", "logical_router", gateway, "external_ids:physical_ip")

    def gateway_load_balancer(self, gateway: str, protocol: str) -> str:
        return self.nbctl(
            "--data=bare", "--no-heading", "--columns=_uuid", "find", "load_balancer",
            f"external_ids:{protocol}_lb_gateway_router={gateway}",
        )

    def create_gateways_vip(
        self, protocol: str, port: int, target_port: int, ips: Sequence[str]
    ) -> None:
        """Add ``physical_ip:port`` VIPs on every gateway's north-south load balancer."""
        logger.debug(
            "Creating Gateway VIP - %s, %d, %d, %s", protocol, port, target_port, list(ips)
        )
        for gateway in self.gateways():
            try:
                physical_ip = self.gateway_physical_ip(gateway)
            except CommandError as exc:
                logger.error("physical gateway %s does not have physical ip (%s)", gateway, exc)
                continue
            try:
                lb = self.gateway_load_balancer(gateway, str(protocol))
            except CommandError as exc:
                logger.error("physical gateway %s does not have load_balancer (%s)", gateway, exc)
                continue
            if not lb:
                continue
            try:
                self.create_vip(lb, physical_ip, port, ips, target_port)
            except CommandError as exc:
                logger.error("Failed to create VIP in load balancer %s - %s", lb, exc)