"""The controller that reacts to watched resources by updating the OVN database."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Iterable, Optional

from .endpoints import EndpointsSync
from .factory import EventHandler, WatchFactory
from .kube import Kube
from .loadbalancer import LoadBalancers
from .objects import Endpoints, Namespace, Node
from .ovn_common import (
    CommandError,
    Nbctl,
    create_address_set,
    delete_address_set,
    hashed_address_set,
    iter_address_set_names,
    set_address_set,
)

logger = logging.getLogger(__name__)

_NAMESPACE_WAIT_ATTEMPTS = 100
_NAMESPACE_WAIT_INTERVAL = 0.1


class Controller:
    """Watches cluster resources and keeps the logical network in step with them.

    ``nbctl`` runs one northbound database command (see ``ovn_common``).
    ``default_gateway_router`` returns the name of the default gateway router.
    """

    def __init__(
        self,
        kube: Kube,
        watch_factory: WatchFactory,
        nbctl: Nbctl,
        *,
        default_gateway_router: Optional[Callable[[], str]] = None,
        nodeport_enable: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.kube = kube
        self.watch_factory = watch_factory
        self.nbctl = nbctl
        self.nodeport_enable = nodeport_enable
        self.sleep = sleep
        self.load_balancers = LoadBalancers(nbctl, default_gateway_router)
        self.endpoints_sync = EndpointsSync(
            kube, self.load_balancers, nodeport_enable=nodeport_enable, sleep=sleep
        )

        # Logical switch information, guarded by the switch lock.
        self.gateway_cache: dict[str, str] = {}
        self.logical_switch_cache: dict[str, bool] = {}
        self._switch_lock = threading.Lock()

        # For each namespace: the pod IPs in its address set, its policies and a lock.
        self.namespace_address_set: dict[str, set[str]] = {}
        self.namespace_policies: dict[str, dict[str, Any]] = {}
        self._namespace_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

        self.port_group_support = False

    def run(self) -> None:
        """Detect port group support and start the watches."""
        try:
            self.nbctl("--columns=_uuid", "list", "port_group")
        except CommandError:
            self.port_group_support = False
        else:
            self.port_group_support = True
        for start in (self.watch_endpoints, self.watch_namespaces, self.watch_nodes):
            start()

    # Watches

    def watch_endpoints(self):
        """Keep load balancer VIPs in step with endpoint events."""

        def on_update(old: Endpoints, new: Endpoints) -> None:
            if new.subsets == old.subsets:
                return
            if not new.subsets:
                self.endpoints_sync.delete_endpoints(new)
            else:
                self.endpoints_sync.add_endpoints(new)

        return self.watch_factory.add_endpoints_handler(
            EventHandler(
                add_func=self.endpoints_sync.add_endpoints,
                update_func=on_update,
                delete_func=self.endpoints_sync.delete_endpoints,
            ),
            None,
        )

    def watch_namespaces(self):
        """Keep one address set per namespace."""
        return self.watch_factory.add_namespace_handler(
            EventHandler(
                add_func=self.add_namespace,
                # Only the namespace's name is used, and that never changes.
                update_func=lambda old, new: None,
                delete_func=self.delete_namespace,
            ),
            self.sync_namespaces,
        )

    def watch_nodes(self):
        """Add node-port VIPs for new nodes and forget deleted ones."""

        def on_add(node: Node) -> None:
            if self.nodeport_enable:
                self.endpoints_sync.handle_node_port_lb(node)

        def on_delete(node: Node) -> None:
            logger.debug(
                "Delete event for Node %r. Removing the node from various caches", node.name
            )
            with self._switch_lock:
                self.gateway_cache.pop(node.name, None)
                self.logical_switch_cache.pop(node.name, None)

        return self.watch_factory.add_node_handler(
            EventHandler(add_func=on_add, update_func=lambda old, new: None, delete_func=on_delete),
            None,
        )

    # Namespaces

    def sync_namespaces(self, namespaces: Iterable[Any]) -> None:
        """Delete the address sets of namespaces that no longer exist."""
        expected: set[str] = set()
        for obj in namespaces:
            if not isinstance(obj, Namespace):
                logger.error("Spurious object in syncNamespaces: %r", obj)
                continue
            expected.add(obj.name)
        try:
            for name, namespace, suffix in list(iter_address_set_names(self.nbctl)):
                if not suffix and namespace not in expected:
                    delete_address_set(self.nbctl, hashed_address_set(name))
        except CommandError as exc:
            logger.error("Error in syncing namespaces: %s", exc)

    def wait_for_namespace_event(self, namespace: str) -> None:
        """Wait up to ten seconds for a namespace to be added; raise TimeoutError otherwise."""
        for _ in range(_NAMESPACE_WAIT_ATTEMPTS):
            if namespace in self.namespace_policies:
                return
            self.sleep(_NAMESPACE_WAIT_INTERVAL)
        raise TimeoutError("timeout waiting for namespace event")

    def _namespace_lock(self, namespace: str, create: bool = False) -> Optional[threading.Lock]:
        with self._locks_guard:
            lock = self._namespace_locks.get(namespace)
            if lock is None and create:
                lock = self._namespace_locks[namespace] = threading.Lock()
            return lock

    def add_pod_to_namespace_address_set(self, namespace: str, address: str) -> None:
        """Add a pod IP to its namespace's address set."""
        if namespace not in self.namespace_policies:
            return
        lock = self._namespace_lock(namespace)
        if lock is None:
            return
        with lock:
            addresses = self.namespace_address_set.get(namespace)
            if addresses is None or address in addresses:
                return
            addresses.add(address)
            set_address_set(self.nbctl, hashed_address_set(namespace), sorted(addresses))

    def delete_pod_from_namespace_address_set(self, namespace: str, address: str) -> None:
        """Remove a pod IP from its namespace's address set."""
        if not address or namespace not in self.namespace_policies:
            return
        lock = self._namespace_lock(namespace)
        if lock is None:
            return
        with lock:
            addresses = self.namespace_address_set.get(namespace)
            if addresses is None or address not in addresses:
                return
            addresses.discard(address)
            set_address_set(self.nbctl, hashed_address_set(namespace), sorted(addresses))

    def add_namespace(self, namespace: Namespace) -> None:
        """Create the namespace's address set holding the IPs of its pods."""
        name = namespace.name
        logger.debug("Adding namespace: %s", name)
        lock = self._namespace_lock(name, create=True)
        with lock:
            addresses: set[str] = set()
            self.namespace_address_set[name] = addresses
            try:
                pods = self.kube.get_pods(name)
            except (KeyError, ValueError) as exc:
                logger.error("Failed to get all the pods (%s)", exc)
            else:
                addresses.update(pod.pod_ip for pod in pods if pod.pod_ip)
            create_address_set(self.nbctl, name, hashed_address_set(name), sorted(addresses))
            self.namespace_policies[name] = {}

    def delete_namespace(self, namespace: Namespace) -> None:
        """Destroy the namespace's address set and forget the namespace."""
        name = namespace.name
        logger.debug("Deleting namespace: %s", name)
        if name not in self.namespace_policies:
            return
        lock = self._namespace_lock(name)
        if lock is None:
            return
        with lock:
            delete_address_set(self.nbctl, hashed_address_set(name))
            self.namespace_policies.pop(name, None)
            self.namespace_address_set.pop(name, None)
        with self._locks_guard:
            self._namespace_locks.pop(name, None)