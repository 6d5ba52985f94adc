# ovnkube

Building blocks for keeping an OVN logical network in step with Kubernetes
resources: shared resource watches, per-service health checks, load-balancer
VIPs for services, and one address set per namespace.

The package has no runtime dependencies.

## Modules

- `ovnkube.objects` has the data classes for the resources involved:
  `Pod`, `Service`, `ServicePort`, `Endpoints` (with `EndpointSubset`,
  `EndpointAddress` and `EndpointPort`), `Namespace`, `Node` and
  `NetworkPolicy`. Each carries an `ObjectMeta` as `metadata`. It also has
  the `Protocol` enum (`TCP`, `UDP`, `SCTP`) and `LabelSelector`.
  `LabelSelector.matches(labels)` supports `match_labels` and the `In`,
  `NotIn`, `Exists` and `DoesNotExist` expressions. `Service` answers
  `cluster_ip_set()`, `has_cluster_ip()` and `has_node_port()`.
- `ovnkube.kube` has two classes:
  - `KubeClient` is a thread-safe in-memory store of resources. It offers
    `create`, `update`, `delete`, `get`, `list_objects` and a `merge_patch`
    limited to labels and annotations. Objects are copied in and out, and
    nodes and namespaces are cluster-scoped.
  - `Kube` reads resources from a `KubeClient` and sets annotations on pods
    and nodes.
- `ovnkube.healthcheck` has `HealthCheckServer`, which opens one HTTP
  listener per service. A service answers `200` when it has local endpoints
  and `503` when it has none. The JSON body is
  `{ "service": { "namespace": ..., "name": ... }, "localEndpoints": N }`.
  The listener and HTTP server factory can be swapped out for testing.
- `ovnkube.factory` has `WatchFactory`, which keeps one `Informer` per
  `ResourceKind` and fans its add, update and delete events out to
  registered handlers.
  - A handler can be limited to one namespace and to a label selector.
  - When an update moves an object into a handler's filter, the handler sees
    an add. When it moves the object out, the handler sees a delete.
  - New handlers get an add event for every object already known. A
    `process_existing` callback first receives the matching objects as a
    list.
  - A removed handler receives no more events. Removing it a second time
    raises `ValueError`.
- `ovnkube.ovn_common` has the address-set and port-group helpers and
  `CommandError`. It also has `hash_for_ovn`, which turns a name into
  `"a"` followed by its 64-bit FNV-1a hash in decimal, and
  `ip_from_ovn_annotation`.
- `ovnkube.loadbalancer` has `LoadBalancers`. It finds and caches the
  cluster and default-gateway load balancers, reads, creates and deletes
  VIPs, and adds node-port VIPs on every gateway router.
- `ovnkube.endpoints` has `EndpointsSync` and `lb_endpoints`. Together they
  turn endpoints into cluster-IP, node-port and external-IP VIPs, remove
  cluster VIPs when endpoints go away, and fill in the node-port VIPs of a
  newly added node once its gateway is ready.
- `ovnkube.controller` has `Controller`, which puts the above together.
  - `run()` checks whether port groups are supported, then watches
    endpoints, namespaces and nodes.
  - It keeps one address set per namespace holding the IPs of its pods.
    `sync_namespaces` removes the address sets of namespaces that no longer
    exist.

## Talking to the northbound database

Everything that changes the OVN database takes an `nbctl` callable. You
supply it. It is called with the arguments of one northbound command, such
as `nbctl("set", "address_set", name, "addresses=10.0.0.5")`. It must return
the command's stripped standard output and raise
`ovnkube.ovn_common.CommandError` on failure.

```python
from ovnkube.ovn_common import CommandError, create_address_set, hashed_address_set

calls = []

def nbctl(*args):
    calls.append(args)
    return ""

create_address_set(nbctl, "default", hashed_address_set("default"), ["10.0.0.5"])
```

## Example: watching resources

```python
from ovnkube.factory import EventHandler, ResourceKind, WatchFactory
from ovnkube.kube import KubeClient
from ovnkube.objects import LabelSelector, ObjectMeta, Pod

factory = WatchFactory(KubeClient())
handler = factory.add_filtered_pod_handler(
    "default",
    LabelSelector(match_labels={"app": "web"}),
    EventHandler(add_func=lambda pod: print("added", pod.name)),
    None,
)

pod = Pod(metadata=ObjectMeta(name="web-1", namespace="default", labels={"app": "web"}))
factory.informers[ResourceKind.POD].add(pod)   # prints "added web-1"

factory.remove_pod_handler(handler)
factory.shutdown()
```

Events are fed to an informer with `Informer.add`, `Informer.update` and
`Informer.delete`. `delete` also accepts a `DeletedFinalStateUnknown`
wrapping the last known state.

## Example: health checks

```python
from ovnkube.healthcheck import HealthCheckServer, NamespacedName

server = HealthCheckServer("node-a")
web = NamespacedName("default", "web")
server.sync_services({web: 30080})
server.sync_endpoints({web: 2})
```

`sync_services` closes the listeners of services that are no longer listed
or whose port changed. It opens listeners for new services and leaves the
rest alone. `sync_endpoints` sets each listed service's local endpoint count
and resets every service missing from the mapping to zero.

## What the package does not do

- There is no command-line program and no long-running daemon. You create
  the objects and drive them yourself.
- It does not connect to a Kubernetes API server. Resources live in the
  in-memory `KubeClient`, and events reach a `WatchFactory` only when you
  call its informers.
- It does not run any OVN or system tools. The `nbctl` callable you pass in
  decides how commands are carried out.
- `Controller` does not create logical switch ports for pods, does not
  translate services or network policies into ACLs or port groups, and does
  not set up management ports or gateways.

## Installing

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```