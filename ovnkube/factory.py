"""Shared watches over cluster resources with per-handler filtering.

One informer per resource kind keeps the last known state of every object of
that kind and fans each add, update and delete event out to the handlers
registered for it. A handler may be limited to one namespace and to objects
whose labels match a selector.
"""

from __future__ import annotations

import copy
import enum
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from .objects import (
    Endpoints,
    LabelSelector,
    Namespace,
    NetworkPolicy,
    Node,
    ObjectMeta,
    Pod,
    Service,
)

logger = logging.getLogger(__name__)

ProcessExisting = Callable[[list], None]


class ResourceKind(enum.Enum):
    """The kinds of resource the factory watches."""

    POD = "Pod"
    SERVICE = "Service"
    ENDPOINTS = "Endpoints"
    POLICY = "NetworkPolicy"
    NAMESPACE = "Namespace"
    NODE = "Node"

    @property
    def object_type(self) -> type:
        return _OBJECT_TYPES[self]

    def __str__(self) -> str:
        return self.value


_OBJECT_TYPES: dict[ResourceKind, type] = {
    ResourceKind.POD: Pod,
    ResourceKind.SERVICE: Service,
    ResourceKind.ENDPOINTS: Endpoints,
    ResourceKind.POLICY: NetworkPolicy,
    ResourceKind.NAMESPACE: Namespace,
    ResourceKind.NODE: Node,
}


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """A deleted object whose final state was missed; ``obj`` is the last state known."""

    key: str
    obj: Any


def get_object_meta(kind: ResourceKind, obj: Any) -> ObjectMeta:
    """Return the metadata of an object of the given kind."""
    if isinstance(kind, ResourceKind) and type(obj) is kind.object_type:
        return obj.metadata
    raise TypeError(f"cannot get ObjectMeta from type {type(obj).__name__} as {kind}")


@dataclass
class EventHandler:
    """Callbacks for add, update and delete events; missing ones do nothing."""

    add_func: Optional[Callable[[Any], None]] = None
    update_func: Optional[Callable[[Any, Any], None]] = None
    delete_func: Optional[Callable[[Any], None]] = None

    def on_add(self, obj: Any) -> None:
        if self.add_func is not None:
            self.add_func(obj)

    def on_update(self, old: Any, new: Any) -> None:
        if self.update_func is not None:
            self.update_func(old, new)

    def on_delete(self, obj: Any) -> None:
        if self.delete_func is not None:
            self.delete_func(obj)


@dataclass(eq=False)
class Handler:
    """A registered handler; events reach ``funcs`` only for objects passing the filter."""

    id: int
    kind: ResourceKind
    funcs: Any
    filter_func: Callable[[Any], bool]
    _alive: bool = field(default=True, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def alive(self) -> bool:
        with self._lock:
            return self._alive

    def _kill(self) -> bool:
        """Mark the handler dead; False if it already was."""
        with self._lock:
            if not self._alive:
                return False
            self._alive = False
            return True

    def on_add(self, obj: Any) -> None:
        if self.filter_func(obj):
            self.funcs.on_add(obj)

    def on_update(self, old: Any, new: Any) -> None:
        new_passes = self.filter_func(new)
        old_passes = self.filter_func(old)
        if new_passes and old_passes:
            self.funcs.on_update(old, new)
        elif new_passes:
            self.funcs.on_add(new)
        elif old_passes:
            self.funcs.on_delete(old)

    def on_delete(self, obj: Any) -> None:
        if self.filter_func(obj):
            self.funcs.on_delete(obj)


class Informer:
    """Holds the known objects of one kind and delivers their events to handlers."""

    def __init__(self, kind: ResourceKind, objects: Iterable[Any] = ()) -> None:
        self.kind = kind
        self._lock = threading.RLock()
        self._store: dict[tuple[str, str], Any] = {}
        self._handlers: dict[int, Handler] = {}
        for obj in objects:
            self._check(obj)
            self._store[self._key(obj)] = copy.deepcopy(obj)

    def _check(self, obj: Any) -> None:
        if type(obj) is not self.kind.object_type:
            raise TypeError(
                f"object type {type(obj).__name__} did not match expected "
                f"{self.kind.object_type.__name__}"
            )

    @staticmethod
    def _key(obj: Any) -> tuple[str, str]:
        return obj.metadata.namespace, obj.metadata.name

    def _alive_handlers(self) -> list[Handler]:
        return [handler for handler in self._handlers.values() if handler.alive]

    def list(self) -> list:
        """The objects currently known, in no particular order."""
        with self._lock:
            return list(self._store.values())

    def _upsert(self, obj: Any) -> None:
        self._check(obj)
        obj = copy.deepcopy(obj)
        with self._lock:
            key = self._key(obj)
            old = self._store.get(key)
            self._store[key] = obj
            for handler in self._alive_handlers():
                if old is None:
                    logger.debug("running %s ADD event for handler %d", self.kind, handler.id)
                    handler.on_add(obj)
                else:
                    logger.debug("running %s UPDATE event for handler %d", self.kind, handler.id)
                    handler.on_update(old, obj)

    def add(self, obj: Any) -> None:
        """Record an added object; an object already known is treated as updated."""
        self._upsert(obj)

    def update(self, obj: Any) -> None:
        """Record a changed object; an object not yet known is treated as added."""
        self._upsert(obj)

    def delete(self, obj: Any) -> None:
        """Forget an object, which may arrive wrapped in a DeletedFinalStateUnknown."""
        if isinstance(obj, DeletedFinalStateUnknown):
            obj = obj.obj
        self._check(obj)
        obj = copy.deepcopy(obj)
        with self._lock:
            self._store.pop(self._key(obj), None)
            for handler in self._alive_handlers():
                logger.debug("running %s DELETE event for handler %d", self.kind, handler.id)
                handler.on_delete(obj)

    def _register(self, handler: Handler, existing: Iterable[Any]) -> None:
        with self._lock:
            self._handlers[handler.id] = handler
            logger.debug("added %s event handler %d", self.kind, handler.id)
            # The shared informer delivered these long ago; replay them for the newcomer.
            for obj in existing:
                handler.on_add(obj)

    def _unregister(self, handler: Handler) -> None:
        with self._lock:
            if self._handlers.pop(handler.id, None) is not None:
                logger.debug("removed %s event handler %d", self.kind, handler.id)
            else:
                logger.warning(
                    "tried to remove unknown object type %s event handler %d", self.kind, handler.id
                )

    def _remove_all(self) -> None:
        with self._lock:
            for handler in list(self._handlers.values()):
                if handler._kill():
                    del self._handlers[handler.id]


class WatchFactory:
    """Creates the shared informers and manages the handlers attached to them.

    With a client, each informer starts out holding the objects the client lists.
    """

    def __init__(self, client: Any = None) -> None:
        self._ids = itertools.count(1)
        self._ids_lock = threading.Lock()
        self._stopped = threading.Event()
        self.informers: dict[ResourceKind, Informer] = {
            kind: Informer(
                kind, client.list_objects(kind.object_type) if client is not None else ()
            )
            for kind in ResourceKind
        }

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def shutdown(self) -> None:
        """Stop watching and drop every handler."""
        self._stopped.set()
        for informer in self.informers.values():
            informer._remove_all()

    def _next_id(self) -> int:
        with self._ids_lock:
            return next(self._ids)

    def add_handler(
        self,
        kind: ResourceKind,
        handler_funcs: Any,
        process_existing: Optional[ProcessExisting] = None,
        namespace: str = "",
        label_selector: Optional[LabelSelector] = None,
    ) -> Handler:
        """Register callbacks for one kind, optionally limited by namespace and labels.

        ``process_existing`` receives the matching objects already known, before
        the callbacks get an add event for each of them.
        """
        informer = self.informers.get(kind)
        if informer is None:
            raise ValueError(f"unknown object type {kind}")

        def filter_func(obj: Any) -> bool:
            if not namespace and label_selector is None:
                return True
            try:
                meta = get_object_meta(kind, obj)
            except TypeError as exc:
                logger.error("watch handler filter error: %s", exc)
                return False
            if namespace and meta.namespace != namespace:
                return False
            if label_selector is not None and not label_selector.matches(meta.labels):
                return False
            return True

        existing = informer.list()
        if process_existing is not None:
            process_existing([obj for obj in existing if filter_func(obj)])

        handler = Handler(
            id=self._next_id(), kind=kind, funcs=handler_funcs, filter_func=filter_func
        )
        informer._register(handler, existing)
        return handler

    def remove_handler(self, kind: ResourceKind, handler: Handler) -> None:
        """Unregister a handler; removing one twice is an error."""
        informer = self.informers.get(kind)
        if informer is None:
            raise ValueError(f"tried to remove unknown object type {kind} event handler")
        if not handler._kill():
            raise ValueError(
                f"tried to remove already removed object type {kind} event handler {handler.id}"
            )
        logger.debug("sending %s event handler %d for removal", kind, handler.id)
        informer._unregister(handler)

    def add_pod_handler(self, handler_funcs: Any, process_existing: Optional[ProcessExisting] = None) -> Handler:
        return self.add_handler(ResourceKind.POD, handler_funcs, process_existing)

    def add_filtered_pod_handler(
        self,
        namespace: str,
        label_selector: Optional[LabelSelector],
        handler_funcs: Any,
        process_existing: Optional[ProcessExisting] = None,
    ) -> Handler:
        return self.add_handler(
            ResourceKind.POD, handler_funcs, process_existing, namespace, label_selector
        )

    def remove_pod_handler(self, handler: Handler) -> None:
        self.remove_handler(ResourceKind.POD, handler)

    def add_service_handler(self, handler_funcs: Any, process_existing: Optional[ProcessExisting] = None) -> Handler:
        return self.add_handler(ResourceKind.SERVICE, handler_funcs, process_existing)

    def remove_service_handler(self, handler: Handler) -> None:
        self.remove_handler(ResourceKind.SERVICE, handler)

    def add_endpoints_handler(self, handler_funcs: Any, process_existing: Optional[ProcessExisting] = None) -> Handler:
        return self.add_handler(ResourceKind.ENDPOINTS, handler_funcs, process_existing)

    def add_filtered_endpoints_handler(
        self,
        namespace: str,
        handler_funcs: Any,
        process_existing: Optional[ProcessExisting] = None,
    ) -> Handler:
        return self.add_handler(ResourceKind.ENDPOINTS, handler_funcs, process_existing, namespace)

    def remove_endpoints_handler(self, handler: Handler) -> None:
        self.remove_handler(ResourceKind.ENDPOINTS, handler)

    def add_policy_handler(self, handler_funcs: Any, process_existing: Optional[ProcessExisting] = None) -> Handler:
        return self.add_handler(ResourceKind.POLICY, handler_funcs, process_existing)

    def remove_policy_handler(self, handler: Handler) -> None:
        self.remove_handler(ResourceKind.POLICY, handler)

    def add_namespace_handler(self, handler_funcs: Any, process_existing: Optional[ProcessExisting] = None) -> Handler:
        return self.add_handler(ResourceKind.NAMESPACE, handler_funcs, process_existing)

    def add_filtered_namespace_handler(
        self,
        namespace: str,
        label_selector: Optional[LabelSelector],
        handler_funcs: Any,
        process_existing: Optional[ProcessExisting] = None,
    ) -> Handler:
        return self.add_handler(
            ResourceKind.NAMESPACE, handler_funcs, process_existing, namespace, label_selector
        )

    def remove_namespace_handler(self, handler: Handler) -> None:
        self.remove_handler(ResourceKind.NAMESPACE, handler)

    def add_node_handler(self, handler_funcs: Any, process_existing: Optional[ProcessExisting] = None) -> Handler:
        return self.add_handler(ResourceKind.NODE, handler_funcs, process_existing)

    def remove_node_handler(self, handler: Handler) -> None:
        self.remove_handler(ResourceKind.NODE, handler)