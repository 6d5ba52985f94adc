"""Access to Kubernetes resources through a client store."""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass
from typing import Any, Mapping, TypeVar

from .objects import (
    Endpoints,
    LabelSelector,
    Namespace,
    Node,
    Pod,
    Service,
)

logger = logging.getLogger(__name__)

_CLUSTER_SCOPED = (Node, Namespace)
_PATCHABLE_METADATA = ("annotations", "labels")

T = TypeVar("T")


class KubeClient:
    """A thread-safe store of resources that behaves like the API server.

    Objects are copied on the way in and on the way out, so callers never
    share state with the store. Nodes and namespaces are cluster-scoped.
    """

    def __init__(self, *objects: Any) -> None:
        self._lock = threading.Lock()
        self._objects: dict[tuple[type, str, str], Any] = {}
        for obj in objects:
            self.create(obj)

    @staticmethod
    def _key(kind: type, namespace: str, name: str) -> tuple[type, str, str]:
        if issubclass(kind, _CLUSTER_SCOPED):
            namespace = ""
        return kind, namespace, name

    def _key_of(self, obj: Any) -> tuple[type, str, str]:
        return self._key(type(obj), obj.metadata.namespace, obj.metadata.name)

    def create(self, obj: T) -> T:
        key = self._key_of(obj)
        with self._lock:
            if key in self._objects:
                raise ValueError(f"{key[0].__name__} {key[1]}/{key[2]} already exists")
            self._objects[key] = copy.deepcopy(obj)
        return copy.deepcopy(obj)

    def update(self, obj: T) -> T:
        key = self._key_of(obj)
        with self._lock:
            if key not in self._objects:
                raise KeyError(f"{key[0].__name__} {key[1]}/{key[2]} not found")
            self._objects[key] = copy.deepcopy(obj)
        return copy.deepcopy(obj)

    def delete(self, kind: type, namespace: str, name: str) -> None:
        key = self._key(kind, namespace, name)
        with self._lock:
            if self._objects.pop(key, None) is None:
                raise KeyError(f"{kind.__name__} {namespace}/{name} not found")

    def get(self, kind: type[T], namespace: str, name: str) -> T:
        key = self._key(kind, namespace, name)
        with self._lock:
            try:
                return copy.deepcopy(self._objects[key])
            except KeyError:
                raise KeyError(f"{kind.__name__} {namespace}/{name} not found") from None

    def list_objects(
        self,
        kind: type[T],
        namespace: str = "",
        selector: LabelSelector | None = None,
    ) -> list[T]:
        """List objects of a kind; an empty namespace means all namespaces."""
        with self._lock:
            found = [
                obj
                for (obj_kind, obj_namespace, _), obj in self._objects.items()
                if obj_kind is kind and (not namespace or obj_namespace == namespace)
            ]
            found = [
                copy.deepcopy(obj)
                for obj in found
                if selector is None or selector.matches(obj.metadata.labels)
            ]
        return found

    def merge_patch(self, kind: type[T], namespace: str, name: str, patch: Mapping[str, Any]) -> T:
        """Apply a JSON merge patch to an object's labels or annotations."""
        unknown = set(patch) - {"metadata"}
        if unknown:
            raise ValueError(f"unsupported patch fields: {sorted(unknown)}")
        meta_patch = patch.get("metadata") or {}
        unknown = set(meta_patch) - set(_PATCHABLE_METADATA)
        if unknown:
            raise ValueError(f"unsupported metadata patch fields: {sorted(unknown)}")
        key = self._key(kind, namespace, name)
        with self._lock:
            try:
                obj = self._objects[key]
            except KeyError:
                raise KeyError(f"{kind.__name__} {namespace}/{name} not found") from None
            for field_name, changes in meta_patch.items():
                current = getattr(obj.metadata, field_name)
                if changes is None:
                    current.clear()
                    continue
                for change_key, change_value in changes.items():
                    if change_value is None:
                        current.pop(change_key, None)
                    else:
                        current[change_key] = change_value
            return copy.deepcopy(obj)


def _annotation_patch(key: str, value: str) -> dict[str, Any]:
    return {"metadata": {"annotations": {key: value}}}


@dataclass
class Kube:
    """Reads and updates the resources the controller works with."""

    client: KubeClient

    def set_annotation_on_pod(self, pod: Pod, key: str, value: str) -> None:
        logger.info("Setting annotations %s=%s on pod %s", key, value, pod.name)
        try:
            self.client.merge_patch(Pod, pod.namespace, pod.name, _annotation_patch(key, value))
        except (KeyError, ValueError) as exc:
            logger.error("Error in setting annotation on pod %s/%s: %s", pod.name, pod.namespace, exc)
            raise

    def set_annotation_on_node(self, node: Node, key: str, value: str) -> None:
        logger.info("Setting annotations %s=%s on node %s", key, value, node.name)
        try:
            self.client.merge_patch(Node, "", node.name, _annotation_patch(key, value))
        except (KeyError, ValueError) as exc:
            logger.error("Error in setting annotation on node %s: %s", node.name, exc)
            raise

    def get_annotations_on_pod(self, namespace: str, name: str) -> dict[str, str]:
        return self.client.get(Pod, namespace, name).metadata.annotations

    def get_pod(self, namespace: str, name: str) -> Pod:
        return self.client.get(Pod, namespace, name)

    def get_pods(self, namespace: str) -> list[Pod]:
        return self.client.list_objects(Pod, namespace)

    def get_pods_by_labels(self, namespace: str, selector: LabelSelector) -> list[Pod]:
        return self.client.list_objects(Pod, namespace, selector)

    def get_nodes(self) -> list[Node]:
        return self.client.list_objects(Node)

    def get_node(self, name: str) -> Node:
        return self.client.get(Node, "", name)

    def get_service(self, namespace: str, name: str) -> Service:
        return self.client.get(Service, namespace, name)

    def get_endpoints(self, namespace: str) -> list[Endpoints]:
        return self.client.list_objects(Endpoints, namespace)

    def get_namespaces(self) -> list[Namespace]:
        return self.client.list_objects(Namespace)