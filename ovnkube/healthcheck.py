"""Per-service HTTP health checks reporting the number of local endpoints.

A service with no local endpoints answers 503 so that load balancers stop
sending traffic to this node; with one or more it answers 200.
"""

from __future__ import annotations

import http.server
import json
import logging
import socket
import threading
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Callable, Mapping, Optional

logger = logging.getLogger(__name__)

Recorder = Callable[[dict, str, str, str], Any]


@dataclass(frozen=True)
class NamespacedName:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class HealthCheckResponse:
    status: int
    body: str
    content_type: str = "application/json"


@dataclass(frozen=True)
class HealthCheckHandler:
    """Answers health-check requests for one service."""

    name: NamespacedName
    server: "HealthCheckServer"

    def handle(self) -> Optional[HealthCheckResponse]:
        """Build the response, or return None if the health check is closed."""
        count = self.server._local_endpoints(self.name)
        if count is None:
            logger.error("Received request for closed healthcheck %r", str(self.name))
            return None
        status = HTTPStatus.SERVICE_UNAVAILABLE if count == 0 else HTTPStatus.OK
        body = (
            f'{{ "service": {{ "namespace": {json.dumps(self.name.namespace)}, '
            f'"name": {json.dumps(self.name.name)} }}, "localEndpoints": {count} }}'
        )
        return HealthCheckResponse(status=int(status), body=body)


class _TCPListener:
    def __init__(self, addr: str) -> None:
        host, _, port = addr.rpartition(":")
        self.socket = socket.create_server((host, int(port)))
        self._closed = threading.Event()

    @property
    def address(self) -> tuple[str, int]:
        return self.socket.getsockname()[:2]

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        self._closed.set()
        self.socket.close()


class _StdNetListener:
    def listen(self, addr: str) -> _TCPListener:
        return _TCPListener(addr)


def _request_handler_class(hc_handler: HealthCheckHandler) -> type:
    class _Request(http.server.BaseHTTPRequestHandler):
        def do_GET(self) -> None:
            response = hc_handler.handle()
            if response is None:
                self.send_response(HTTPStatus.OK)
                self.end_headers()
                return
            payload = response.body.encode()
            self.send_response(response.status)
            self.send_header("Content-Type", response.content_type)
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        do_POST = do_GET
        do_HEAD = do_GET

        def log_message(self, format: str, *args: Any) -> None:
            logger.debug(format, *args)

    return _Request


class _StdHTTPServer:
    def __init__(self, addr: str, handler: HealthCheckHandler) -> None:
        self.addr = addr
        self.handler = handler

    def serve(self, listener: _TCPListener) -> None:
        httpd = http.server.HTTPServer(
            listener.address, _request_handler_class(self.handler), bind_and_activate=False
        )
        httpd.socket.close()
        httpd.socket = listener.socket
        httpd.timeout = 0.5
        while not listener.closed:
            try:
                httpd.handle_request()
            except (OSError, ValueError):
                break


class _StdHTTPServerFactory:
    def new(self, addr: str, handler: HealthCheckHandler) -> _StdHTTPServer:
        return _StdHTTPServer(addr, handler)


@dataclass
class _Instance:
    port: int
    listener: Any = None
    server: Any = None
    endpoints: int = 0


class HealthCheckServer:
    """Opens one health-check listener per service and tracks its endpoints.

    ``listener`` needs a ``listen(addr)`` method returning an object with
    ``close()``; ``http_server_factory`` needs ``new(addr, handler)`` returning
    an object with ``serve(listener)``. Both default to real TCP/HTTP.
    """

    def __init__(
        self,
        hostname: str,
        recorder: Optional[Recorder] = None,
        listener: Any = None,
        http_server_factory: Any = None,
    ) -> None:
        self.hostname = hostname
        self.recorder = recorder
        self.listener = listener if listener is not None else _StdNetListener()
        self.http_factory = (
            http_server_factory if http_server_factory is not None else _StdHTTPServerFactory()
        )
        self._lock = threading.Lock()
        self._services: dict[NamespacedName, _Instance] = {}

    @property
    def services(self) -> dict[NamespacedName, _Instance]:
        with self._lock:
            return dict(self._services)

    def _local_endpoints(self, name: NamespacedName) -> Optional[int]:
        with self._lock:
            instance = self._services.get(name)
            return None if instance is None else instance.endpoints

    def sync_services(self, new_services: Optional[Mapping[NamespacedName, int]]) -> None:
        """Make the given services, mapped to their health-check ports, the active set."""
        new_services = new_services or {}
        with self._lock:
            for nsn, instance in list(self._services.items()):
                if new_services.get(nsn) != instance.port:
                    logger.info("Closing healthcheck %r on port %d", str(nsn), instance.port)
                    try:
                        instance.listener.close()
                    except OSError as exc:
                        logger.error("Close(%s): %s", nsn, exc)
                    del self._services[nsn]

            for nsn, port in new_services.items():
                if nsn in self._services:
                    logger.debug("Existing healthcheck %r on port %d", str(nsn), port)
                    continue
                logger.info("Opening healthcheck %r on port %d", str(nsn), port)
                instance = _Instance(port=port)
                addr = f":{port}"
                instance.server = self.http_factory.new(addr, HealthCheckHandler(nsn, self))
                try:
                    instance.listener = self.listener.listen(addr)
                except OSError as exc:
                    message = (
                        f"node {self.hostname} failed to start healthcheck {str(nsn)!r} "
                        f"on port {port}: {exc}"
                    )
                    if self.recorder is not None:
                        reference = {
                            "kind": "Service",
                            "namespace": nsn.namespace,
                            "name": nsn.name,
                            "uid": str(nsn),
                        }
                        self.recorder(reference, "Warning", "FailedToStartServiceHealthcheck", message)
                    logger.error(message)
                    continue
                self._services[nsn] = instance
                threading.Thread(
                    target=self._serve, args=(nsn, instance), daemon=True
                ).start()

    @staticmethod
    def _serve(nsn: NamespacedName, instance: _Instance) -> None:
        logger.debug("Starting healthcheck %r on port %d", str(nsn), instance.port)
        try:
            instance.server.serve(instance.listener)
        except Exception as exc:  # serving stops when the listener closes
            logger.debug("Healthcheck %r closed: %s", str(nsn), exc)
            return
        logger.debug("Healthcheck %r closed", str(nsn))

    def sync_endpoints(self, new_endpoints: Optional[Mapping[NamespacedName, int]]) -> None:
        """Record local endpoint counts; services not mentioned drop to zero."""
        new_endpoints = new_endpoints or {}
        with self._lock:
            for nsn, count in new_endpoints.items():
                instance = self._services.get(nsn)
                if instance is None:
                    logger.debug("Not saving endpoints for unknown healthcheck %r", str(nsn))
                    continue
                logger.debug("Reporting %d endpoints for healthcheck %r", count, str(nsn))
                instance.endpoints = count
            for nsn, instance in self._services.items():
                if nsn not in new_endpoints:
                    instance.endpoints = 0