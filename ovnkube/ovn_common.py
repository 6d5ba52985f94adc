"""Address sets, port groups and annotation helpers for the OVN northbound database.

Every function here takes ``nbctl``, a callable that runs one northbound
database command. It is called with the command's arguments, returns the
command's stripped standard output, and raises ``CommandError`` when the
command fails.
"""

from __future__ import annotations

import json
import logging
from typing import Callable, Iterator, Sequence

logger = logging.getLogger(__name__)

Nbctl = Callable[..., str]

_FNV64_OFFSET_BASIS = 0xCBF29CE484222325
_FNV64_PRIME = 0x100000001B3
_MASK64 = (1 << 64) - 1


class CommandError(Exception):
    """A northbound database command failed."""

    def __init__(self, message: str, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


def _fnv1a_64(data: bytes) -> int:
    value = _FNV64_OFFSET_BASIS
    for byte in data:
        value ^= byte
        value = (value * _FNV64_PRIME) & _MASK64
    return value


def hash_for_ovn(s: str) -> str:
    """Hash a name into a valid address set or port group name."""
    return f"a{_fnv1a_64(s.encode())}"


def hashed_address_set(s: str) -> str:
    """Name of the address set for the given unhashed name."""
    return hash_for_ovn(s)


def hashed_port_group(s: str) -> str:
    """Name of the port group for the given unhashed name."""
    return hash_for_ovn(s)


def iter_address_set_names(nbctl: Nbctl) -> Iterator[tuple[str, str, str]]:
    """Yield ``(unhashed_name, namespace, first_suffix)`` for every address set.

    Unhashed names have the form ``namespace.suffix1.suffix2...``; the suffix
    is empty when the name has none.
    """
    try:
        output = nbctl(
            "--data=bare", "--no-heading", "--columns=external_ids", "find", "address_set"
        )
    except CommandError as exc:
        logger.error(
            "Error in obtaining list of address sets from OVN: stdout: %r, stderr: %r err: %s",
            exc.stdout,
            exc.stderr,
            exc,
        )
        raise
    for field in output.split():
        if not field.startswith("name="):
            continue
        name = field[len("name="):]
        namespace, _, rest = name.partition(".")
        suffix = rest.split(".", 1)[0] if rest else ""
        yield name, namespace, suffix


def set_address_set(nbctl: Nbctl, hash_name: str, addresses: Sequence[str]) -> None:
    """Replace the addresses of an address set; failures are logged."""
    logger.debug("setAddressSet for %s with %s", hash_name, list(addresses))
    try:
        if not addresses:
            nbctl("clear", "address_set", hash_name, "addresses")
        else:
            nbctl("set", "address_set", hash_name, f"addresses={' '.join(addresses)}")
    except CommandError as exc:
        action = "clear" if not addresses else "set"
        logger.error("failed to %s address_set, stderr: %r (%s)", action, exc.stderr, exc)


def create_address_set(
    nbctl: Nbctl, name: str, hash_name: str, addresses: Sequence[str]
) -> None:
    """Create an address set, or update its addresses if it exists; failures are logged."""
    logger.debug("createAddressSet with %s and %s", name, list(addresses))
    try:
        existing = nbctl(
            "--data=bare", "--no-heading", "--columns=_uuid", "find", "address_set",
            f"name={hash_name}",
        )
    except CommandError as exc:
        logger.error("find failed to get address set, stderr: %r (%s)", exc.stderr, exc)
        return

    if existing:
        set_address_set(nbctl, hash_name, addresses)
        return

    args = ["create", "address_set", f"name={hash_name}", f"external-ids:name={name}"]
    if addresses:
        args.append(f"addresses={' '.join(addresses)}")
    try:
        nbctl(*args)
    except CommandError as exc:
        logger.error(
            "failed to create address_set %s, stderr: %r (%s)", name, exc.stderr, exc
        )


def delete_address_set(nbctl: Nbctl, hash_name: str) -> None:
    """Destroy an address set if it exists; failures are logged."""
    logger.debug("deleteAddressSet %s", hash_name)
    try:
        nbctl("--if-exists", "destroy", "address_set", hash_name)
    except CommandError as exc:
        logger.error(
            "failed to destroy address set %s, stderr: %r, (%s)", hash_name, exc.stderr, exc
        )


def create_port_group(nbctl: Nbctl, name: str, hash_name: str) -> str:
    """Return the UUID of the named port group, creating it if needed."""
    logger.debug("createPortGroup with %s", name)
    try:
        port_group = nbctl(
            "--data=bare", "--no-heading", "--columns=_uuid", "find", "port_group",
            f"name={hash_name}",
        )
    except CommandError as exc:
        raise CommandError(
            f"find failed to get port_group, stderr: {exc.stderr!r} ({exc})",
            exc.stdout,
            exc.stderr,
        ) from exc
    if port_group:
        return port_group

    try:
        return nbctl(
            "create", "port_group", f"name={hash_name}", f"external-ids:name={name}"
        )
    except CommandError as exc:
        raise CommandError(
            f"failed to create port_group {name}, stderr: {exc.stderr!r} ({exc})",
            exc.stdout,
            exc.stderr,
        ) from exc


def delete_port_group(nbctl: Nbctl, hash_name: str) -> None:
    """Destroy the named port group if it exists; failures are logged."""
    logger.debug("deletePortGroup %s", hash_name)
    try:
        port_group = nbctl(
            "--data=bare", "--no-heading", "--columns=_uuid", "find", "port_group",
            f"name={hash_name}",
        )
    except CommandError as exc:
        logger.error("find failed to get port_group, stderr: %r (%s)", exc.stderr, exc)
        return
    if not port_group:
        return
    try:
        nbctl("--if-exists", "destroy", "port_group", port_group)
    except CommandError as exc:
        logger.error(
            "failed to destroy port_group %s, stderr: %r, (%s)", hash_name, exc.stderr, exc
        )


def ip_from_ovn_annotation(annotation: str) -> str:
    """Return the pod IP held in an ``ovn`` annotation, or "" if there is none."""
    if not annotation:
        return ""
    try:
        values = json.loads(annotation)
    except ValueError as exc:
        logger.error("Error in json unmarshaling ovn annotation (%s)", exc)
        return ""
    if not isinstance(values, dict) or not all(isinstance(v, str) for v in values.values()):
        logger.error("Error in json unmarshaling ovn annotation (not a string map)")
        return ""
    parts = values.get("ip_address", "").split("/")
    if len(parts) != 2:
        logger.error("Error in splitting ip address")
        return ""
    return parts[0]