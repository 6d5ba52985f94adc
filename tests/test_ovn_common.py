import pytest

from ovnkube.ovn_common import (
    CommandError,
    create_address_set,
    create_port_group,
    delete_address_set,
    delete_port_group,
    hash_for_ovn,
    hashed_address_set,
    hashed_port_group,
    ip_from_ovn_annotation,
    iter_address_set_names,
    set_address_set,
)


class FakeNbctl:
    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def __call__(self, *args):
        self.calls.append(args)
        result = self.responses.get(args, "")
        if isinstance(result, Exception):
            raise result
        return result


FIND_AS = ("--data=bare", "--no-heading", "--columns=_uuid", "find", "address_set")
FIND_PG = ("--data=bare", "--no-heading", "--columns=_uuid", "find", "port_group")


def test_hash_of_empty_string_is_fnv_offset_basis():
    assert hash_for_ovn("") == "a14695981039346656037"


def test_hash_shape_and_determinism():
    value = hash_for_ovn("default.policy.ingress")
    assert value == hash_for_ovn("default.policy.ingress")
    assert value.startswith("a")
    assert value[1:].isdigit()
    assert int(value[1:]) < 2**64
    assert hash_for_ovn("ns1") != hash_for_ovn("ns2")


def test_hashed_names_share_the_hash():
    assert hashed_address_set("ns") == hash_for_ovn("ns")
    assert hashed_port_group("ns") == hash_for_ovn("ns")


def test_iter_address_set_names():
    nbctl = FakeNbctl(
        {
            ("--data=bare", "--no-heading", "--columns=external_ids", "find", "address_set"):
                "name=ns1\nname=ns2.policy.ingress other=x"
        }
    )
    assert list(iter_address_set_names(nbctl)) == [
        ("ns1", "ns1", ""),
        ("ns2.policy.ingress", "ns2", "policy"),
    ]


def test_iter_address_set_names_raises_on_failure():
    nbctl = FakeNbctl(
        {
            ("--data=bare", "--no-heading", "--columns=external_ids", "find", "address_set"):
                CommandError("boom", stderr="bad")
        }
    )
    with pytest.raises(CommandError):
        list(iter_address_set_names(nbctl))


def test_set_address_set_clears_when_empty():
    nbctl = FakeNbctl()
    set_address_set(nbctl, "a1", [])
    assert nbctl.calls == [("clear", "address_set", "a1", "addresses")]


def test_set_address_set_sets_addresses():
    nbctl = FakeNbctl()
    set_address_set(nbctl, "a1", ["10.0.0.1", "10.0.0.2"])
    assert nbctl.calls == [("set", "address_set", "a1", "addresses=10.0.0.1 10.0.0.2")]


def test_set_address_set_swallows_errors():
    nbctl = FakeNbctl({("clear", "address_set", "a1", "addresses"): CommandError("x")})
    set_address_set(nbctl, "a1", [])
    assert len(nbctl.calls) == 1


def test_create_address_set_new_with_addresses():
    nbctl = FakeNbctl()
    create_address_set(nbctl, "ns", "a1", ["10.0.0.1"])
    assert nbctl.calls[-1] == (
        "create", "address_set", "name=a1", "external-ids:name=ns", "addresses=10.0.0.1"
    )


def test_create_address_set_new_without_addresses():
    nbctl = FakeNbctl()
    create_address_set(nbctl, "ns", "a1", [])
    assert nbctl.calls[-1] == ("create", "address_set", "name=a1", "external-ids:name=ns")


def test_create_address_set_existing_updates():
    nbctl = FakeNbctl({FIND_AS + ("name=a1",): "uuid-1"})
    create_address_set(nbctl, "ns", "a1", ["10.0.0.1"])
    assert nbctl.calls[-1] == ("set", "address_set", "a1", "addresses=10.0.0.1")
    create_address_set(nbctl, "ns", "a1", [])
    assert nbctl.calls[-1] == ("clear", "address_set", "a1", "addresses")


def test_create_address_set_find_failure_stops():
    nbctl = FakeNbctl({FIND_AS + ("name=a1",): CommandError("x")})
    create_address_set(nbctl, "ns", "a1", ["10.0.0.1"])
    assert len(nbctl.calls) == 1


def test_delete_address_set():
    nbctl = FakeNbctl()
    delete_address_set(nbctl, "a1")
    assert nbctl.calls == [("--if-exists", "destroy", "address_set", "a1")]


def test_create_port_group_existing():
    nbctl = FakeNbctl({FIND_PG + ("name=a1",): "uuid-pg"})
    assert create_port_group(nbctl, "ns", "a1") == "uuid-pg"
    assert len(nbctl.calls) == 1


def test_create_port_group_new():
    nbctl = FakeNbctl(
        {("create", "port_group", "name=a1", "external-ids:name=ns"): "uuid-new"}
    )
    assert create_port_group(nbctl, "ns", "a1") == "uuid-new"


def test_create_port_group_failure_raises():
    nbctl = FakeNbctl(
        {("create", "port_group", "name=a1", "external-ids:name=ns"): CommandError("x")}
    )
    with pytest.raises(CommandError):
        create_port_group(nbctl, "ns", "a1")


def test_delete_port_group_missing_does_nothing_more():
    nbctl = FakeNbctl()
    delete_port_group(nbctl, "a1")
    assert nbctl.calls == [FIND_PG + ("name=a1",)]


def test_delete_port_group_destroys_by_uuid():
    nbctl = FakeNbctl({FIND_PG + ("name=a1",): "uuid-pg"})
    delete_port_group(nbctl, "a1")
    assert nbctl.calls[-1] == ("--if-exists", "destroy", "port_group", "uuid-pg")


@pytest.mark.parametrize(
    "annotation, expected",
    [
        ('{"ip_address":"10.128.1.4/24", "mac_address":"0a:00:00:00:00:01"}', "10.128.1.4"),
        ("", ""),
        ("not json", ""),
        ('{"ip_address":"10.128.1.4"}', ""),
        ('{"mac_address":"0a:00:00:00:00:01"}', ""),
        ('{"ip_address": 5}', ""),
    ],
)
def test_ip_from_ovn_annotation(annotation, expected):
    assert ip_from_ovn_annotation(annotation) == expected