import pytest

from ovnkube.loadbalancer import LoadBalancers
from ovnkube.objects import Protocol
from ovnkube.ovn_common import CommandError


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


FIND_LB = ("--data=bare", "--no-heading", "--columns=_uuid", "find", "load_balancer")
FIND_GW = (
    "--data=bare", "--no-heading", "--columns=name", "find", "logical_router",
    "options:chassis!=null",
)


def test_cluster_load_balancer_tcp_is_cached():
    nbctl = FakeNbctl({FIND_LB + ("external_ids:k8s-cluster-lb-tcp=yes",): "lb-tcp"})
    lbs = LoadBalancers(nbctl)
    assert lbs.cluster_load_balancer(Protocol.TCP) == "lb-tcp"
    assert lbs.cluster_load_balancer("TCP") == "lb-tcp"
    assert len(nbctl.calls) == 1


def test_cluster_load_balancer_udp():
    nbctl = FakeNbctl({FIND_LB + ("external_ids:k8s-cluster-lb-udp=yes",): "lb-udp"})
    assert LoadBalancers(nbctl).cluster_load_balancer(Protocol.UDP) == "lb-udp"


def test_cluster_load_balancer_missing():
    nbctl = FakeNbctl()
    with pytest.raises(LookupError):
        LoadBalancers(nbctl).cluster_load_balancer(Protocol.TCP)


def test_cluster_load_balancer_unknown_protocol_runs_nothing():
    nbctl = FakeNbctl()
    with pytest.raises(LookupError):
        LoadBalancers(nbctl).cluster_load_balancer(Protocol.SCTP)
    assert nbctl.calls == []


def test_cluster_load_balancer_command_error_propagates():
    nbctl = FakeNbctl({FIND_LB + ("external_ids:k8s-cluster-lb-tcp=yes",): CommandError("x")})
    with pytest.raises(CommandError):
        LoadBalancers(nbctl).cluster_load_balancer(Protocol.TCP)


def test_default_gateway_load_balancer_cached_when_found():
    nbctl = FakeNbctl({FIND_LB + ("external_ids:TCP_lb_gateway_router=GR_node1",): "lb-gw"})
    lbs = LoadBalancers(nbctl, lambda: "GR_node1")
    assert lbs.default_gateway_load_balancer(Protocol.TCP) == "lb-gw"
    assert lbs.default_gateway_load_balancer(Protocol.TCP) == "lb-gw"
    assert len(nbctl.calls) == 1


def test_default_gateway_load_balancer_not_cached_when_empty():
    nbctl = FakeNbctl()
    lbs = LoadBalancers(nbctl, lambda: "GR_node1")
    assert lbs.default_gateway_load_balancer(Protocol.UDP) == ""
    assert lbs.default_gateway_load_balancer(Protocol.UDP) == ""
    assert len(nbctl.calls) == 2


def test_default_gateway_load_balancer_without_router():
    def no_router():
        raise LookupError("no default gateway")

    nbctl = FakeNbctl()
    assert LoadBalancers(nbctl, no_router).default_gateway_load_balancer(Protocol.TCP) == ""
    assert LoadBalancers(nbctl).default_gateway_load_balancer(Protocol.TCP) == ""
    assert nbctl.calls == []


def test_vips_parses_database_map():
    nbctl = FakeNbctl(
        {
            ("--data=bare", "--no-heading", "get", "load_balancer", "lb1", "vips"):
                '{"172.30.0.10:80"="10.1.1.4:8080,10.1.1.5:8080"}'
        }
    )
    assert LoadBalancers(nbctl).vips("lb1") == {"172.30.0.10:80": "10.1.1.4:8080,10.1.1.5:8080"}


def test_vips_empty():
    assert LoadBalancers(FakeNbctl()).vips("lb1") == {}


def test_create_vip_sets_backends():
    nbctl = FakeNbctl()
    LoadBalancers(nbctl).create_vip("lb1", "172.30.0.10", 80, ["10.1.1.4", "10.1.1.5"], 8080)
    assert nbctl.calls == [
        ("set", "load_balancer", "lb1", 'vips:"172.30.0.10:80"="10.1.1.4:8080,10.1.1.5:8080"')
    ]


def test_create_vip_without_backends_removes():
    nbctl = FakeNbctl()
    LoadBalancers(nbctl).create_vip("lb1", "172.30.0.10", 80, [], 8080)
    assert nbctl.calls == [("remove", "load_balancer", "lb1", "vips", '"172.30.0.10:80"')]


def test_create_vip_error_raises():
    nbctl = FakeNbctl(
        {("set", "load_balancer", "lb1", 'vips:"1.2.3.4:80"="10.0.0.1:81"'): CommandError("x")}
    )
    with pytest.raises(CommandError):
        LoadBalancers(nbctl).create_vip("lb1", "1.2.3.4", 80, ["10.0.0.1"], 81)


def test_delete_vip_quotes_and_swallows_errors():
    args = ("--if-exists", "remove", "load_balancer", "lb1", "vips", '"1.2.3.4:80"')
    nbctl = FakeNbctl({args: CommandError("x")})
    LoadBalancers(nbctl).delete_vip("lb1", "1.2.3.4:80")
    assert nbctl.calls == [args]


def test_gateways_split():
    nbctl = FakeNbctl({FIND_GW: "GR_node1\nGR_node2"})
    assert LoadBalancers(nbctl).gateways() == ["GR_node1", "GR_node2"]


def test_gateway_lookups():
    nbctl = FakeNbctl(
        {
            ("get", "logical_router", "GR_node1", "external_ids:physical_ip"): "192.168.0.5",
            FIND_LB + ("external_ids:UDP_lb_gateway_router=GR_node1",): "lb-udp",
        }
    )
    lbs = LoadBalancers(nbctl)
    assert lbs.gateway_physical_ip("GR_node1") == "192.168.0.5"
    assert lbs.gateway_load_balancer("GR_node1", "UDP") == "lb-udp"


def test_create_gateways_vip_skips_gateways_without_lb():
    nbctl = FakeNbctl(
        {
            FIND_GW: "GR_node1 GR_node2",
            ("get", "logical_router", "GR_node1", "external_ids:physical_ip"): "192.168.0.5",
            ("get", "logical_router", "GR_node2", "external_ids:physical_ip"): "192.168.0.6",
            FIND_LB + ("external_ids:TCP_lb_gateway_router=GR_node1",): "lb-gw1",
        }
    )
    LoadBalancers(nbctl).create_gateways_vip(Protocol.TCP, 30080, 8080, ["10.1.1.4"])
    set_calls = [call for call in nbctl.calls if call[0] == "set"]
    assert set_calls == [("set", "load_balancer", "lb-gw1", 'vips:"192.168.0.5:30080"="10.1.1.4:8080"')]


def test_create_gateways_vip_continues_past_failures():
    nbctl = FakeNbctl(
        {
            FIND_GW: "GR_node1 GR_node2",
            ("get", "logical_router", "GR_node1", "external_ids:physical_ip"): CommandError("x"),
            ("get", "logical_router", "GR_node2", "external_ids:physical_ip"): "192.168.0.6",
            FIND_LB + ("external_ids:TCP_lb_gateway_router=GR_node2",): "lb-gw2",
        }
    )
    LoadBalancers(nbctl).create_gateways_vip("TCP", 30080, 8080, ["10.1.1.4"])
    assert nbctl.calls[-1][:3] == ("set", "load_balancer", "lb-gw2")


def test_create_gateways_vip_gateway_listing_error_raises():
    nbctl = FakeNbctl({FIND_GW: CommandError("x")})
    with pytest.raises(CommandError):
        LoadBalancers(nbctl).create_gateways_vip("TCP", 1, 2, ["10.0.0.1"])