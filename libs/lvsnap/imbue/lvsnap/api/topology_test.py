import pytest

from imbue.lvsnap.api.data_types import ClusterTopology
from imbue.lvsnap.api.environment import HostEnvironment
from imbue.lvsnap.api.topology import classify
from imbue.lvsnap.api.topology import discover_cluster
from imbue.lvsnap.api.topology import locate
from imbue.lvsnap.api.topology import parse_pvecm_nodes
from imbue.lvsnap.api.topology import parse_pvecm_status
from imbue.lvsnap.api.topology import require_kind
from imbue.lvsnap.api.topology import resolve_instance
from imbue.lvsnap.errors import InstanceNotFoundError
from imbue.lvsnap.errors import LowConfidenceClassificationError
from imbue.lvsnap.primitives import Confidence
from imbue.lvsnap.primitives import DetectionMethod
from imbue.lvsnap.primitives import InstanceId
from imbue.lvsnap.primitives import InstanceKind
from imbue.lvsnap.primitives import NodeName
from imbue.lvsnap.primitives import RunningState
from imbue.lvsnap.utils.testing import FakeNode
from imbue.lvsnap.utils.testing import make_fake_node

_PVECM_NODES = """
Membership information
----------------------
    Nodeid      Votes Name
         1          1 pve1 (local)
         2          1 pve2
         3          1 pve3.example.com
"""

_STANDALONE = ClusterTopology(current_node=NodeName("pve1"), nodes=(NodeName("pve1"),), is_cluster=False)
_CLUSTER = ClusterTopology(
    current_node=NodeName("pve1"),
    nodes=(NodeName("pve1"), NodeName("pve2"), NodeName("pve3")),
    is_cluster=True,
)


def _with_env_interactive(host_env: HostEnvironment, answer: bool) -> HostEnvironment:
    ctx = host_env.ctx.model_copy(update={"is_interactive": True})
    return host_env.model_copy(update={"ctx": ctx, "confirm": lambda prompt, default: answer})


# =============================================================================
# Cluster discovery
# =============================================================================


def test_parse_pvecm_nodes_takes_third_column_of_numeric_rows() -> None:
    assert parse_pvecm_nodes(_PVECM_NODES) == ["pve1", "pve2", "pve3"]


def test_parse_pvecm_status_reads_name_lines() -> None:
    output = "Cluster information\nName:             pve1\nName: pve2\nNodes: 2\n"

    assert parse_pvecm_status(output) == ["pve1", "pve2"]


def test_discover_cluster_standalone_without_corosync(host_env: HostEnvironment) -> None:
    topology = discover_cluster(host_env)

    assert not topology.is_cluster
    assert topology.nodes == ("pve1",)
    assert topology.other_nodes == ()


def test_discover_cluster_reads_pvecm_nodes(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.files["/etc/pve/corosync.conf"] = "totem {}\n"
    fake_node.pvecm_nodes_output = _PVECM_NODES

    topology = discover_cluster(host_env)

    assert topology.is_cluster
    assert topology.other_nodes == ("pve2", "pve3")


def test_discover_cluster_falls_back_to_pvecm_status(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.files["/etc/pve/corosync.conf"] = "totem {}\n"
    fake_node.pvecm_status_output = "Name: pve2\n"

    topology = discover_cluster(host_env)

    assert topology.nodes == ("pve1", "pve2")


# =============================================================================
# Classification
# =============================================================================


def test_classify_override_skips_all_checks(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    classification = classify(host_env, InstanceId("104"), _STANDALONE, kind_override=InstanceKind.CONTAINER)

    assert classification.kind == InstanceKind.CONTAINER
    assert classification.confidence == Confidence.HIGH
    assert classification.attempts[0].method == DetectionMethod.OVERRIDE
    assert fake_node.commands_run == []


def test_classify_uses_config_file(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.add_instance("104", InstanceKind.VM)

    classification = classify(host_env, InstanceId("104"), _STANDALONE)

    assert classification.kind == InstanceKind.VM
    assert classification.attempts[-1].method == DetectionMethod.CONFIG_FILE


def test_classify_falls_back_to_status_query(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.add_instance("200", InstanceKind.CONTAINER)
    fake_node.files.clear()

    classification = classify(host_env, InstanceId("200"), _STANDALONE)

    assert classification.kind == InstanceKind.CONTAINER
    assert classification.attempts[-1].method == DetectionMethod.STATUS_QUERY


def test_classify_uses_cluster_resources(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.cluster_resources = [{"vmid": 300, "type": "qemu", "node": "pve2"}]

    classification = classify(host_env, InstanceId("300"), _STANDALONE)

    assert classification.kind == InstanceKind.VM
    assert classification.attempts[-1].method == DetectionMethod.CLUSTER_RESOURCES


def test_classify_asks_remote_nodes(
    host_env: HostEnvironment,
    remote_nodes: dict[str, FakeNode],
) -> None:
    remote_nodes["pve2"] = make_fake_node("pve2", is_local=False)
    remote_nodes["pve3"] = make_fake_node("pve3", is_local=False)
    remote_nodes["pve3"].add_instance("400", InstanceKind.CONTAINER)

    classification = classify(host_env, InstanceId("400"), _CLUSTER)

    assert classification.kind == InstanceKind.CONTAINER
    assert classification.attempts[-1].method == DetectionMethod.REMOTE_NODES


def test_classify_survives_unreachable_remote_node(
    host_env: HostEnvironment,
    remote_nodes: dict[str, FakeNode],
) -> None:
    remote_nodes["pve2"] = make_fake_node("pve2", is_local=False)
    remote_nodes["pve2"].is_unreachable = True
    remote_nodes["pve3"] = make_fake_node("pve3", is_local=False)
    remote_nodes["pve3"].add_instance("400", InstanceKind.VM)

    classification = classify(host_env, InstanceId("400"), _CLUSTER)

    assert classification.kind == InstanceKind.VM


def test_classify_volume_naming_is_low_confidence(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.add_volume("vm-500-disk-0", 32)

    classification = classify(host_env, InstanceId("500"), _STANDALONE)

    assert classification.kind == InstanceKind.VM
    assert classification.confidence == Confidence.LOW


def test_classify_subvol_naming_means_container(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.add_volume("subvol-501-disk-0", 8)

    assert classify(host_env, InstanceId("501"), _STANDALONE).kind == InstanceKind.CONTAINER


def test_classify_nothing_found_lists_every_attempt(host_env: HostEnvironment) -> None:
    classification = classify(host_env, InstanceId("999"), _STANDALONE)

    assert classification.kind is None
    assert classification.confidence == Confidence.NONE
    assert [attempt.method for attempt in classification.attempts] == [
        DetectionMethod.CONFIG_FILE,
        DetectionMethod.STATUS_QUERY,
        DetectionMethod.LOCAL_LISTING,
        DetectionMethod.CLUSTER_RESOURCES,
        DetectionMethod.VOLUME_NAMING,
    ]


def test_classify_caches_high_confidence_results(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.add_instance("104", InstanceKind.VM)
    classify(host_env, InstanceId("104"), _STANDALONE)
    fake_node.files.clear()
    fake_node.instances.clear()

    classification = classify(host_env, InstanceId("104"), _STANDALONE)

    assert classification.kind == InstanceKind.VM
    assert classification.attempts[0].method == DetectionMethod.CACHE


def test_classify_does_not_cache_low_confidence(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    volume = fake_node.add_volume("vm-500-disk-0", 32)
    classify(host_env, InstanceId("500"), _STANDALONE)
    fake_node.volumes.remove(volume)

    assert classify(host_env, InstanceId("500"), _STANDALONE).kind is None


# =============================================================================
# Confidence handling
# =============================================================================


def test_require_kind_raises_not_found_with_inventory(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.add_instance("101", InstanceKind.VM, state="running")
    classification = classify(host_env, InstanceId("999"), _STANDALONE)

    with pytest.raises(InstanceNotFoundError) as exc_info:
        require_kind(host_env, classification)

    message = exc_info.value.format_message()
    assert "config_file" in message
    assert "101" in message


def test_require_kind_rejects_low_confidence_when_non_interactive(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.add_volume("vm-500-disk-0", 32)
    classification = classify(host_env, InstanceId("500"), _STANDALONE)

    with pytest.raises(LowConfidenceClassificationError):
        require_kind(host_env, classification)


def test_require_kind_accepts_confirmed_low_confidence(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.add_volume("vm-500-disk-0", 32)
    env = _with_env_interactive(host_env, answer=True)
    classification = classify(env, InstanceId("500"), _STANDALONE)

    assert require_kind(env, classification) == InstanceKind.VM


def test_require_kind_rejects_declined_low_confidence(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.add_volume("vm-500-disk-0", 32)
    env = _with_env_interactive(host_env, answer=False)
    classification = classify(env, InstanceId("500"), _STANDALONE)

    with pytest.raises(LowConfidenceClassificationError):
        require_kind(env, classification)


# =============================================================================
# Location
# =============================================================================


def test_locate_prefers_current_node(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.add_instance("104", InstanceKind.VM)

    assert locate(host_env, InstanceId("104"), InstanceKind.VM, _CLUSTER) == "pve1"


def test_locate_uses_cluster_resource_node(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.cluster_resources = [{"vmid": 104, "type": "qemu", "node": "pve3"}]

    assert locate(host_env, InstanceId("104"), InstanceKind.VM, _CLUSTER) == "pve3"


def test_locate_asks_other_nodes(host_env: HostEnvironment, remote_nodes: dict[str, FakeNode]) -> None:
    remote_nodes["pve2"] = make_fake_node("pve2", is_local=False)
    remote_nodes["pve2"].add_instance("104", InstanceKind.VM)
    remote_nodes["pve3"] = make_fake_node("pve3", is_local=False)

    assert locate(host_env, InstanceId("104"), InstanceKind.VM, _CLUSTER) == "pve2"


def test_locate_closes_every_remote_session(host_env: HostEnvironment, remote_nodes: dict[str, FakeNode]) -> None:
    remote_nodes["pve2"] = make_fake_node("pve2", is_local=False)
    remote_nodes["pve3"] = make_fake_node("pve3", is_local=False)
    remote_nodes["pve3"].is_unreachable = True
    remote_nodes["pve3"].add_instance("104", InstanceKind.VM)

    assert locate(host_env, InstanceId("104"), InstanceKind.VM, _CLUSTER) is None
    assert remote_nodes["pve2"].disconnect_count == 1
    assert remote_nodes["pve3"].disconnect_count == 1


def test_locate_returns_none_when_nobody_has_it(host_env: HostEnvironment) -> None:
    assert locate(host_env, InstanceId("104"), InstanceKind.VM, _STANDALONE) is None


def test_resolve_instance_reports_local_running_state(host_env: HostEnvironment, fake_node: FakeNode) -> None:
    fake_node.add_instance("104", InstanceKind.VM, state="running")

    instance = resolve_instance(host_env, InstanceId("104"))

    assert instance.kind == InstanceKind.VM
    assert instance.owner_node == "pve1"
    assert instance.running_state == RunningState.RUNNING
