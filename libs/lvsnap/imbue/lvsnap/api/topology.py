import json
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import as_completed
from typing import Any
from typing import Final

from loguru import logger

from imbue.lvsnap.api.data_types import Classification
from imbue.lvsnap.api.data_types import ClusterTopology
from imbue.lvsnap.api.data_types import DetectionAttempt
from imbue.lvsnap.api.data_types import Instance
from imbue.lvsnap.api.environment import HostEnvironment
from imbue.lvsnap.base import pure
from imbue.lvsnap.errors import InstanceNotFoundError
from imbue.lvsnap.errors import LowConfidenceClassificationError
from imbue.lvsnap.errors import NodeConnectionError
from imbue.lvsnap.interfaces.node import NodeInterface
from imbue.lvsnap.primitives import Confidence
from imbue.lvsnap.primitives import DetectionMethod
from imbue.lvsnap.primitives import InstanceId
from imbue.lvsnap.primitives import InstanceKind
from imbue.lvsnap.primitives import NodeName
from imbue.lvsnap.primitives import RunningState
from imbue.lvsnap.utils.cache import FileCache
from imbue.lvsnap.utils.logging import log_call

# Containers are checked first: a container id never has a qemu-server config
_CLASSIFICATION_ORDER: Final[tuple[InstanceKind, ...]] = (InstanceKind.CONTAINER, InstanceKind.VM)

_CLASSIFICATION_CACHE: Final[str] = "classification"
_CONNECTIVITY_CACHE: Final[str] = "connectivity"


# =============================================================================
# Cluster discovery
# =============================================================================


@pure
def parse_pvecm_nodes(output: str) -> list[NodeName]:
    """Member names from `pvecm nodes`: the third column of rows whose first column is numeric."""
    names: list[NodeName] = []
    for line in output.splitlines():
        fields = line.split()
        if len(fields) >= 3 and fields[0].isdigit():
            names.append(NodeName(fields[2].split(".")[0]))
    return names


@pure
def parse_pvecm_status(output: str) -> list[NodeName]:
    """Member names from the `Name:` lines of `pvecm status`."""
    names: list[NodeName] = []
    for line in output.splitlines():
        key, separator, value = line.strip().partition(":")
        if separator and key.strip() == "Name" and value.strip():
            names.append(NodeName(value.strip().split()[0].split(".")[0]))
    return names


@log_call
def discover_cluster(env: HostEnvironment) -> ClusterTopology:
    """Find the cluster members this host can dispatch to. A standalone host is a cluster of one."""
    current = env.current_node
    if not env.local_node.exists(env.config.paths.corosync_conf):
        logger.debug("No corosync configuration, running standalone")
        return ClusterTopology(current_node=current, nodes=(current,), is_cluster=False)

    members: list[NodeName] = []
    nodes_result = env.local_node.run(["pvecm", "nodes"], timeout_seconds=env.config.waits.command_timeout_seconds)
    if nodes_result.is_success:
        members = parse_pvecm_nodes(nodes_result.stdout)
    if not members:
        status_result = env.local_node.run(
            ["pvecm", "status"], timeout_seconds=env.config.waits.command_timeout_seconds
        )
        if status_result.is_success:
            members = parse_pvecm_status(status_result.stdout)

    if current not in members:
        members.insert(0, current)
    nodes = tuple(dict.fromkeys(members))
    logger.debug("Cluster members: {}", ", ".join(nodes))
    return ClusterTopology(current_node=current, nodes=nodes, is_cluster=True)


def query_cluster_resources(env: HostEnvironment) -> list[dict[str, Any]]:
    """Return the VM and container entries of the cluster resource listing, or [] if unavailable."""
    result = env.local_node.run(
        ["pvesh", "get", "/cluster/resources", "--type", "vm", "--output-format", "json"],
        timeout_seconds=env.config.waits.command_timeout_seconds,
    )
    if not result.is_success:
        logger.debug("Cluster resource query failed: {}", result.stderr.strip())
        return []
    try:
        resources = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        logger.debug("Could not parse cluster resource listing: {}", e)
        return []
    if not isinstance(resources, list):
        return []
    return [entry for entry in resources if isinstance(entry, dict)]


@pure
def _find_resource(resources: Sequence[dict[str, Any]], instance_id: InstanceId, resource_type: str) -> dict[str, Any] | None:
    for entry in resources:
        if str(entry.get("vmid")) == str(instance_id) and entry.get("type") == resource_type:
            return entry
    return None


# =============================================================================
# Remote probes
# =============================================================================


def _connectivity_cache(env: HostEnvironment) -> FileCache:
    return env.cache(_CONNECTIVITY_CACHE, env.config.cache.connectivity_ttl_seconds)


def _probe_node(
    env: HostEnvironment,
    node_name: NodeName,
    instance_id: InstanceId,
    kinds: Sequence[InstanceKind],
    is_listing_checked: bool,
) -> InstanceKind | None:
    """Ask one remote node whether it hosts the instance. Unreachable nodes answer no."""
    connectivity = _connectivity_cache(env)
    if connectivity.get(node_name) is False:
        logger.debug("Skipping node {}, it was unreachable recently", node_name)
        return None
    node: NodeInterface | None = None
    try:
        node = env.connect(node_name)
        for kind in kinds:
            runtime = env.runtime(kind, node)
            if runtime.is_present(instance_id):
                connectivity.set(node_name, True)
                return kind
            if is_listing_checked and instance_id in runtime.list_instance_ids():
                connectivity.set(node_name, True)
                return kind
    except NodeConnectionError as e:
        logger.debug("Node {} is unreachable: {}", node_name, e)
        connectivity.set(node_name, False)
        return None
    finally:
        if node is not None:
            node.disconnect()
    connectivity.set(node_name, True)
    return None


def probe_nodes(
    env: HostEnvironment,
    node_names: Sequence[NodeName],
    instance_id: InstanceId,
    kinds: Sequence[InstanceKind],
    is_listing_checked: bool = False,
) -> tuple[NodeName, InstanceKind] | None:
    """Probe every node in parallel, one worker per node. The first positive answer wins."""
    if not node_names:
        return None
    found: tuple[NodeName, InstanceKind] | None = None
    with ThreadPoolExecutor(max_workers=len(node_names)) as executor:
        futures = {
            executor.submit(_probe_node, env, node_name, instance_id, kinds, is_listing_checked): node_name
            for node_name in node_names
        }
        for future in as_completed(futures):
            kind = future.result()
            if kind is not None and found is None:
                found = (futures[future], kind)
    return found


# =============================================================================
# Classification
# =============================================================================


def _classify_by_volume_naming(env: HostEnvironment, instance_id: InstanceId) -> InstanceKind | None:
    for volume in env.lvm().list_logical_volumes():
        if volume.lv_name.startswith(f"subvol-{instance_id}-disk-"):
            return InstanceKind.CONTAINER
        if volume.lv_name.startswith(f"vm-{instance_id}-disk-"):
            return InstanceKind.VM
    return None


@log_call
def classify(
    env: HostEnvironment,
    instance_id: InstanceId,
    topology: ClusterTopology,
    kind_override: InstanceKind | None = None,
) -> Classification:
    """Decide whether an instance id is a VM or a container.

    Checks run in order and the first success wins. Only the volume naming
    heuristic yields LOW confidence; if nothing matches, the kind is None.
    """
    if kind_override is not None:
        attempt = DetectionAttempt(method=DetectionMethod.OVERRIDE, detail="command line flag", found_kind=kind_override)
        return Classification(instance_id=instance_id, kind=kind_override, confidence=Confidence.HIGH, attempts=(attempt,))

    cache = env.cache(_CLASSIFICATION_CACHE, env.config.cache.classification_ttl_seconds)
    cached_kind = cache.get(instance_id)
    if cached_kind in tuple(InstanceKind):
        kind = InstanceKind(cached_kind)
        attempt = DetectionAttempt(method=DetectionMethod.CACHE, detail="classification cache", found_kind=kind)
        return Classification(instance_id=instance_id, kind=kind, confidence=Confidence.HIGH, attempts=(attempt,))

    attempts: list[DetectionAttempt] = []

    def _found(method: DetectionMethod, detail: str, kind: InstanceKind, confidence: Confidence) -> Classification:
        attempts.append(DetectionAttempt(method=method, detail=detail, found_kind=kind))
        if confidence == Confidence.HIGH:
            cache.set(instance_id, str(kind))
        logger.debug("Classified {} as {} via {}", instance_id, kind, method)
        return Classification(instance_id=instance_id, kind=kind, confidence=confidence, attempts=tuple(attempts))

    for kind in _CLASSIFICATION_ORDER:
        config_path = env.config.paths.instance_config_path(kind, instance_id)
        if env.local_node.exists(config_path):
            return _found(DetectionMethod.CONFIG_FILE, config_path, kind, Confidence.HIGH)
    attempts.append(DetectionAttempt(method=DetectionMethod.CONFIG_FILE, detail=env.config.paths.pve_dir))

    for kind in _CLASSIFICATION_ORDER:
        runtime = env.runtime(kind)
        if runtime.is_present(instance_id):
            return _found(DetectionMethod.STATUS_QUERY, f"{kind.lower()} status", kind, Confidence.HIGH)
    attempts.append(DetectionAttempt(method=DetectionMethod.STATUS_QUERY, detail="pct/qm status"))

    for kind in _CLASSIFICATION_ORDER:
        runtime = env.runtime(kind)
        if instance_id in runtime.list_instance_ids():
            return _found(DetectionMethod.LOCAL_LISTING, f"{kind.lower()} list", kind, Confidence.HIGH)
    attempts.append(DetectionAttempt(method=DetectionMethod.LOCAL_LISTING, detail="pct/qm list"))

    resources = query_cluster_resources(env)
    for kind in _CLASSIFICATION_ORDER:
        if _find_resource(resources, instance_id, env.runtime(kind).cluster_resource_type) is not None:
            return _found(DetectionMethod.CLUSTER_RESOURCES, "pvesh /cluster/resources", kind, Confidence.HIGH)
    attempts.append(DetectionAttempt(method=DetectionMethod.CLUSTER_RESOURCES, detail="pvesh /cluster/resources"))

    if topology.other_nodes:
        remote = probe_nodes(env, topology.other_nodes, instance_id, _CLASSIFICATION_ORDER, is_listing_checked=True)
        if remote is not None:
            node_name, kind = remote
            return _found(DetectionMethod.REMOTE_NODES, f"node {node_name}", kind, Confidence.HIGH)
        attempts.append(
            DetectionAttempt(method=DetectionMethod.REMOTE_NODES, detail=", ".join(topology.other_nodes))
        )

    guessed_kind = _classify_by_volume_naming(env, instance_id)
    if guessed_kind is not None:
        return _found(DetectionMethod.VOLUME_NAMING, "lvs volume names", guessed_kind, Confidence.LOW)
    attempts.append(DetectionAttempt(method=DetectionMethod.VOLUME_NAMING, detail="lvs volume names"))

    logger.debug("Could not classify instance {}", instance_id)
    return Classification(instance_id=instance_id, kind=None, confidence=Confidence.NONE, attempts=tuple(attempts))


def describe_available_instances(env: HostEnvironment) -> str:
    """Render the local VM and container listings, for "not found" messages."""
    sections = []
    for kind in (InstanceKind.VM, InstanceKind.CONTAINER):
        listing = env.runtime(kind).list_instances_text().strip()
        if listing:
            sections.append(f"{kind.lower()}s:\n{listing}")
    return "\n".join(sections)


def require_kind(env: HostEnvironment, classification: Classification) -> InstanceKind:
    """Return the classified kind, refusing to act on a missing or unconfirmed guess."""
    if classification.kind is None:
        raise InstanceNotFoundError(classification, describe_available_instances(env) or None)
    if classification.confidence == Confidence.LOW:
        if not env.is_interactive:
            raise LowConfidenceClassificationError(classification)
        prompt = (
            f"Instance {classification.instance_id} looks like a {classification.kind.lower()} "
            "only from its volume names. Continue?"
        )
        if not env.confirm(prompt, False):
            raise LowConfidenceClassificationError(classification)
    return classification.kind


# =============================================================================
# Location
# =============================================================================


@log_call
def locate(
    env: HostEnvironment,
    instance_id: InstanceId,
    kind: InstanceKind,
    topology: ClusterTopology,
) -> NodeName | None:
    """Find the node currently hosting an instance, or None if no node reports it."""
    runtime = env.runtime(kind)
    if runtime.is_present(instance_id):
        return env.current_node

    if topology.is_cluster:
        resource = _find_resource(query_cluster_resources(env), instance_id, runtime.cluster_resource_type)
        if resource is not None and resource.get("node"):
            return NodeName(str(resource["node"]))

    remote = probe_nodes(env, topology.other_nodes, instance_id, (kind,))
    if remote is not None:
        return remote[0]
    return None


def resolve_instance(
    env: HostEnvironment,
    instance_id: InstanceId,
    kind_override: InstanceKind | None = None,
    topology: ClusterTopology | None = None,
) -> Instance:
    """Classify and locate an instance. Raises if it cannot be found or only its kind was guessed."""
    topology = topology or discover_cluster(env)
    classification = classify(env, instance_id, topology, kind_override)
    kind = require_kind(env, classification)
    owner = locate(env, instance_id, kind, topology)
    if owner is None:
        logger.warning("No node reports instance {}, assuming it lives on {}", instance_id, env.current_node)
    is_local = owner is None or owner == env.current_node
    running_state = env.runtime(kind).get_status(instance_id) if is_local else RunningState.UNKNOWN
    return Instance(id=instance_id, kind=kind, owner_node=owner, running_state=running_state)
