"""Derive a cluster fingerprint from live cluster objects.

Classification is deterministic and table-driven: every lookup table below
is an ordered tuple of ``(pattern, canonical-name)`` pairs and the first
pattern that matches wins, whatever order the API server lists objects in.

Collection has two tiers.  The server version, the ``kube-system``
namespace and the node list are required; if any of them fails the whole
collection fails with :class:`CollectionError`.  Everything after that is
best effort: a failed query is logged and the detection falls back to a
neutral ``unknown`` / ``none`` value.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, TypeVar

from rke2_security_responder.cluster import ClusterAPI, ClusterAPIError
from rke2_security_responder.config import CollectionMode
from rke2_security_responder.context import RunContext
from rke2_security_responder.models import FactSet, FieldValue, NodeInfo, Workload
from rke2_security_responder.quantity import parse_quantity, quantity_to_int

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ──────────────────────────── Lookup tables ───────────────────────────────────

SYSTEM_NAMESPACE = "kube-system"

CONTROL_PLANE_LABELS = (
    "node-role.kubernetes.io/control-plane",
    "node-role.kubernetes.io/master",
)

SELINUX_LABEL = "security.alpha.kubernetes.io/selinux"

# Extended resource name → vendor.
GPU_RESOURCES: tuple[tuple[str, str], ...] = (
    ("nvidia.com/gpu", "nvidia"),
    ("amd.com/gpu", "amd"),
    ("intel.com/gpu", "intel"),
)

# canal bundles calico and flannel, so it is checked before either.
CNI_PATTERNS: tuple[tuple[str, str], ...] = (
    ("canal", "canal"),
    ("flannel", "flannel"),
    ("calico", "calico"),
    ("cilium", "cilium"),
    ("weave", "weave"),
)

INGRESS_PATTERNS: tuple[tuple[str, str], ...] = (
    ("nginx-ingress", "rke2-ingress-nginx"),
    ("rke2-ingress-nginx", "rke2-ingress-nginx"),
    ("traefik", "traefik"),
)

# Operator namespace → operator name.
GPU_OPERATOR_NAMESPACES: tuple[tuple[str, str], ...] = (
    ("gpu-operator", "nvidia-gpu-operator"),
    ("kube-amd-gpu", "amd-gpu-operator"),
    ("inteldeviceplugins-system", "intel-device-plugins"),
)

GPU_OPERATOR_MARKERS = ("device-plugin", "driver")

RANCHER_NAMESPACE = "cattle-system"
RANCHER_AGENT_DEPLOYMENT = "cattle-cluster-agent"
RANCHER_INSTALL_UUID_ENV = "CATTLE_INSTALL_UUID"

IP_STACK_SERVICE_NAMESPACE = "default"
IP_STACK_SERVICE_NAME = "kubernetes"

UNKNOWN = "unknown"
NONE = "none"
NOT_COLLECTED = -1


class CollectionError(RuntimeError):
    """A required collection step failed; no fact-set can be produced."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"failed to get {stage}: {cause}")
        self.stage = stage


# ──────────────────────────── Heuristics ──────────────────────────────────────


def extract_image_version(image: str) -> str:
    """Return the tag portion of a container image reference.

    Takes everything after the *last* colon, cut at an ``@``.  For a
    digest-pinned image this yields the digest hex rather than the tag:
    ``nginx:v1.0.0@sha256:abc123`` → ``abc123``.
    """
    idx = image.rfind(":")
    if idx == -1:
        return ""
    tag = image[idx + 1 :]
    at = tag.find("@")
    if at != -1:
        tag = tag[:at]
    return tag


def is_control_plane_node(node: NodeInfo) -> bool:
    return any(label in node.labels for label in CONTROL_PLANE_LABELS)


def selinux_status(node: NodeInfo) -> str:
    """``enabled``, ``disabled`` or ``unknown`` from the SELinux node label."""
    value = node.labels.get(SELINUX_LABEL)
    if value is None:
        return UNKNOWN
    return "enabled" if value == "enabled" else "disabled"


def _whole_positive(quantity: str) -> bool:
    """True for a positive integral quantity; ``"500m"`` GPUs do not count."""
    try:
        value = parse_quantity(quantity)
    except ValueError:
        return False
    return value > 0 and value == value.to_integral_value()


def gpu_vendor(node: NodeInfo) -> str:
    """Vendor of the first GPU resource the node advertises, or ``""``."""
    for resource, vendor in GPU_RESOURCES:
        quantity = node.allocatable.get(resource)
        if quantity is not None and _whole_positive(quantity):
            return vendor
    return ""


def match_workloads(
    workloads: list[Workload], patterns: tuple[tuple[str, str], ...]
) -> tuple[str, str] | None:
    """Return ``(canonical_name, version)`` for the first matching pattern.

    Patterns are tried in table order; within a pattern, workloads are tried
    in the order given.  Names are compared case-insensitively.
    """
    for pattern, canonical in patterns:
        for wl in workloads:
            if pattern in wl.name.lower():
                return canonical, extract_image_version(wl.first_image)
    return None


def _allocatable_int(node: NodeInfo, resource: str) -> int:
    quantity = node.allocatable.get(resource)
    if quantity is None:
        return 0
    try:
        return quantity_to_int(quantity)
    except ValueError:
        logger.debug("Ignoring unparseable %s quantity %r on node %s", resource, quantity, node.name)
        return 0


@dataclass
class NodeSummary:
    """Aggregates over the node list."""

    server_nodes: int = 0
    agent_nodes: int = 0
    server_cpu: int = 0
    agent_cpu: int = 0
    server_memory: int = 0
    agent_memory: int = 0
    gpu_nodes: int = 0
    gpu_vendor: str = ""
    os_image: str = ""
    kernel_version: str = ""
    architecture: str = ""
    selinux: str = UNKNOWN
    sampled: bool = False

    @property
    def total_nodes(self) -> int:
        return self.server_nodes + self.agent_nodes


def summarize_nodes(nodes: list[NodeInfo]) -> NodeSummary:
    """Count and classify nodes.

    OS image, kernel, architecture and SELinux status come from the first
    node only; heterogeneous clusters are not aggregated.
    """
    summary = NodeSummary()
    for node in nodes:
        cpu = _allocatable_int(node, "cpu")
        memory = _allocatable_int(node, "memory")
        if is_control_plane_node(node):
            summary.server_nodes += 1
            summary.server_cpu += cpu
            summary.server_memory += memory
        else:
            summary.agent_nodes += 1
            summary.agent_cpu += cpu
            summary.agent_memory += memory

        if not summary.sampled:
            summary.os_image = node.os_image
            summary.kernel_version = node.kernel_version
            summary.architecture = node.architecture
            summary.selinux = selinux_status(node)
            summary.sampled = True

        vendor = gpu_vendor(node)
        if vendor:
            summary.gpu_nodes += 1
            if not summary.gpu_vendor:
                summary.gpu_vendor = vendor
    return summary


@dataclass
class ManagementLayer:
    """Rancher management detection result."""

    managed: bool = False
    version: str = ""
    install_uuid: str = ""


# ──────────────────────────── Collector ───────────────────────────────────────


class Collector:
    """Query a cluster and build a :class:`FactSet`.

    Parameters
    ----------
    api : ClusterAPI
        Read-only cluster access.
    mode : CollectionMode
        ``minimal`` replaces counts and sizes with ``-1`` and blanks the
        management-layer details.
    ctx : RunContext | None
        Checked before every query; cancellation is never downgraded.
    log : logging.Logger | None
        Logger to report progress to.  Defaults to this module's logger.
    """

    def __init__(
        self,
        api: ClusterAPI,
        mode: CollectionMode | str = CollectionMode.RECOMMENDED,
        *,
        ctx: RunContext | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.api = api
        self.mode = CollectionMode(mode)
        self.ctx = ctx or RunContext()
        self.log = log or logger

    @property
    def minimal(self) -> bool:
        return self.mode is CollectionMode.MINIMAL

    # ── Entry point ───────────────────────────────────────────────────────

    def collect(self) -> FactSet:
        tags: dict[str, str] = {}
        fields: dict[str, FieldValue] = {"mode": self.mode.value}

        self.log.debug("Collecting server version")
        version = self._required("server version", self.api.server_version)
        tags["kubernetesVersion"] = version
        self.log.debug("Collected version %s", version)

        self.log.debug("Collecting cluster UUID from %s namespace", SYSTEM_NAMESPACE)
        namespace = self._required(
            f"{SYSTEM_NAMESPACE} namespace", lambda: self.api.get_namespace(SYSTEM_NAMESPACE)
        )
        tags["clusteruuid"] = namespace.uid
        self.log.debug("Collected cluster UUID %s", namespace.uid)

        self.log.debug("Collecting node information")
        nodes = self._required("node list", self.api.list_nodes)
        fields.update(self._node_fields(summarize_nodes(nodes)))

        self.log.debug("Detecting CNI plugin")
        cni, cni_version = self.detect_cni_plugin()
        fields["cni-plugin"] = cni
        if cni_version:
            fields["cni-version"] = cni_version
        self.log.debug("Detected CNI plugin=%s version=%s", cni, cni_version)

        self.log.debug("Detecting ingress controller")
        ingress, ingress_version = self.detect_ingress_controller()
        fields["ingress-controller"] = ingress
        if ingress_version:
            fields["ingress-version"] = ingress_version
        self.log.debug("Detected ingress controller=%s version=%s", ingress, ingress_version)

        self.log.debug("Detecting GPU operator")
        operator, operator_version = self.detect_gpu_operator()
        if operator != NONE:
            fields["gpu-operator"] = operator
            if operator_version:
                fields["gpu-operator-version"] = operator_version
        self.log.debug("Detected GPU operator=%s version=%s", operator, operator_version)

        self.log.debug("Detecting Rancher management")
        rancher = self.detect_management_layer()
        fields["rancher-managed"] = rancher.managed
        if self.minimal:
            fields["rancher-version"] = ""
            fields["rancher-install-uuid"] = ""
        else:
            if rancher.version:
                fields["rancher-version"] = rancher.version
            if rancher.install_uuid:
                fields["rancher-install-uuid"] = rancher.install_uuid
        self.log.debug(
            "Detected Rancher managed=%s version=%s installUUID=%s",
            rancher.managed,
            rancher.version,
            rancher.install_uuid,
        )

        self.log.debug("Detecting IP stack")
        fields["ip-stack"] = self.detect_ip_stack()
        self.log.debug("Detected IP stack %s", fields["ip-stack"])

        return FactSet(app_version=version, extra_tags=tags, extra_fields=fields)

    # ── Helpers ───────────────────────────────────────────────────────────

    def _required(self, stage: str, query: Callable[[], T]) -> T:
        self.ctx.check()
        try:
            return query()
        except ClusterAPIError as exc:
            raise CollectionError(stage, exc) from exc

    def _node_fields(self, summary: NodeSummary) -> dict[str, FieldValue]:
        fields: dict[str, FieldValue] = {}
        if self.minimal:
            for key in (
                "serverNodeCount",
                "agentNodeCount",
                "serverCPU",
                "agentCPU",
                "serverMemory",
                "agentMemory",
            ):
                fields[key] = NOT_COLLECTED
        else:
            fields["serverNodeCount"] = summary.server_nodes
            fields["agentNodeCount"] = summary.agent_nodes
            fields["serverCPU"] = summary.server_cpu
            fields["agentCPU"] = summary.agent_cpu
            fields["serverMemory"] = summary.server_memory
            fields["agentMemory"] = summary.agent_memory

        if summary.sampled:
            fields["os"] = summary.os_image
            fields["kernel"] = summary.kernel_version
            fields["arch"] = summary.architecture
        fields["selinux"] = summary.selinux

        fields["gpuNodeCount"] = NOT_COLLECTED if self.minimal else summary.gpu_nodes
        if summary.gpu_vendor:
            fields["gpu-vendor"] = summary.gpu_vendor

        self.log.debug(
            "Collected nodes server=%d agent=%d os=%s kernel=%s arch=%s selinux=%s gpu-nodes=%d",
            summary.server_nodes,
            summary.agent_nodes,
            summary.os_image,
            summary.kernel_version,
            summary.architecture,
            summary.selinux,
            summary.gpu_nodes,
        )
        return fields

    # ── Detections ────────────────────────────────────────────────────────

    def detect_cni_plugin(self) -> tuple[str, str]:
        self.ctx.check()
        try:
            daemonsets = self.api.list_daemonsets(SYSTEM_NAMESPACE)
        except ClusterAPIError as exc:
            self.log.warning("Failed to detect CNI plugin: %s", exc)
            return UNKNOWN, ""
        return match_workloads(daemonsets, CNI_PATTERNS) or (UNKNOWN, "")

    def detect_ingress_controller(self) -> tuple[str, str]:
        self.ctx.check()
        try:
            deployments = self.api.list_deployments(SYSTEM_NAMESPACE)
        except ClusterAPIError as exc:
            self.log.warning("Failed to detect ingress controller: %s", exc)
            return UNKNOWN, ""
        found = match_workloads(deployments, INGRESS_PATTERNS)
        if found:
            return found

        self.ctx.check()
        try:
            daemonsets = self.api.list_daemonsets(SYSTEM_NAMESPACE)
        except ClusterAPIError as exc:
            self.log.warning("Failed to list daemon-sets for ingress detection: %s", exc)
            return NONE, ""
        return match_workloads(daemonsets, INGRESS_PATTERNS) or (NONE, "")

    def detect_gpu_operator(self) -> tuple[str, str]:
        for namespace, operator in GPU_OPERATOR_NAMESPACES:
            self.ctx.check()
            try:
                daemonsets = self.api.list_daemonsets(namespace)
            except ClusterAPIError as exc:
                self.log.debug("Skipping GPU operator namespace %s: %s", namespace, exc)
                continue
            for ds in daemonsets:
                name = ds.name.lower()
                if any(marker in name for marker in GPU_OPERATOR_MARKERS):
                    return operator, extract_image_version(ds.first_image)
        return NONE, ""

    def detect_management_layer(self) -> ManagementLayer:
        self.ctx.check()
        try:
            self.api.get_namespace(RANCHER_NAMESPACE)
        except ClusterAPIError as exc:
            if not exc.not_found:
                self.log.warning("Failed to look up %s namespace: %s", RANCHER_NAMESPACE, exc)
            return ManagementLayer(managed=False)

        self.ctx.check()
        try:
            agent = self.api.get_deployment(RANCHER_NAMESPACE, RANCHER_AGENT_DEPLOYMENT)
        except ClusterAPIError as exc:
            if not exc.not_found:
                self.log.warning("Failed to look up %s: %s", RANCHER_AGENT_DEPLOYMENT, exc)
            return ManagementLayer(managed=True)

        if not agent.containers:
            return ManagementLayer(managed=True)
        container = agent.containers[0]
        return ManagementLayer(
            managed=True,
            version=extract_image_version(container.image),
            install_uuid=container.env.get(RANCHER_INSTALL_UUID_ENV, ""),
        )

    def detect_ip_stack(self) -> str:
        self.ctx.check()
        try:
            service = self.api.get_service(IP_STACK_SERVICE_NAMESPACE, IP_STACK_SERVICE_NAME)
        except ClusterAPIError as exc:
            if not exc.not_found:
                self.log.warning("Failed to detect IP stack: %s", exc)
            return UNKNOWN

        families = set(service.ip_families)
        if len(service.ip_families) >= 2:
            return "dual-stack"
        if families == {"IPv4"}:
            return "ipv4-only"
        if families == {"IPv6"}:
            return "ipv6-only"
        return UNKNOWN


def collect(
    api: ClusterAPI,
    mode: CollectionMode | str = CollectionMode.RECOMMENDED,
    *,
    ctx: RunContext | None = None,
    log: logging.Logger | None = None,
) -> FactSet:
    """Run one collection cycle."""
    return Collector(api, mode, ctx=ctx, log=log).collect()
