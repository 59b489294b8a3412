"""Shared test fixtures."""

from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from rke2_security_responder.cluster import ClusterAPIError
from rke2_security_responder.models import (
    ContainerSpec,
    NamespaceInfo,
    NodeInfo,
    ServiceInfo,
    Workload,
)


def _not_found(kind: str, name: str) -> ClusterAPIError:
    return ClusterAPIError(
        f'Error from server (NotFound): {kind} "{name}" not found',
        stderr=f'Error from server (NotFound): {kind} "{name}" not found',
    )


@dataclass
class FakeCluster:
    """In-memory stand-in for ClusterClient.

    ``failures`` maps a method name to the exception it should raise, so a
    test can break a single query and watch the collector degrade.
    """

    version: str = "v1.32.2+rke2r1"
    namespaces: dict[str, str] = field(default_factory=lambda: {"kube-system": "test-cluster-uuid"})
    nodes: list[NodeInfo] = field(default_factory=list)
    daemonsets: list[Workload] = field(default_factory=list)
    deployments: list[Workload] = field(default_factory=list)
    services: list[ServiceInfo] = field(default_factory=list)
    failures: dict[str, Exception] = field(default_factory=dict)
    calls: list[str] = field(default_factory=list)

    def _maybe_fail(self, method: str) -> None:
        self.calls.append(method)
        if method in self.failures:
            raise self.failures[method]

    def server_version(self) -> str:
        self._maybe_fail("server_version")
        return self.version

    def get_namespace(self, name: str) -> NamespaceInfo:
        self._maybe_fail("get_namespace")
        if name not in self.namespaces:
            raise _not_found("namespaces", name)
        return NamespaceInfo(name=name, uid=self.namespaces[name])

    def list_nodes(self) -> list[NodeInfo]:
        self._maybe_fail("list_nodes")
        return list(self.nodes)

    def list_daemonsets(self, namespace: str) -> list[Workload]:
        self._maybe_fail("list_daemonsets")
        return [d for d in self.daemonsets if d.namespace == namespace]

    def list_deployments(self, namespace: str) -> list[Workload]:
        self._maybe_fail("list_deployments")
        return [d for d in self.deployments if d.namespace == namespace]

    def get_deployment(self, namespace: str, name: str) -> Workload:
        self._maybe_fail("get_deployment")
        for d in self.deployments:
            if d.namespace == namespace and d.name == name:
                return d
        raise _not_found("deployments.apps", name)

    def get_service(self, namespace: str, name: str) -> ServiceInfo:
        self._maybe_fail("get_service")
        for s in self.services:
            if s.namespace == namespace and s.name == name:
                return s
        raise _not_found("services", name)


def make_node(
    name: str,
    *,
    control_plane: bool = False,
    labels: dict[str, str] | None = None,
    allocatable: dict[str, str] | None = None,
    os_image: str = "Ubuntu 22.04",
    kernel: str = "5.15.0",
    arch: str = "amd64",
) -> NodeInfo:
    node_labels = dict(labels or {})
    if control_plane:
        node_labels["node-role.kubernetes.io/control-plane"] = "true"
    return NodeInfo(
        name=name,
        labels=node_labels,
        os_image=os_image,
        kernel_version=kernel,
        architecture=arch,
        allocatable=allocatable or {},
    )


def make_workload(
    kind: str,
    name: str,
    namespace: str = "kube-system",
    image: str = "",
    env: dict[str, str] | None = None,
) -> Workload:
    containers = [ContainerSpec(name=name, image=image, env=env or {})] if image else []
    return Workload(kind=kind, name=name, namespace=namespace, containers=containers)


@pytest.fixture()
def cluster() -> FakeCluster:
    """A small healthy cluster: one server, two agents, nothing else installed."""
    return FakeCluster(
        nodes=[
            make_node("server-1", control_plane=True),
            make_node("agent-1"),
            make_node("agent-2"),
        ]
    )
