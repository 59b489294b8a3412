"""Read-only Kubernetes cluster access via kubectl subprocess calls.

All calls go through ``kubectl`` so the responder uses whatever in-cluster
service account or kubeconfig is active. There is no in-process
Kubernetes client library.

Only ``get`` verbs are issued; the client has no write path at all.
Every command is logged at DEBUG for auditability.
"""

from __future__ import annotations

import json
import logging
import shlex
import subprocess
from dataclasses import dataclass, field
from typing import Any, Protocol

from rke2_security_responder.context import RunContext
from rke2_security_responder.models import NamespaceInfo, NodeInfo, ServiceInfo, Workload

logger = logging.getLogger(__name__)

# Cap on captured kubectl output per stream.
_MAX_OUTPUT_BYTES = 4 * 1024 * 1024


class ClusterAPIError(RuntimeError):
    """A cluster query failed or returned something we could not parse."""

    def __init__(self, message: str, *, command: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.command = command
        self.stderr = stderr

    @property
    def not_found(self) -> bool:
        return "(NotFound)" in self.stderr or "NotFound" in str(self)


class ClusterAPI(Protocol):
    """The read operations the collector needs from a cluster."""

    def server_version(self) -> str: ...

    def get_namespace(self, name: str) -> NamespaceInfo: ...

    def list_nodes(self) -> list[NodeInfo]: ...

    def list_daemonsets(self, namespace: str) -> list[Workload]: ...

    def list_deployments(self, namespace: str) -> list[Workload]: ...

    def get_deployment(self, namespace: str, name: str) -> Workload: ...

    def get_service(self, namespace: str, name: str) -> ServiceInfo: ...


@dataclass
class CommandResult:
    """Result of a kubectl command execution."""

    command: str
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def summary(self) -> str:
        if self.ok:
            return self.stdout[:2000] if len(self.stdout) > 2000 else self.stdout
        return f"ERROR (rc={self.returncode}): {self.stderr[:1000]}"


@dataclass
class ClusterClient:
    """Interface to a Kubernetes cluster via kubectl.

    Parameters
    ----------
    kubeconfig : str
        Path to kubeconfig file.  Empty string means in-cluster / default.
    context : str
        Kubernetes context to use.  Empty string means use the current context.
    timeout : int
        Per-command timeout in seconds, further bounded by *ctx*.
    ctx : RunContext | None
        Run-wide deadline and cancellation flag.
    """

    kubeconfig: str = ""
    context: str = ""
    timeout: int = 30
    ctx: RunContext | None = None
    _base_cmd: list[str] = field(init=False, default_factory=list)

    def __post_init__(self) -> None:
        self._base_cmd = ["kubectl"]
        if self.kubeconfig:
            self._base_cmd += ["--kubeconfig", self.kubeconfig]
        if self.context:
            self._base_cmd += ["--context", self.context]

    # ── Low-level executor ────────────────────────────────────────────────

    def _run(self, args: list[str]) -> CommandResult:
        """Run a kubectl command and return the result."""
        timeout: float = self.timeout
        if self.ctx is not None:
            self.ctx.check()
            timeout = self.ctx.bound(timeout)

        cmd = self._base_cmd + args
        cmd_str = shlex.join(cmd)
        logger.debug("kubectl: %s", cmd_str)

        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
            return CommandResult(
                command=cmd_str,
                returncode=proc.returncode,
                stdout=proc.stdout[:_MAX_OUTPUT_BYTES],
                stderr=proc.stderr[:_MAX_OUTPUT_BYTES],
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                command=cmd_str,
                returncode=-1,
                stdout="",
                stderr=f"Command timed out after {timeout:g}s",
            )
        except FileNotFoundError:
            return CommandResult(
                command=cmd_str,
                returncode=-1,
                stdout="",
                stderr="kubectl not found. Is it installed and on the PATH?",
            )

    def _get_json(self, args: list[str]) -> dict[str, Any]:
        """Run a ``get`` command and decode its JSON output."""
        result = self._run(args)
        if not result.ok:
            raise ClusterAPIError(
                result.summary, command=result.command, stderr=result.stderr
            )
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise ClusterAPIError(
                f"invalid JSON from {result.command}: {exc}", command=result.command
            ) from exc
        if not isinstance(data, dict):
            raise ClusterAPIError(
                f"unexpected output from {result.command}", command=result.command
            )
        return data

    def _list(self, kind: str, namespace: str = "") -> list[dict[str, Any]]:
        args = ["get", kind, "-o", "json"]
        if namespace:
            args += ["-n", namespace]
        return self._get_json(args).get("items") or []

    # ── Read operations ───────────────────────────────────────────────────

    def server_version(self) -> str:
        """Return the API server's ``gitVersion`` (e.g. ``v1.32.2+rke2r1``)."""
        data = self._get_json(["get", "--raw", "/version"])
        version = data.get("gitVersion", "")
        if not version:
            raise ClusterAPIError("server did not report a gitVersion", command="/version")
        return version

    def get_namespace(self, name: str) -> NamespaceInfo:
        return NamespaceInfo.from_manifest(
            self._get_json(["get", "namespace", name, "-o", "json"])
        )

    def list_nodes(self) -> list[NodeInfo]:
        return [NodeInfo.from_manifest(item) for item in self._list("nodes")]

    def list_daemonsets(self, namespace: str) -> list[Workload]:
        return [
            Workload.from_manifest(item, kind="DaemonSet")
            for item in self._list("daemonsets", namespace)
        ]

    def list_deployments(self, namespace: str) -> list[Workload]:
        return [
            Workload.from_manifest(item, kind="Deployment")
            for item in self._list("deployments", namespace)
        ]

    def get_deployment(self, namespace: str, name: str) -> Workload:
        return Workload.from_manifest(
            self._get_json(["get", "deployment", name, "-n", namespace, "-o", "json"]),
            kind="Deployment",
        )

    def get_service(self, namespace: str, name: str) -> ServiceInfo:
        return ServiceInfo.from_manifest(
            self._get_json(["get", "service", name, "-n", namespace, "-o", "json"])
        )
