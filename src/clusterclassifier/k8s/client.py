"""Cluster API access through kubectl.

Every call shells out to kubectl and parses its JSON output. The same client
type is used for the management cluster and, through ``for_kubeconfig``, for
any managed cluster.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import subprocess
import tempfile
import threading

from clusterclassifier.api.meta import Resource, as_list
from clusterclassifier.core.errors import ApiError, ConflictError, NotFoundError

logger = logging.getLogger(__name__)


def _run_cmd(argv: list[str], timeout_s: float = 20.0, stdin: str | None = None) -> dict:
    """Run command capturing stdout/stderr. Never raises; returns a dict."""
    try:
        cp = subprocess.run(argv, capture_output=True, text=True, timeout=timeout_s, input=stdin)
        return {
            "argv": argv,
            "ok": cp.returncode == 0,
            "rc": cp.returncode,
            "stdout": cp.stdout,
            "stderr": cp.stderr,
            "error": None,
        }
    except FileNotFoundError as e:
        return {
            "argv": argv,
            "ok": False,
            "rc": 127,
            "stdout": "",
            "stderr": str(e),
            "error": "not_found",
        }
    except subprocess.TimeoutExpired as e:
        return {
            "argv": argv,
            "ok": False,
            "rc": 124,
            "stdout": e.stdout or "",
            "stderr": e.stderr or "",
            "error": "timeout",
        }


def _raise_for(res: dict, what: str) -> None:
    if res["ok"]:
        return
    stderr = (res.get("stderr") or "").strip()
    rc = res.get("rc")
    if res.get("error") == "not_found":
        raise ApiError(f"kubectl not found: {stderr}", reason="kubectl_not_found", rc=rc, stderr=stderr)
    if res.get("error") == "timeout":
        raise ApiError(f"{what}: timed out", reason="timeout", rc=rc, stderr=stderr)
    lowered = stderr.lower()
    if "(notfound)" in lowered or "not found" in lowered:
        raise NotFoundError(f"{what}: not found", rc=rc, stderr=stderr)
    if "(alreadyexists)" in lowered or "already exists" in lowered:
        raise ConflictError(f"{what}: already exists", reason="already_exists", rc=rc, stderr=stderr)
    if "(conflict)" in lowered or "the object has been modified" in lowered:
        raise ConflictError(f"{what}: conflict", rc=rc, stderr=stderr)
    raise ApiError(f"{what}: {stderr or 'kubectl failed'}", rc=rc, stderr=stderr)


def _load_json(res: dict, what: str) -> dict:
    try:
        payload = json.loads(res.get("stdout") or "")
    except json.JSONDecodeError as exc:
        raise ApiError(f"{what}: kubectl returned invalid json", reason="invalid_json") from exc
    if not isinstance(payload, dict):
        raise ApiError(f"{what}: kubectl returned unexpected json", reason="invalid_json")
    return payload


def label_selector(labels: dict[str, str]) -> str:
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


class KubectlClient:
    def __init__(self, kubectl: str = "kubectl", kubeconfig: str | None = None, timeout_s: float = 20.0) -> None:
        self.kubectl = kubectl
        self.kubeconfig = kubeconfig
        self.timeout_s = timeout_s
        self._lock = threading.Lock()
        self._remotes: dict[str, KubectlClient] = {}
        self._tmpdir: str | None = None

    def _base(self) -> list[str]:
        argv = [self.kubectl]
        if self.kubeconfig:
            argv += ["--kubeconfig", self.kubeconfig]
        return argv

    @staticmethod
    def _namespace_args(kind: type[Resource], namespace: str | None) -> list[str]:
        if kind.NAMESPACED and namespace:
            return ["-n", namespace]
        return []

    def _run(self, argv: list[str], what: str, stdin: str | None = None) -> dict:
        logger.debug("running %s", " ".join(argv))
        res = _run_cmd(argv, timeout_s=self.timeout_s, stdin=stdin)
        _raise_for(res, what)
        return res

    def get(self, kind: type[Resource], name: str, namespace: str = ""):
        what = f"get {kind.KIND} {namespace}/{name}" if namespace else f"get {kind.KIND} {name}"
        argv = self._base() + ["get", kind.RESOURCE, name] + self._namespace_args(kind, namespace) + ["-o", "json"]
        return kind.from_dict(_load_json(self._run(argv, what), what))

    def list(self, kind: type[Resource], namespace: str | None = None, labels: dict[str, str] | None = None) -> list:
        what = f"list {kind.KIND}"
        argv = self._base() + ["get", kind.RESOURCE]
        if kind.NAMESPACED:
            argv += ["-n", namespace] if namespace else ["--all-namespaces"]
        if labels:
            argv += ["-l", label_selector(labels)]
        argv += ["-o", "json"]
        payload = _load_json(self._run(argv, what), what)
        return [kind.from_dict(item) for item in as_list(payload.get("items")) if isinstance(item, dict)]

    def _write(self, verb: list[str], obj: Resource, what: str) -> Resource:
        argv = self._base() + verb + ["-f", "-", "-o", "json"]
        body = obj.to_dict()
        res = self._run(argv, what, stdin=json.dumps(body))
        updated = type(obj).from_dict(_load_json(res, what))
        obj.metadata.resource_version = updated.metadata.resource_version
        obj.raw = updated.raw
        return updated

    def create(self, obj: Resource) -> Resource:
        return self._write(["create"], obj, f"create {obj.KIND} {obj.name}")

    def update(self, obj: Resource) -> Resource:
        return self._write(["replace"], obj, f"update {obj.KIND} {obj.name}")

    def update_status(self, obj: Resource) -> Resource:
        return self._write(["replace", "--subresource=status"], obj, f"update status {obj.KIND} {obj.name}")

    def delete(self, kind: type[Resource], name: str, namespace: str = "") -> None:
        what = f"delete {kind.KIND} {name}"
        argv = self._base() + ["delete", kind.RESOURCE, name] + self._namespace_args(kind, namespace) + ["--wait=false"]
        self._run(argv, what)

    def apply_manifest(self, manifest: str) -> None:
        argv = self._base() + ["apply", "-f", "-"]
        self._run(argv, "apply manifest", stdin=manifest)

    def for_kubeconfig(self, kubeconfig: bytes) -> KubectlClient:
        """Return a client talking to the cluster described by ``kubeconfig``.

        Clients are cached per kubeconfig content.
        """
        digest = hashlib.sha256(kubeconfig).hexdigest()
        with self._lock:
            remote = self._remotes.get(digest)
            if remote is not None:
                return remote
            if self._tmpdir is None:
                self._tmpdir = tempfile.mkdtemp(prefix="classifier-kubeconfig-")
            path = os.path.join(self._tmpdir, f"{digest[:16]}.kubeconfig")
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(kubeconfig)
            remote = KubectlClient(self.kubectl, kubeconfig=path, timeout_s=self.timeout_s)
            self._remotes[digest] = remote
            return remote


