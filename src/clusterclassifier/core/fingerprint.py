"""Content fingerprints used to decide whether a deployment is still current."""

from __future__ import annotations

import hashlib
import json

from clusterclassifier.api.classifier import Classifier, ClassifierSpec


def canonical_json_bytes(obj: dict) -> bytes:
    """Serialize object to deterministic UTF-8 JSON bytes.

    Keys are sorted, list order is kept as written.
    """
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def spec_hash(spec: ClassifierSpec) -> bytes:
    return hashlib.sha256(canonical_json_bytes(spec.to_dict())).digest()


def classifier_hash(classifier: Classifier) -> bytes:
    return spec_hash(classifier.spec)


def fingerprint(spec: ClassifierSpec, kubeconfig: bytes | None = None, endpoint: str = "") -> bytes:
    """Return the digest recorded for a deployment of ``spec``.

    When the agent pushes reports, the kubeconfig it was handed and the
    management endpoint are folded in by plain concatenation, so rotating the
    credential alone triggers a redeploy.
    """
    current = spec_hash(spec)
    if kubeconfig is None:
        return current
    return hashlib.sha256(current + kubeconfig + endpoint.encode("utf-8")).digest()
