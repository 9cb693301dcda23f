import hashlib

from fakes import make_classifier

from clusterclassifier.api.classifier import ClassifierSpec, LabelFilter
from clusterclassifier.core.fingerprint import canonical_json_bytes, classifier_hash, fingerprint, spec_hash


def test_spec_hash_is_stable_across_calls() -> None:
    classifier = make_classifier("acme-x", {"issuer": "acme-x"})
    assert spec_hash(classifier.spec) == spec_hash(classifier.spec)
    assert classifier_hash(classifier) == spec_hash(classifier.spec)
    assert len(spec_hash(classifier.spec)) == 32


def test_spec_hash_ignores_dict_key_order() -> None:
    a = ClassifierSpec.from_dict({"classifierLabels": [{"key": "env", "value": "prod"}], "deployedResourceConstraints": []})
    b = ClassifierSpec.from_dict({"deployedResourceConstraints": [], "classifierLabels": [{"value": "prod", "key": "env"}]})
    assert spec_hash(a) == spec_hash(b)


def test_changing_any_predicate_field_changes_hash() -> None:
    base = make_classifier("acme-x")
    before = spec_hash(base.spec)

    changed = make_classifier("acme-x")
    changed.spec.deployed_resource_constraints[0].min_count = 2
    assert spec_hash(changed.spec) != before

    changed = make_classifier("acme-x")
    changed.spec.deployed_resource_constraints[0].label_filters.append(LabelFilter("app", "Equal", "web"))
    assert spec_hash(changed.spec) != before

    changed = make_classifier("acme-x", kind="StatefulSet")
    assert spec_hash(changed.spec) != before


def test_constraint_order_matters() -> None:
    spec = ClassifierSpec.from_dict(
        {
            "deployedResourceConstraints": [
                {"group": "", "version": "v1", "kind": "Pod"},
                {"group": "apps", "version": "v1", "kind": "Deployment"},
            ]
        }
    )
    reversed_spec = ClassifierSpec.from_dict(
        {
            "deployedResourceConstraints": [
                {"group": "apps", "version": "v1", "kind": "Deployment"},
                {"group": "", "version": "v1", "kind": "Pod"},
            ]
        }
    )
    assert spec_hash(spec) != spec_hash(reversed_spec)


def test_fingerprint_without_credential_is_spec_hash() -> None:
    spec = make_classifier("acme-x").spec
    assert fingerprint(spec) == spec_hash(spec)
    assert fingerprint(spec, None, "https://mgmt:6443") == spec_hash(spec)


def test_fingerprint_folds_credential_and_endpoint() -> None:
    spec = make_classifier("acme-x").spec
    expected = hashlib.sha256(spec_hash(spec) + b"kubeconfig-a" + b"https://mgmt:6443").digest()
    assert fingerprint(spec, b"kubeconfig-a", "https://mgmt:6443") == expected
    # rotating the credential alone changes the fingerprint
    assert fingerprint(spec, b"kubeconfig-b", "https://mgmt:6443") != expected


def test_canonical_json_bytes_is_compact_and_sorted() -> None:
    assert canonical_json_bytes({"b": 1, "a": [2, 1]}) == b'{"a":[2,1],"b":1}'
