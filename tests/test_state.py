"""Tests for manifest loading and the state file."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from baas_operator.config import MAX_MANIFEST_FILE_SIZE_BYTES
from baas_operator.errors import PreconditionError
from baas_operator.models import DesiredSpec, ResourceRecord
from baas_operator.state import (
    DeclaredResource,
    Manifest,
    ManifestLoadError,
    StateEntry,
    StateFileError,
    StateStore,
    load_manifest,
)

MANIFEST = """
resources:
  - name: cons1
    kind: consortium
    attributes:
      name: My Consortium
      description: test
  - name: env1
    kind: environment
    parentKeys:
      consortium_id: "@cons1"
    attributes:
      name: env1
      env_type: quorum
      consensus_type: raft
    timeoutSeconds: 900
  - name: zone1
    kind: czone
    parentKeys:
      consortium_id: "@cons1"
    attributes:
      cloud: aws
      region: us-east-2
    sharedDeployment: true
"""


def write(tmp_path: Path, content: str, name: str = "manifest.yaml") -> Path:
    path = tmp_path / name
    path.write_text(content)
    return path


class TestLoadManifest:
    """Tests for load_manifest."""

    def test_valid_manifest(self, tmp_path: Path) -> None:
        """Test loading a manifest with references."""
        manifest = load_manifest(write(tmp_path, MANIFEST))

        assert [r.name for r in manifest.resources] == ["cons1", "env1", "zone1"]
        env = manifest.resources[1]
        assert env.kind == "environment"
        assert env.references() == {"consortium_id": "cons1"}
        assert env.timeout_seconds == 900
        assert manifest.resources[2].shared_deployment is True

    def test_file_not_found(self, tmp_path: Path) -> None:
        """Test missing manifest."""
        with pytest.raises(ManifestLoadError, match="not found"):
            load_manifest(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test YAML syntax errors."""
        with pytest.raises(ManifestLoadError, match="Invalid YAML"):
            load_manifest(write(tmp_path, "resources: [\n"))

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        """Test a top-level list."""
        with pytest.raises(ManifestLoadError, match="YAML mapping"):
            load_manifest(write(tmp_path, "- name: a\n"))

    def test_too_large(self, tmp_path: Path) -> None:
        """Test the size limit."""
        path = write(tmp_path, "#" * (MAX_MANIFEST_FILE_SIZE_BYTES + 1))
        with pytest.raises(ManifestLoadError, match="exceeds maximum size"):
            load_manifest(path)

    def test_unknown_kind(self, tmp_path: Path) -> None:
        """Test that unknown kinds are reported with their location."""
        content = "resources:\n  - name: x\n    kind: ledger\n"
        with pytest.raises(ManifestLoadError) as exc_info:
            load_manifest(write(tmp_path, content))

        message = str(exc_info.value)
        assert "Validation failed" in message
        assert "resources.0.kind" in message

    def test_unknown_field(self, tmp_path: Path) -> None:
        """Test that typos in resource fields fail."""
        content = "resources:\n  - name: x\n    kind: consortium\n    atributes: {}\n"
        with pytest.raises(ManifestLoadError, match="atributes"):
            load_manifest(write(tmp_path, content))

    def test_duplicate_names(self, tmp_path: Path) -> None:
        """Test that local names are unique."""
        content = (
            "resources:\n"
            "  - {name: a, kind: consortium}\n"
            "  - {name: a, kind: consortium}\n"
        )
        with pytest.raises(ManifestLoadError, match="duplicate resource name 'a'"):
            load_manifest(write(tmp_path, content))

    def test_forward_reference(self, tmp_path: Path) -> None:
        """Test that parents must be declared before children."""
        content = (
            "resources:\n"
            "  - {name: env, kind: environment, parentKeys: {consortium_id: '@cons'}}\n"
            "  - {name: cons, kind: consortium}\n"
        )
        with pytest.raises(ManifestLoadError, match="must be declared before it"):
            load_manifest(write(tmp_path, content))

    def test_unknown_parent_key(self, tmp_path: Path) -> None:
        """Test that parent key names must belong to the kind."""
        content = "resources:\n  - {name: c, kind: consortium, parentKeys: {environment_id: e1}}\n"
        with pytest.raises(ManifestLoadError, match="no parent key"):
            load_manifest(write(tmp_path, content))

    def test_bad_name(self, tmp_path: Path) -> None:
        """Test local name format."""
        content = "resources:\n  - {name: '1 bad', kind: consortium}\n"
        with pytest.raises(ManifestLoadError, match="resources.0.name"):
            load_manifest(write(tmp_path, content))


class TestDeclaredResource:
    """Tests for DeclaredResource."""

    def test_to_desired_spec(self) -> None:
        """Test conversion once references are resolved."""
        resource = DeclaredResource(
            name="zone",
            kind="czone",
            parent_keys={"consortium_id": "@cons"},
            attributes={"cloud": "aws"},
            shared_deployment=True,
            identity_key={"cloud": "aws"},
        )

        spec = resource.to_desired_spec({"consortium_id": "c1"})

        assert spec == DesiredSpec(
            kind="czone",
            parent_keys={"consortium_id": "c1"},
            attributes={"cloud": "aws"},
            shared_deployment=True,
            identity_key={"cloud": "aws"},
        )

    def test_literal_parent_keys(self) -> None:
        """Test that plain values are not references."""
        resource = DeclaredResource(
            name="env", kind="environment", parent_keys={"consortium_id": "c-existing"}
        )
        assert resource.references() == {}

    def test_manifest_get(self) -> None:
        """Test lookup by name."""
        manifest = Manifest(resources=[DeclaredResource(name="a", kind="consortium")])
        assert manifest.get("a") is not None
        assert manifest.get("b") is None


class TestStateStore:
    """Tests for StateStore."""

    def entry(self, resource_id: str = "c1") -> StateEntry:
        return StateEntry(
            kind="consortium",
            id=resource_id,
            state="",
            desired={"name": "c"},
            attributes={"name": "c"},
        )

    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        """Test that a fresh project starts with no state."""
        store = StateStore.load(tmp_path / "state.yaml")
        assert len(store) == 0
        assert store.names() == []

    def test_save_and_load(self, tmp_path: Path) -> None:
        """Test that entries survive a save and reload in order."""
        path = tmp_path / "state.yaml"
        store = StateStore(path)
        store.put("b", self.entry("c2"))
        store.put("a", self.entry("c1"))
        store.save()

        loaded = StateStore.load(path)

        assert loaded.names() == ["b", "a"]
        assert loaded.get("a") == self.entry("c1")

    def test_saved_with_camel_case_keys(self, tmp_path: Path) -> None:
        """Test the on-disk format."""
        path = tmp_path / "state.yaml"
        store = StateStore(path)
        store.put(
            "zone",
            StateEntry(
                kind="czone",
                id="z1",
                parent_keys={"consortium_id": "c1"},
                shared_deployment=True,
            ),
        )
        store.save()

        document = yaml.safe_load(path.read_text())
        assert document["version"] == 1
        assert document["resources"]["zone"]["parentKeys"] == {"consortium_id": "c1"}
        assert document["resources"]["zone"]["sharedDeployment"] is True

    def test_save_leaves_no_temp_files(self, tmp_path: Path) -> None:
        """Test the atomic write cleans up after itself."""
        store = StateStore(tmp_path / "state.yaml")
        store.put("a", self.entry())
        store.save()
        store.save()

        assert [p.name for p in tmp_path.iterdir()] == ["state.yaml"]

    def test_drop(self, tmp_path: Path) -> None:
        """Test removing an entry."""
        store = StateStore(tmp_path / "state.yaml")
        store.put("a", self.entry())

        assert store.drop("a") is not None
        assert store.drop("a") is None
        assert "a" not in store

    def test_invalid_state_file(self, tmp_path: Path) -> None:
        """Test that a corrupt state file is rejected."""
        path = write(tmp_path, "resources:\n  a: {kind: consortium}\n", "state.yaml")
        with pytest.raises(StateFileError, match="Validation failed"):
            StateStore.load(path)

    def test_wrong_version(self, tmp_path: Path) -> None:
        """Test that an unknown format version is rejected."""
        path = write(tmp_path, "version: 99\nresources: {}\n", "state.yaml")
        with pytest.raises(StateFileError, match="Unsupported state file version 99"):
            StateStore.load(path)

    def test_empty_file(self, tmp_path: Path) -> None:
        """Test that an empty file is an empty state."""
        path = write(tmp_path, "", "state.yaml")
        assert len(StateStore.load(path)) == 0

    def test_resolve_parent_keys(self, tmp_path: Path) -> None:
        """Test reference resolution from recorded ids."""
        store = StateStore(tmp_path / "state.yaml")
        store.put("cons", self.entry("c42"))
        resource = DeclaredResource(
            name="env", kind="environment", parent_keys={"consortium_id": "@cons"}
        )

        assert store.resolve_parent_keys(resource) == {"consortium_id": "c42"}

    def test_resolve_unknown_reference(self, tmp_path: Path) -> None:
        """Test that an uncreated parent is a precondition failure."""
        store = StateStore(tmp_path / "state.yaml")
        resource = DeclaredResource(
            name="env", kind="environment", parent_keys={"consortium_id": "@cons"}
        )

        with pytest.raises(PreconditionError, match="'cons', which has not been created"):
            store.resolve_parent_keys(resource)


class TestStateEntry:
    """Tests for StateEntry conversions."""

    def test_from_record(self) -> None:
        """Test recording a reconciled resource."""
        record = ResourceRecord(
            id="z1",
            kind="czone",
            state="",
            attributes={"cloud": "aws"},
            parent_keys={"consortium_id": "c1"},
        )
        spec = DesiredSpec(
            kind="czone",
            parent_keys={"consortium_id": "c1"},
            attributes={"cloud": "aws", "region": "us-east-2"},
            shared_deployment=True,
        )

        entry = StateEntry.from_record(record, spec, adopted=True)

        assert entry.id == "z1"
        assert entry.adopted is True
        assert entry.shared_deployment is True
        assert entry.desired == {"cloud": "aws", "region": "us-east-2"}
        assert entry.to_record() == record

    def test_refreshed(self) -> None:
        """Test that a refresh keeps desired attributes."""
        entry = StateEntry(kind="environment", id="e1", state="live", desired={"name": "e"})
        record = ResourceRecord(id="e1", kind="environment", state="paused", attributes={"x": 1})

        refreshed = entry.refreshed(record)

        assert refreshed.state == "paused"
        assert refreshed.attributes == {"x": 1}
        assert refreshed.desired == {"name": "e"}
