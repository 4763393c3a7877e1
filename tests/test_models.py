"""Tests for declaration models and the declaration loader."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from converge.graph import SchemaError
from converge.models import (
    DeclarationDocument,
    ExternalSourceDeclaration,
    ResourceDeclaration,
    parse_duration,
)
from converge.spec_loader import (
    DeclarationLoadError,
    discover_files,
    load_declarations,
    load_document,
)


class TestParseDuration:
    """Tests for duration parsing."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (30, 30.0),
            (1.5, 1.5),
            ("45", 45.0),
            ("45s", 45.0),
            ("10m", 600.0),
            ("1h", 3600.0),
            ("1h30m", 5400.0),
            (None, None),
        ],
    )
    def test_valid(self, value: object, expected: float | None) -> None:
        assert parse_duration(value) == expected

    @pytest.mark.parametrize("value", ["", "ten minutes", "0", -5, True, "5d"])
    def test_invalid(self, value: object) -> None:
        with pytest.raises(ValueError):
            parse_duration(value)


class TestResourceDeclaration:
    """Tests for ResourceDeclaration."""

    def test_minimal(self) -> None:
        """Test a declaration with only identity fields."""
        decl = ResourceDeclaration.model_validate(
            {"type": "google_compute_network", "name": "vpc"}
        )

        assert decl.attributes == {}
        assert decl.lifecycle.prevent_destroy is None
        assert decl.lifecycle.ignore_changes == []
        assert decl.depends_on == []
        assert decl.provider_tag == "google"

    def test_aliases(self) -> None:
        """Test camelCase aliases for lifecycle and ordering fields."""
        decl = ResourceDeclaration.model_validate(
            {
                "type": "google_container_cluster",
                "name": "primary",
                "provider": "google-beta",
                "lifecycle": {"preventDestroy": True, "ignoreChanges": ["labels"]},
                "timeouts": {"create": "30m"},
                "dependsOn": ["google_compute_network.vpc"],
            }
        )

        assert decl.provider_tag == "google-beta"
        assert decl.lifecycle.prevent_destroy is True
        assert decl.lifecycle.ignore_changes == ["labels"]
        assert decl.timeouts.create == 1800.0
        assert decl.timeouts.delete is None
        assert decl.depends_on == ["google_compute_network.vpc"]

    @pytest.mark.parametrize(
        "data",
        [
            {"type": "Google-Network", "name": "vpc"},
            {"type": "google_compute_network", "name": "has space"},
            {"type": "external", "name": "ip"},
            {"type": "google_compute_network", "name": "vpc", "unknown": 1},
            {"type": "google_compute_network", "name": "vpc", "dependsOn": ["vpc"]},
            {"type": "google_compute_network", "name": "vpc", "timeouts": {"create": "soon"}},
            {
                "type": "google_compute_network",
                "name": "vpc",
                "lifecycle": {"ignoreChanges": ["labels..team"]},
            },
        ],
    )
    def test_invalid(self, data: dict) -> None:
        with pytest.raises(ValidationError):
            ResourceDeclaration.model_validate(data)


class TestExternalSourceDeclaration:
    """Tests for ExternalSourceDeclaration."""

    def test_defaults(self) -> None:
        source = ExternalSourceDeclaration(url="https://api.ipify.org")

        assert source.format == "text"
        assert source.timeout is None
        assert source.headers == {}

    def test_rejects_non_http_url(self) -> None:
        with pytest.raises(ValidationError):
            ExternalSourceDeclaration(url="file:///etc/hosts")

    def test_rejects_unknown_format(self) -> None:
        with pytest.raises(ValidationError):
            ExternalSourceDeclaration.model_validate({"url": "https://x.test", "format": "json"})

    def test_rejects_invalid_source_name(self) -> None:
        with pytest.raises(ValidationError):
            DeclarationDocument.model_validate(
                {"external": {"caller ip": {"url": "https://x.test"}}}
            )


class TestLoader:
    """Tests for loading declaration files."""

    def test_flat_document(self, tmp_path: Path) -> None:
        """Test loading a flat document."""
        path = tmp_path / "net.yaml"
        path.write_text(
            "resources:\n"
            "  - type: google_compute_network\n"
            "    name: vpc\n"
            "    attributes:\n"
            "      name: gke-vpc\n"
        )

        doc = load_document(path)

        assert len(doc.resources) == 1
        assert doc.resources[0].attributes == {"name": "gke-vpc"}

    def test_wrapped_document(self, tmp_path: Path) -> None:
        """Test loading a Kubernetes-style wrapped document."""
        path = tmp_path / "net.yaml"
        path.write_text(
            "apiVersion: converge/v1\n"
            "kind: ResourceSet\n"
            "metadata:\n"
            "  name: network\n"
            "spec:\n"
            "  external:\n"
            "    caller_ip:\n"
            "      url: https://api.ipify.org\n"
            "      format: ip\n"
            "  resources:\n"
            "    - type: google_compute_network\n"
            "      name: vpc\n"
        )

        doc = load_document(path)

        assert doc.resources[0].name == "vpc"
        assert doc.external["caller_ip"].format == "ip"

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert load_document(path).resources == []

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("resources: [unclosed\n")

        with pytest.raises(DeclarationLoadError, match="Invalid YAML"):
            load_document(path)

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(DeclarationLoadError, match="mapping"):
            load_document(path)

    def test_validation_error_names_location(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("resources:\n  - type: google_compute_network\n")

        with pytest.raises(DeclarationLoadError) as exc_info:
            load_document(path)

        assert "resources.0.name" in str(exc_info.value)

    def test_load_error_is_schema_error(self, tmp_path: Path) -> None:
        with pytest.raises(SchemaError):
            load_declarations(tmp_path / "missing")

    def test_oversized_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr("converge.spec_loader.MAX_DECLARATION_FILE_SIZE_BYTES", 10)
        path = tmp_path / "big.yaml"
        path.write_text("resources: []\n" * 5)

        with pytest.raises(DeclarationLoadError, match="maximum size"):
            load_document(path)

    def test_discover_files_sorted(self, tmp_path: Path) -> None:
        (tmp_path / "b.yml").write_text("")
        (tmp_path / "a.yaml").write_text("")
        (tmp_path / "notes.txt").write_text("")

        assert [p.name for p in discover_files(tmp_path)] == ["a.yaml", "b.yml"]

    def test_discover_files_empty_directory(self, tmp_path: Path) -> None:
        with pytest.raises(DeclarationLoadError, match="No declaration files"):
            discover_files(tmp_path)

    def test_merges_directory(self, tmp_path: Path) -> None:
        """Test merging resources and external sources across files."""
        (tmp_path / "a.yaml").write_text(
            "resources:\n  - type: google_compute_network\n    name: vpc\n"
        )
        (tmp_path / "b.yaml").write_text(
            "external:\n"
            "  caller_ip:\n"
            "    url: https://api.ipify.org\n"
            "resources:\n"
            "  - type: google_compute_firewall\n"
            "    name: webhooks\n"
        )

        doc = load_declarations(tmp_path)

        assert [r.name for r in doc.resources] == ["vpc", "webhooks"]
        assert list(doc.external) == ["caller_ip"]

    def test_duplicate_external_source(self, tmp_path: Path) -> None:
        body = "external:\n  caller_ip:\n    url: https://api.ipify.org\n"
        (tmp_path / "a.yaml").write_text(body)
        (tmp_path / "b.yaml").write_text(body)

        with pytest.raises(DeclarationLoadError, match="caller_ip"):
            load_declarations(tmp_path)

    def test_duplicate_resource_names_both_files(self, tmp_path: Path) -> None:
        body = "resources:\n  - type: google_compute_network\n    name: vpc\n"
        (tmp_path / "a.yaml").write_text(body)
        (tmp_path / "b.yaml").write_text(body)

        with pytest.raises(DeclarationLoadError) as exc_info:
            load_declarations(tmp_path)

        message = str(exc_info.value)
        assert "google_compute_network.vpc" in message
        assert str(tmp_path / "a.yaml") in message
        assert str(tmp_path / "b.yaml") in message

    def test_duplicate_resource_in_one_file_left_to_graph(self, tmp_path: Path) -> None:
        (tmp_path / "a.yaml").write_text(
            "resources:\n"
            "  - type: google_compute_network\n"
            "    name: vpc\n"
            "  - type: google_compute_network\n"
            "    name: vpc\n"
        )

        doc = load_declarations(tmp_path)

        assert len(doc.resources) == 2
