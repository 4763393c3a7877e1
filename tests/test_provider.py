"""Tests for provider loading and the null provider."""

from __future__ import annotations

import sys
import types
from collections.abc import Iterator

import pytest

from converge.config import ConfigurationError
from converge.diff import Action
from converge.provider import NullProvider, Provider, load_provider

MODULE_NAME = "converge_test_providers"


class _Provider:
    def apply_resource(self, resource_type, name, desired_attributes, action, timeout):
        return {"id": name}


@pytest.fixture
def provider_module() -> Iterator[types.ModuleType]:
    """Importable module exposing providers in every supported shape."""
    module = types.ModuleType(MODULE_NAME)
    module.ProviderClass = _Provider
    module.make_provider = lambda: _Provider()
    module.instance = _Provider()
    module.not_a_provider = object()
    sys.modules[MODULE_NAME] = module
    yield module
    del sys.modules[MODULE_NAME]


class TestNullProvider:
    """Tests for NullProvider."""

    def test_create_echoes_with_id(self) -> None:
        desired = {"name": "gke-vpc", "nested": {"a": 1}}

        observed = NullProvider().apply_resource(
            "google_compute_network", "vpc", desired, Action.CREATE, 60
        )

        assert observed == {
            "name": "gke-vpc",
            "nested": {"a": 1},
            "id": "google_compute_network/vpc",
        }
        observed["nested"]["a"] = 2
        assert desired["nested"]["a"] == 1

    def test_destroy_returns_empty(self) -> None:
        assert NullProvider().apply_resource("t", "n", {"a": 1}, Action.DESTROY, 60) == {}

    def test_satisfies_protocol(self) -> None:
        assert isinstance(NullProvider(), Provider)
        assert NullProvider().get_schema("google_compute_network") is None


class TestLoadProvider:
    """Tests for load_provider."""

    def test_null(self) -> None:
        assert isinstance(load_provider("null"), NullProvider)

    @pytest.mark.parametrize("attribute", ["ProviderClass", "make_provider", "instance"])
    def test_import_shapes(self, provider_module: types.ModuleType, attribute: str) -> None:
        provider = load_provider(f"{MODULE_NAME}:{attribute}")

        assert isinstance(provider, _Provider)

    def test_instance_used_as_is(self, provider_module: types.ModuleType) -> None:
        assert load_provider(f"{MODULE_NAME}:instance") is provider_module.instance

    @pytest.mark.parametrize(
        ("spec", "message"),
        [
            ("google", "expected 'null' or 'module:attribute'"),
            ("converge_no_such_module:Provider", "Cannot import"),
            (f"{MODULE_NAME}:missing", "has no attribute"),
            (f"{MODULE_NAME}:not_a_provider", "does not implement apply_resource"),
        ],
    )
    def test_invalid(
        self, provider_module: types.ModuleType, spec: str, message: str
    ) -> None:
        with pytest.raises(ConfigurationError, match=message):
            load_provider(spec)
