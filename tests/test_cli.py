"""Tests for the converge CLI."""

from __future__ import annotations

import json
import sys
import types
from collections.abc import Iterator
from pathlib import Path

import pytest
from click.testing import CliRunner
from provider_mock import MockProvider, declaration, write_declarations

from converge.cli import cli

MODULE_NAME = "converge_cli_providers"

NETWORK = declaration("google_compute_network", "vpc", {"name": "gke-vpc"})
SUBNET = declaration(
    "google_compute_subnetwork",
    "nodes",
    {
        "name": "gke-nodes",
        "network": "${google_compute_network.vpc.id}",
        "region": "europe-west1",
        "ip_cidr_range": "10.10.0.0/20",
    },
)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def paths(tmp_path: Path) -> tuple[Path, Path]:
    declarations = write_declarations(tmp_path / "declarations", NETWORK, SUBNET)
    return declarations, tmp_path / "state.json"


@pytest.fixture
def mock_provider() -> Iterator[MockProvider]:
    """MockProvider importable as converge_cli_providers:provider."""
    provider = MockProvider()
    module = types.ModuleType(MODULE_NAME)
    module.provider = provider
    sys.modules[MODULE_NAME] = module
    yield provider
    del sys.modules[MODULE_NAME]


def _invoke(runner: CliRunner, *args: str):
    return runner.invoke(cli, ["--log-level", "CRITICAL", *args])


class TestCli:
    """Tests for the CLI commands."""

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_plan_text(self, runner: CliRunner, paths: tuple[Path, Path]) -> None:
        declarations, state = paths

        result = _invoke(
            runner, "plan", "-d", str(declarations), "--state", str(state), "--provider", "null"
        )

        assert result.exit_code == 0, result.output
        assert "+ google_compute_network.vpc" in result.stdout
        assert "Plan: 2 to create, 0 to update, 0 to replace, 0 to destroy" in result.stdout
        assert not state.exists()

    def test_plan_json(self, runner: CliRunner, paths: tuple[Path, Path]) -> None:
        declarations, state = paths

        result = _invoke(
            runner,
            "plan",
            "-d",
            str(declarations),
            "--state",
            str(state),
            "--provider",
            "null",
            "--json",
        )

        assert result.exit_code == 0, result.output
        rendered = json.loads(result.stdout)
        assert rendered["summary"]["create"] == 2
        assert [s["address"] for s in rendered["steps"]] == [
            "google_compute_network.vpc",
            "google_compute_subnetwork.nodes",
        ]

    def test_plan_schema_error(self, runner: CliRunner, tmp_path: Path) -> None:
        declarations = write_declarations(tmp_path / "declarations", SUBNET)

        result = _invoke(
            runner, "plan", "-d", str(declarations), "--state", str(tmp_path / "state.json")
        )

        assert result.exit_code == 1
        assert "references undeclared resource 'google_compute_network.vpc'" in result.output

    def test_invalid_provider(self, runner: CliRunner, paths: tuple[Path, Path]) -> None:
        declarations, state = paths

        result = _invoke(
            runner, "plan", "-d", str(declarations), "--state", str(state), "--provider", "nope"
        )

        assert result.exit_code == 1
        assert "Invalid provider 'nope'" in result.output

    def test_apply_then_inspect_state(
        self, runner: CliRunner, paths: tuple[Path, Path]
    ) -> None:
        declarations, state = paths

        applied = _invoke(
            runner, "apply", "-d", str(declarations), "--state", str(state), "--provider", "null"
        )
        listed = _invoke(runner, "state", "list", "--state", str(state))
        shown = _invoke(
            runner, "state", "show", "google_compute_subnetwork.nodes", "--state", str(state)
        )

        assert applied.exit_code == 0, applied.output
        assert "✓ Apply: 2 created" in applied.stdout
        assert listed.stdout.splitlines() == [
            "google_compute_network.vpc",
            "google_compute_subnetwork.nodes",
        ]
        entry = json.loads(shown.stdout)
        assert entry["attributes"]["network"] == "google_compute_network/vpc"

    def test_second_apply_is_unchanged(
        self, runner: CliRunner, paths: tuple[Path, Path]
    ) -> None:
        declarations, state = paths
        args = ("apply", "-d", str(declarations), "--state", str(state), "--provider", "null")

        _invoke(runner, *args)
        result = _invoke(runner, *args)

        assert result.exit_code == 0, result.output
        assert "Plan: 0 to create, 0 to update, 0 to replace, 0 to destroy, 2 unchanged." in (
            result.stdout
        )

    def test_state_show_errors(self, runner: CliRunner, tmp_path: Path) -> None:
        state = str(tmp_path / "state.json")

        malformed = _invoke(runner, "state", "show", "not-an-address", "--state", state)
        missing = _invoke(runner, "state", "show", "google_compute_network.vpc", "--state", state)

        assert malformed.exit_code == 2
        assert missing.exit_code == 1
        assert "is not recorded in state" in missing.output

    def test_protected_replacement_fails_plan(
        self, runner: CliRunner, tmp_path: Path
    ) -> None:
        state = str(tmp_path / "state.json")
        protected = {**NETWORK, "lifecycle": {"preventDestroy": True}}
        declarations = write_declarations(tmp_path / "declarations", protected)
        _invoke(runner, "apply", "-d", str(declarations), "--state", state, "--provider", "null")

        renamed = {**protected, "attributes": {"name": "gke-vpc-2"}}
        write_declarations(declarations, renamed)
        result = _invoke(
            runner, "plan", "-d", str(declarations), "--state", state, "--provider", "null"
        )

        assert result.exit_code == 1
        assert "prevent_destroy" in result.output
        assert "1 step(s) violate destroy protection" in result.output

    def test_apply_failure_exits_nonzero(
        self,
        runner: CliRunner,
        paths: tuple[Path, Path],
        mock_provider: MockProvider,
    ) -> None:
        declarations, state = paths
        mock_provider.fail("google_compute_network.vpc", message="quota exceeded")

        result = _invoke(
            runner,
            "apply",
            "-d",
            str(declarations),
            "--state",
            str(state),
            "--provider",
            f"{MODULE_NAME}:provider",
        )

        assert result.exit_code == 1
        assert "quota exceeded" in result.output
        assert "google_compute_subnetwork.nodes cancelled" in result.output
        assert "✗ Apply: 0 created" in result.output
        assert mock_provider.order() == ["google_compute_network.vpc"]
