"""Tests for selector, version and endpoint models."""
from __future__ import annotations

import pytest

from vicdebug.errors import DebugWorkflowError, FailureKind, WorkflowStep
from vicdebug.exit_codes import ExitCode
from vicdebug.models import (
    ApplianceEndpoints,
    ApplianceVersion,
    TargetSelector,
    WorkflowResult,
    WorkflowState,
)


@pytest.mark.parametrize(
    ("selector", "usable", "uses_id"),
    [
        (TargetSelector(id="vm-42"), True, True),
        (TargetSelector(id="vm-42", compute_path="cluster", display_name="vch"), True, True),
        (TargetSelector(compute_path="cluster", display_name="vch"), True, False),
        (TargetSelector(compute_path="cluster"), False, False),
        (TargetSelector(display_name="vch"), False, False),
        (TargetSelector(id="  "), False, False),
    ],
)
def test_selector_usability(selector: TargetSelector, usable: bool, uses_id: bool) -> None:
    """A selector needs an ID or both a compute path and a name."""
    assert selector.is_usable is usable
    assert selector.uses_id is uses_id


def test_version_parse_full_triple() -> None:
    """Build number and commit are split from the version tag."""
    version = ApplianceVersion.parse("v1.2.0-4567-abcdef0")

    assert version.version == "v1.2.0"
    assert version.build_number == "4567"
    assert version.git_commit == "abcdef0"
    assert version.short_version() == "v1.2.0-4567-abcdef0"
    assert str(version.semantic()) == "1.2.0"


def test_version_parse_prerelease_and_unknown() -> None:
    """Pre-release tags are kept; empty and free-form input stay readable."""
    assert ApplianceVersion.parse("v1.3.0-rc1-12").short_version() == "v1.3.0-rc1-12"
    assert ApplianceVersion.parse("").short_version() == "unknown"
    odd = ApplianceVersion.parse("dev build")
    assert odd.short_version() == "dev build"
    assert odd.semantic() is None


def test_endpoint_lines_with_tls_and_ssh() -> None:
    """The report lists portal, ports, DOCKER_HOST and the SSH command."""
    endpoints = ApplianceEndpoints(
        admin_portal="https://10.0.0.5:2378",
        docker_host="10.0.0.5:2376",
        published_ports="10.0.0.5",
        docker_tls=True,
        ssh="ssh root@10.0.0.5",
        authorized_key_fingerprint="SHA256:abc",
    )

    lines = endpoints.lines()

    assert "https://10.0.0.5:2378" in lines
    assert "DOCKER_HOST=10.0.0.5:2376" in lines
    assert "docker -H 10.0.0.5:2376 --tls info" in lines
    assert "SSH to appliance (default=root): ssh root@10.0.0.5" in lines
    assert lines[-1] == "Authorized key: SHA256:abc"


def test_endpoint_lines_without_tls_or_ssh() -> None:
    """Plain docker endpoints omit --tls and there is no SSH line."""
    endpoints = ApplianceEndpoints(
        admin_portal="https://10.0.0.5:2378",
        docker_host="10.0.0.5:2375",
        published_ports="10.0.0.5",
        docker_tls=False,
    )

    lines = endpoints.lines()

    assert "docker -H 10.0.0.5:2375 info" in lines
    assert not any(line.startswith("SSH") for line in lines)


def test_workflow_result_exit_codes_follow_failure_kind() -> None:
    """Result exit codes come from the failure kind."""
    ok = WorkflowResult(state=WorkflowState.SUCCESS)
    failed = WorkflowResult(
        state=WorkflowState.CONFIG_FAILED,
        error=DebugWorkflowError(
            FailureKind.CONFIGURATION, "Debug failed", step=WorkflowStep.CONFIGURING
        ),
    )

    assert ok.ok and ok.exit_code == ExitCode.OK
    assert not failed.ok
    assert failed.exit_code == ExitCode.PROVIDER
    assert failed.to_payload()["error"] == {
        "kind": "configuration",
        "step": "configuring",
        "message": "Debug failed",
    }
