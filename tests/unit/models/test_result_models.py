"""Tests for stage result and state models."""

from __future__ import annotations

from vmdeploy.models.deployment_state import DeploymentRecord, DeploymentState
from vmdeploy.models.pipeline import CloudProvider
from vmdeploy.models.results import (
    CommandResult,
    ConvergeResult,
    InstanceState,
    PipelineResult,
)


class TestCommandResult:
    """Tests for CommandResult."""

    def test_ok_only_on_zero(self) -> None:
        """Only exit status 0 is ok."""
        assert CommandResult("true", 0).ok
        assert not CommandResult("false", 1).ok

    def test_output_joins_streams(self) -> None:
        """output combines non-empty stdout and stderr."""
        assert CommandResult("x", 1, "out", "err").output == "out\nerr"
        assert CommandResult("x", 1, "", "err").output == "err"


class TestInstanceState:
    """Tests for InstanceState."""

    def test_endpoint(self, instance_state: InstanceState) -> None:
        """The endpoint combines the address and service port."""
        assert instance_state.endpoint(9000) == "http://203.0.113.10:9000"

    def test_endpoint_without_address(self) -> None:
        """No address means no endpoint."""
        assert InstanceState(instance_id="1", name="x").endpoint(9000) is None


class TestConvergeResult:
    """Tests for ConvergeResult."""

    def test_changed(self) -> None:
        """changed compares the previous and current revisions."""
        assert ConvergeResult(previous_revision="a", revision="b").changed
        assert not ConvergeResult(previous_revision="a", revision="a").changed
        assert ConvergeResult(previous_revision=None, revision="a").changed


class TestPipelineResult:
    """Tests for PipelineResult."""

    def test_record_appends_timestamped_events(
        self, instance_state: InstanceState
    ) -> None:
        """record adds the event name, timestamp and details."""
        result = PipelineResult(instance=instance_state)
        result.record("provisioned", created=True)
        result.record("ready")

        assert [e["event"] for e in result.history] == ["provisioned", "ready"]
        assert result.history[0]["created"] is True
        assert "at" in result.history[1]


class TestDeploymentState:
    """Tests for DeploymentState."""

    def test_default_state(self) -> None:
        """A new state has a version and no deployments."""
        state = DeploymentState()
        assert state.version == "1.0"
        assert state.deployments == {}

    def test_record_round_trip_json(self) -> None:
        """Records survive JSON serialization."""
        record = DeploymentRecord(
            provider=CloudProvider.DIGITALOCEAN,
            instance_id="1001",
            instance_name="api-server",
            status="deployed",
            config_hash="sha256:abc",
        )
        state = DeploymentState(deployments={"api": record})

        loaded = DeploymentState.model_validate_json(state.model_dump_json())

        assert loaded.deployments["api"].instance_id == "1001"
        assert loaded.deployments["api"].bootstrapped is False
