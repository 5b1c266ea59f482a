"""Unit tests for bootstrap script and workflow generation."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from vmdeploy.deploy.scripts import (
    generate_bootstrap_script,
    generate_github_workflow,
    load_script,
)
from vmdeploy.lib.errors import FileNotFoundError


class TestBootstrapScript:
    """Tests for generate_bootstrap_script."""

    def test_script_is_strict_bash(self) -> None:
        """The script starts with a bash shebang and strict mode."""
        script = generate_bootstrap_script()
        lines = script.splitlines()
        assert lines[0] == "#!/usr/bin/env bash"
        assert "set -euo pipefail" in lines

    def test_defaults_rendered(self) -> None:
        """Fallback values are rendered into the variable defaults."""
        script = generate_bootstrap_script(
            branch="release", compose_file="compose.prod.yml", login_user="deploy"
        )
        assert 'BRANCH="${BRANCH:-release}"' in script
        assert 'COMPOSE_FILE="${COMPOSE_FILE:-compose.prod.yml}"' in script
        assert 'LOGIN_USER="${LOGIN_USER:-deploy}"' in script

    def test_required_variables_checked(self) -> None:
        """REPO_URL and APP_DIR must be provided by the caller."""
        script = generate_bootstrap_script()
        assert ': "${REPO_URL:?REPO_URL is required}"' in script
        assert ': "${APP_DIR:?APP_DIR is required}"' in script

    def test_steps_are_rerunnable(self) -> None:
        """Docker install is guarded and an existing checkout is updated in place."""
        script = generate_bootstrap_script()
        assert "if ! command -v docker" in script
        assert 'if [ -d "$APP_DIR/.git" ]; then' in script
        assert 'reset --hard "origin/$BRANCH"' in script
        assert 'git clone --branch "$BRANCH" "$REPO_URL" "$APP_DIR"' in script

    def test_first_deployment_started(self) -> None:
        """The script builds and starts the service group."""
        script = generate_bootstrap_script()
        build = script.index('docker compose -f "$COMPOSE_FILE" build')
        up = script.index('docker compose -f "$COMPOSE_FILE" up -d')
        assert build < up


class TestLoadScript:
    """Tests for load_script."""

    def test_reads_file(self, tmp_path: Path) -> None:
        """A custom script is read verbatim."""
        path = tmp_path / "bootstrap.sh"
        path.write_text("#!/bin/sh\necho hi\n", encoding="utf-8")
        assert load_script(path) == "#!/bin/sh\necho hi\n"

    def test_missing_file(self, tmp_path: Path) -> None:
        """A missing script raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError, match="Bootstrap script not found"):
            load_script(tmp_path / "missing.sh")


class TestGithubWorkflow:
    """Tests for generate_github_workflow."""

    def test_workflow_is_valid_yaml(self) -> None:
        """The workflow parses and triggers on pushes to the branch."""
        workflow = yaml.safe_load(
            generate_github_workflow("api", config_path="deploy/vmdeploy.yaml", branch="main")
        )

        assert workflow["name"] == "Deploy api"
        # PyYAML reads the bare ``on`` key as boolean True
        trigger = workflow[True]
        assert trigger["push"]["branches"] == ["main"]
        assert workflow["concurrency"]["group"] == "vmdeploy-api"
        steps = workflow["jobs"]["deploy"]["steps"]
        deploy_step = next(s for s in steps if s.get("id") == "deploy")
        assert deploy_step["run"] == "vmdeploy run deploy/vmdeploy.yaml"

    def test_secrets_referenced(self) -> None:
        """Secrets are referenced with GitHub expression syntax."""
        workflow = generate_github_workflow(
            "api", api_token_env="DO_TOKEN", api_token_secret="DO_SECRET", ssh_key_secret="KEY"
        )
        assert "DO_TOKEN: ${{ secrets.DO_SECRET }}" in workflow
        assert "${{ secrets.KEY }}" in workflow
        assert "${{ steps.deploy.outputs.endpoint }}" in workflow
