"""Bootstrap script and CI workflow generation.

This module renders the default bootstrap script run once on a fresh instance
and the GitHub Actions workflow that triggers the pipeline on push.
"""

from datetime import datetime, timezone
from pathlib import Path

from jinja2 import Template

from vmdeploy.lib.errors import FileNotFoundError

# Every step tolerates being re-run: apt installs are idempotent and an
# existing checkout is updated in place instead of cloned again.
BOOTSTRAP_SCRIPT_TEMPLATE = """\
#!/usr/bin/env bash
# vmdeploy bootstrap script
# Generated at: {{ created }}
set -euo pipefail

: "${REPO_URL:?REPO_URL is required}"
: "${APP_DIR:?APP_DIR is required}"
BRANCH="${BRANCH:-{{ branch }}}"
COMPOSE_FILE="${COMPOSE_FILE:-{{ compose_file }}}"
LOGIN_USER="${LOGIN_USER:-{{ login_user }}}"

if [ "$(id -u)" -eq 0 ]; then
  SUDO=""
else
  SUDO="sudo"
fi
export DEBIAN_FRONTEND=noninteractive

echo "[vmdeploy] updating package lists"
$SUDO apt-get update -y

echo "[vmdeploy] installing container runtime"
$SUDO apt-get install -y ca-certificates curl git
if ! command -v docker >/dev/null 2>&1; then
  curl -fsSL https://get.docker.com | $SUDO sh
fi
$SUDO apt-get install -y docker-compose-plugin || true

echo "[vmdeploy] granting $LOGIN_USER access to docker"
$SUDO groupadd -f docker
if [ "$LOGIN_USER" != "root" ]; then
  $SUDO usermod -aG docker "$LOGIN_USER"
fi

echo "[vmdeploy] enabling docker service"
$SUDO systemctl enable --now docker

for attempt in $(seq 1 30); do
  if $SUDO docker info >/dev/null 2>&1; then
    break
  fi
  if [ "$attempt" -eq 30 ]; then
    echo "[vmdeploy] docker daemon did not start" >&2
    exit 1
  fi
  sleep 2
done

echo "[vmdeploy] fetching $REPO_URL ($BRANCH) into $APP_DIR"
if [ -d "$APP_DIR/.git" ]; then
  git -C "$APP_DIR" fetch --prune origin "$BRANCH"
  git -C "$APP_DIR" reset --hard "origin/$BRANCH"
else
  mkdir -p "$(dirname "$APP_DIR")"
  git clone --branch "$BRANCH" "$REPO_URL" "$APP_DIR"
fi

echo "[vmdeploy] first build and start"
cd "$APP_DIR"
$SUDO docker compose -f "$COMPOSE_FILE" build
$SUDO docker compose -f "$COMPOSE_FILE" up -d --remove-orphans

echo "[vmdeploy] bootstrap complete"
"""

GITHUB_WORKFLOW_TEMPLATE = """\
# vmdeploy pipeline trigger
# Generated at: {{ created }}
name: {{ workflow_name }}

on:
  push:
    branches: [{{ branch }}]
  workflow_dispatch:

concurrency:
  group: vmdeploy-{{ deployment_name }}
  cancel-in-progress: false

jobs:
  deploy:
    runs-on: ubuntu-latest
    timeout-minutes: {{ timeout_minutes }}
    steps:
      - uses: actions/checkout@v4

      - uses: actions/setup-python@v5
        with:
          python-version: "{{ python_version }}"

      - name: Install vmdeploy
        run: pip install vmdeploy

      - name: Write SSH key
        run: |
          install -m 700 -d ~/.ssh
          printf '%s\\n' "${{ '{{' }} secrets.{{ ssh_key_secret }} {{ '}}' }}" > ~/.ssh/vmdeploy_key
          chmod 600 ~/.ssh/vmdeploy_key

      - name: Deploy
        id: deploy
        env:
          {{ api_token_env }}: ${{ '{{' }} secrets.{{ api_token_secret }} {{ '}}' }}
        run: vmdeploy run {{ config_path }}

      - name: Endpoint
        run: echo "Deployed to ${{ '{{' }} steps.deploy.outputs.endpoint {{ '}}' }}"
"""


def generate_bootstrap_script(
    *,
    branch: str = "main",
    compose_file: str = "docker-compose.yml",
    login_user: str = "root",
) -> str:
    """Render the default bootstrap script.

    The values given here are only fallbacks; the bootstrapper exports
    REPO_URL, APP_DIR, BRANCH, COMPOSE_FILE and LOGIN_USER when it runs the
    script.

    Args:
        branch: Default branch to check out
        compose_file: Default compose file name
        login_user: Default user granted docker access

    Returns:
        Script content
    """
    template = Template(BOOTSTRAP_SCRIPT_TEMPLATE)
    return template.render(
        created=datetime.now(timezone.utc).isoformat(),
        branch=branch,
        compose_file=compose_file,
        login_user=login_user,
    )


def load_script(path: str | Path) -> str:
    """Read a user-supplied bootstrap script.

    Raises:
        FileNotFoundError: If the script does not exist
    """
    script_path = Path(path).expanduser()
    try:
        return script_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise FileNotFoundError(
            str(script_path),
            "Bootstrap script not found. Fix bootstrap.script or remove it "
            "to use the built-in script.",
        ) from exc


def generate_github_workflow(
    deployment_name: str,
    *,
    config_path: str = "vmdeploy.yaml",
    branch: str = "main",
    api_token_env: str = "DIGITALOCEAN_TOKEN",
    api_token_secret: str = "DIGITALOCEAN_TOKEN",
    ssh_key_secret: str = "VMDEPLOY_SSH_KEY",
    python_version: str = "3.12",
    timeout_minutes: int = 45,
) -> str:
    """Render a GitHub Actions workflow running the pipeline on push.

    The workflow serializes runs per deployment through a concurrency group.

    Example:
        >>> workflow = generate_github_workflow("api", branch="main")
        >>> "vmdeploy run vmdeploy.yaml" in workflow
        True
    """
    template = Template(GITHUB_WORKFLOW_TEMPLATE)
    return template.render(
        created=datetime.now(timezone.utc).isoformat(),
        workflow_name=f"Deploy {deployment_name}",
        deployment_name=deployment_name,
        config_path=config_path,
        branch=branch,
        api_token_env=api_token_env,
        api_token_secret=api_token_secret,
        ssh_key_secret=ssh_key_secret,
        python_version=python_version,
        timeout_minutes=timeout_minutes,
    )
