"""Default configuration values for vmdeploy."""

# Operation bounds, in seconds
DEFAULT_TIMEOUTS: dict[str, float] = {
    "connect": 15.0,
    "command": 1800.0,  # first build on a fresh instance is slow
    "provision": 300.0,
    "poll_interval": 5.0,
    "readiness": 180.0,
    "readiness_interval": 3.0,
    "lock": 600.0,
}

# A live lock is refreshed between steps, so this must exceed the command bound
DEFAULT_LOCK_STALE_AFTER = 3600.0

DEFAULT_CONFIG_FILE = "vmdeploy.yaml"
STATE_DIR_NAME = ".vmdeploy"
STATE_FILE_NAME = "deployments.json"

# Prefix of the tag that identifies the managed instance
TAG_PREFIX = "vmdeploy:"

# Remote layout
DEFAULT_APP_DIR_ROOT = "apps"
DEFAULT_BOOTSTRAP_REMOTE_PATH = "/tmp/vmdeploy-bootstrap.sh"  # noqa: S108  # nosec B108
BOOTSTRAP_MARKER_PATH = "~/.vmdeploy/bootstrapped"
REMOTE_LOCK_DIR = "/tmp"  # noqa: S108  # nosec B108

# Environment variable overrides
ENV_VAR_MAP: dict[str, str] = {
    "verbose": "VMDEPLOY_VERBOSE",
    "quiet": "VMDEPLOY_QUIET",
    "command_timeout": "VMDEPLOY_COMMAND_TIMEOUT",
    "readiness_timeout": "VMDEPLOY_READINESS_TIMEOUT",
}
