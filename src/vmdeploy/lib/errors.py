"""Custom exception hierarchy for vmdeploy configuration and deployments."""


class VmDeployError(Exception):
    """Base exception for all vmdeploy errors.

    All vmdeploy-specific exceptions inherit from this class, enabling
    centralized exception handling in the CLI and in calling automation.
    """

    pass


class ConfigError(VmDeployError):
    """Exception raised for configuration errors.

    This exception is raised when configuration loading or parsing fails.
    It includes field-specific information to help users identify and fix
    configuration issues.

    Attributes:
        field: The configuration field that caused the error
        message: Human-readable error message describing the issue
    """

    def __init__(self, field: str, message: str) -> None:
        """Initialize ConfigError with field and message.

        Args:
            field: Configuration field name where error occurred
            message: Descriptive error message
        """
        self.field = field
        self.message = message
        super().__init__(f"Configuration error in '{field}': {message}")


class FileNotFoundError(VmDeployError):
    """Exception raised when a configuration or script file is not found.

    Attributes:
        path: Path to the file that was not found
        message: Human-readable error message
    """

    def __init__(self, path: str, message: str) -> None:
        """Initialize FileNotFoundError with path and message.

        Args:
            path: Path to the file that was not found
            message: Descriptive error message, optionally with suggestions
        """
        self.path = path
        self.message = message
        super().__init__(f"File not found: {path}\n{message}")


class CredentialError(VmDeployError):
    """Exception raised when a credential reference cannot be resolved.

    Attributes:
        reference: The credential reference (env var name or file path)
        message: Human-readable error message
    """

    def __init__(self, reference: str, message: str) -> None:
        """Create a credential error for a reference."""
        self.reference = reference
        self.message = message
        super().__init__(f"Credential '{reference}' unavailable: {message}")


class DeploymentError(VmDeployError):
    """Exception raised when a deployment stage fails.

    Base class for every pipeline stage failure. The ``kind`` property names
    the concrete failure so automation can distinguish them without parsing
    messages.

    Attributes:
        operation: Pipeline operation that failed (provision, bootstrap, ...)
        message: Human-readable error message
        output: Captured remote output, if any
    """

    def __init__(self, operation: str, message: str, output: str = "") -> None:
        """Initialize DeploymentError with operation context.

        Args:
            operation: Name of the failed operation
            message: Descriptive error message
            output: Captured stdout/stderr from the remote host
        """
        self.operation = operation
        self.message = message
        self.output = output
        super().__init__(f"{operation} failed: {message}")

    @property
    def kind(self) -> str:
        """Return the error kind reported to automation."""
        return type(self).__name__


class ProvisionError(DeploymentError):
    """Raised when the cloud provider rejects or cannot satisfy an instance spec.

    Fatal for the invocation; never retried by the provisioner.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        """Create a provisioning error.

        Args:
            message: Descriptive error message
            status_code: HTTP status returned by the provider API, if any
        """
        self.status_code = status_code
        super().__init__(operation="provision", message=message)


class ReadinessTimeout(DeploymentError):
    """Raised when the instance login port stays closed for the whole wait."""

    def __init__(self, address: str, port: int, max_wait: float) -> None:
        """Create a readiness timeout for an address and port."""
        self.address = address
        self.port = port
        self.max_wait = max_wait
        super().__init__(
            operation="readiness",
            message=(
                f"{address}:{port} did not accept connections "
                f"within {max_wait:g}s"
            ),
        )


class RemoteConnectionError(DeploymentError):
    """Raised when an SSH session to the instance cannot be established.

    Attributes:
        host: Host the connection was attempted against
        original_error: The underlying transport exception
    """

    def __init__(self, host: str, original_error: Exception | None = None) -> None:
        """Initialize with the host and the underlying cause."""
        self.host = host
        self.original_error = original_error
        message = f"Could not open SSH session to {host}."
        if original_error:
            message += f"\nOriginal error: {original_error}"
        super().__init__(operation="connect", message=message)


class BootstrapError(DeploymentError):
    """Base error for bootstrap failures."""

    def __init__(self, message: str, output: str = "") -> None:
        """Create a bootstrap error."""
        super().__init__(operation="bootstrap", message=message, output=output)


class ConnectionFailed(BootstrapError):
    """The bootstrapper could not reach or authenticate against the instance."""

    pass


class ScriptExecutionFailed(BootstrapError):
    """The bootstrap script exited with a non-zero status.

    Attributes:
        exit_code: Exit status of the remote script
        stdout: Captured standard output
        stderr: Captured standard error
    """

    def __init__(self, exit_code: int, stdout: str = "", stderr: str = "") -> None:
        """Create a script failure carrying the remote exit code and output."""
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            message=f"Bootstrap script exited with status {exit_code}",
            output="\n".join(part for part in (stdout, stderr) if part),
        )


class ConvergeError(DeploymentError):
    """Base error for convergence failures.

    A convergence failure after the stop step leaves the service group
    stopped unless ``rolled_back`` is True.

    Attributes:
        step: Convergence step that failed (connect, clone, pull, stop, build, start)
        exit_code: Exit status of the failed remote command, if any
        rolled_back: Whether the previous revision was restored and started
    """

    def __init__(
        self,
        message: str,
        *,
        step: str,
        exit_code: int | None = None,
        output: str = "",
        rolled_back: bool = False,
    ) -> None:
        """Create a convergence error for a step."""
        self.step = step
        self.exit_code = exit_code
        self.rolled_back = rolled_back
        super().__init__(operation="converge", message=message, output=output)


class PullFailed(ConvergeError):
    """Fetching the latest revision of the deployment unit failed."""

    pass


class BuildFailed(ConvergeError):
    """Rebuilding the container images failed."""

    pass


class StartFailed(ConvergeError):
    """Starting the rebuilt service group failed."""

    pass


class LockTimeoutError(DeploymentError):
    """Raised when the per-instance deployment lock cannot be acquired.

    Attributes:
        key: Lock key (the instance identifier)
        waited: Seconds spent waiting before giving up
    """

    def __init__(self, key: str, waited: float, holder: str | None = None) -> None:
        """Create a lock timeout error."""
        self.key = key
        self.waited = waited
        self.holder = holder
        message = f"Deployment lock for '{key}' still held after {waited:g}s"
        if holder:
            message += f" (held by {holder})"
        super().__init__(operation="lock", message=message)
