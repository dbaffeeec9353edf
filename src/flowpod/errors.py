"""Exception types raised by flowpod."""


class FlowpodError(Exception):
    """Base class for all flowpod errors."""


class ConfigError(FlowpodError):
    """Invalid or incomplete configuration."""


class SandboxNotFoundError(FlowpodError):
    """No reachable sandbox for the project; one must be created first."""

    def __init__(self, project_id: str, message: str = "Sandbox not found. Please restart the sandbox."):
        super().__init__(message)
        self.project_id = project_id


class ProviderError(FlowpodError):
    """The provisioning service failed to carry out a request."""


class SandboxGoneError(ProviderError):
    """The referenced sandbox no longer exists on the provider side."""


class ProviderTimeoutError(ProviderError):
    """A provider call did not finish within its time bound."""


class GenerationError(FlowpodError):
    """The code generation service returned an error or nothing usable."""
