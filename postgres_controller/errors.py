"""Controller error types."""

from typing import Optional


class ControllerError(Exception):
    """Base exception for controller errors."""


class InvalidKeyError(ControllerError):
    """Raised when a work queue key is not of the form namespace/name."""

    def __init__(self, key: str):
        super().__init__(f"invalid resource key: {key!r}")
        self.key = key


class NotFoundError(ControllerError):
    """Raised when a resource no longer exists."""

    def __init__(self, kind: str, namespace: str, name: str):
        super().__init__(f"{kind} '{namespace}/{name}' not found")
        self.kind = kind
        self.namespace = namespace
        self.name = name


class ConflictError(ControllerError):
    """Raised when an update lost an optimistic-concurrency race."""

    def __init__(self, namespace: str, name: str, resource_version: Optional[str]):
        super().__init__(
            f"conflict updating '{namespace}/{name}' at resourceVersion {resource_version}"
        )
        self.namespace = namespace
        self.name = name
        self.resource_version = resource_version


class ProvisioningError(ControllerError):
    """Raised when the workload could not be created or reached."""


class CommandExecutionError(ControllerError):
    """Raised when a statement fails; later statements of the pass were not run."""

    def __init__(self, index: int, statement: str, cause: Exception):
        super().__init__(f"statement {index + 1} failed ({statement}): {cause}")
        self.index = index
        self.statement = statement
        self.cause = cause
