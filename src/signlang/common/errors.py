"""
Exceptions raised by the inference shell.

LoadError is fatal at startup, PoolExhaustedError is transient,
InferenceError is scoped to one request. UseAfterUnloadError and
ShutdownError signal misuse of a released resource.
"""


class SignLangError(Exception):
    """Base exception for the inference shell."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class LoadError(SignLangError):
    """Raised when a model asset cannot be loaded."""

    def __init__(self, asset_path: str, reason: str):
        self.asset_path = asset_path
        self.reason = reason
        super().__init__(f"Failed to load model '{asset_path}': {reason}")


class PoolExhaustedError(SignLangError):
    """Raised when every buffer of the requested role is borrowed."""

    def __init__(self, role: str, capacity: int):
        self.role = role
        self.capacity = capacity
        super().__init__(f"All {capacity} {role} buffers are in use")


class InferenceError(SignLangError):
    """Raised when the runtime fails to run a forward pass."""

    def __init__(self, message: str, asset_path: str | None = None):
        self.asset_path = asset_path
        super().__init__(message)


class UseAfterUnloadError(SignLangError):
    """Raised when a model handle is used after it was unloaded."""

    def __init__(self, asset_path: str):
        self.asset_path = asset_path
        super().__init__(f"Model '{asset_path}' has already been unloaded")


class ShutdownError(SignLangError):
    """Raised when work is submitted to a component that was shut down."""
