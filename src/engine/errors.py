# src/engine/errors.py
"""
Error taxonomy for the scan execution engine.

Precondition errors are raised before any container or registry entry exists.
Provisioning and runtime errors are caught by the supervisor and turned into a
failed scan result.
"""


class ScanEngineError(Exception):
    """Base class for all engine errors."""


class PreconditionError(ScanEngineError):
    pass


class EmptyCommandError(PreconditionError):
    def __init__(self):
        super().__init__("Command is empty.")


class UnknownToolError(PreconditionError):
    def __init__(self, tool: str, allowed=None):
        self.tool = tool
        message = f"Tool '{tool}' is not supported or not found."
        if allowed:
            message += f" Allowed tools: {', '.join(allowed)}."
        super().__init__(message)


class InvalidTargetError(PreconditionError):
    pass


class InvalidTimeoutError(PreconditionError):
    pass


class UnknownPresetError(PreconditionError):
    pass


class ScanConflictError(PreconditionError):
    def __init__(self, scan_id: str, message: str = None):
        self.scan_id = scan_id
        super().__init__(message or f"Scan {scan_id} already has an active execution.")


class ScanFinishedError(ScanConflictError):
    def __init__(self, scan_id: str, status: str):
        self.status = status
        super().__init__(scan_id, f"Scan {scan_id} already finished with status '{status}'.")


class ProvisioningError(ScanEngineError):
    pass


class ImagePullError(ProvisioningError):
    pass


class ContainerCreateError(ProvisioningError):
    pass


class RuntimeFailure(ScanEngineError):
    pass


class StreamError(RuntimeFailure):
    pass


class ConfigurationError(ScanEngineError):
    pass


class EngineUnavailableError(ConfigurationError):
    pass
