"""Exception types shared by the analysis backend and the capture client."""


class CallMonitorError(Exception):
    """Base class for all errors raised by this service."""


class VendorError(CallMonitorError):
    """A third-party call (ASR, emotion, LLM) failed or returned an error."""


class MalformedVendorResponse(VendorError):
    """The vendor answered, but the payload could not be parsed."""


class ContextAnalysisError(VendorError):
    """The context response is missing one of its required fields."""


class StorageError(CallMonitorError):
    """A repository operation against the database failed."""


class CaptureError(CallMonitorError):
    """Audio capture could not be started or continued."""
