"""Exception hierarchy for the classification pipeline."""

from __future__ import annotations


class ClassificationError(Exception):
    """Base exception for every failure the pipeline reports to callers."""

    def __init__(self, message: str, *args):
        self.message = message
        super().__init__(message, *args)


class ConfigError(ClassificationError):
    """Raised when the rule store or prompt template cannot be read or written."""


class ValidationError(ClassificationError):
    """Raised when caller-supplied input (a rule spec, a description) is invalid."""


class ServiceError(ClassificationError):
    """Raised when an external model service fails or answers with an error status."""

    def __init__(
        self,
        message: str,
        *,
        service: str = "",
        status_code: int | None = None,
        body: str = "",
    ):
        super().__init__(message)
        self.service = service
        self.status_code = status_code
        self.body = body


class ServiceUnavailable(ServiceError):
    """Raised when an external model service cannot be reached."""


class ServiceTimeout(ServiceUnavailable):
    """Raised when an external model service does not answer before the deadline."""


class DecodeError(ServiceError):
    """Raised when a service response envelope cannot be decoded."""


class UnparsableResponse(ClassificationError):
    """Raised when generated text holds no recoverable JSON object."""

    def __init__(self, message: str, *, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text


class SchemaError(ClassificationError):
    """Raised when generated JSON parses but does not have the expected shape."""

    def __init__(self, message: str, *, raw_text: str = ""):
        super().__init__(message)
        self.raw_text = raw_text
