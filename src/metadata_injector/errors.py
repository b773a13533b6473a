"""Exceptions raised by the metadata pipeline."""


class MetadataInjectorError(Exception):
    """Base class for all errors raised by this package."""


class CredentialError(MetadataInjectorError):
    """The API key is missing, rejected, or no usable model is selected."""


class EncodingError(MetadataInjectorError):
    """An image could not be read or converted to a data URI."""


class RequestError(MetadataInjectorError):
    """The completion service reported a failure or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ParseError(MetadataInjectorError):
    """The completion succeeded but its content is not the expected JSON object."""


class QueueLockedError(MetadataInjectorError):
    """The queue cannot be changed while a batch run is active."""


class BatchInProgressError(MetadataInjectorError):
    """A batch run was started while another one is still active."""
