"""Upload engine errors."""


class UploadError(Exception):
    """Base exception for upload operations."""


class UploadCancelledError(UploadError):
    """Raised when an upload stops because its cancel signal was set.

    The multipart session is kept so a later upload of the same file resumes.
    """


class UploadSessionNotFoundError(UploadError):
    """Raised when an upload session id is unknown."""
