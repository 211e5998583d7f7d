"""
Domain exceptions shared by the pipeline, the job queue and the API
"""


class PhotoExtractorError(Exception):
    """Base error. Non-retryable errors fail a queued job immediately."""

    retryable = True


class ScanNotFoundError(PhotoExtractorError):
    retryable = False

    def __init__(self, scan_id: str):
        super().__init__(f"Scan {scan_id} not found")
        self.scan_id = scan_id


class InvalidTransitionError(PhotoExtractorError):
    """Requested lifecycle change is not allowed from the current state"""

    retryable = False

    def __init__(self, scan_id: str, current: str, target: str):
        super().__init__(
            f"Scan {scan_id} cannot move from '{current}' to '{target}'"
        )
        self.scan_id = scan_id
        self.current = current
        self.target = target


class ScanAlreadyTerminalError(InvalidTransitionError):
    """Raised for cancel requests against completed, failed or cancelled scans"""


class SessionUnavailableError(PhotoExtractorError):
    """Owner session is missing or expired"""

    retryable = False


class CredentialError(PhotoExtractorError):
    """Stored credential cannot be decrypted or parsed"""

    retryable = False


class CredentialRefreshError(PhotoExtractorError):
    """Access token expired and could not be refreshed"""


class EnumerationError(PhotoExtractorError):
    """A page of the remote library could not be fetched"""


class DownloadError(PhotoExtractorError):
    """A single remote item could not be downloaded"""


class UploadError(PhotoExtractorError):
    """A single blob upload failed after all attempts"""


class JobPayloadError(PhotoExtractorError):
    """Job payload failed validation at enqueue time"""

    retryable = False
