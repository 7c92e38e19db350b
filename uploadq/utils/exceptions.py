from typing import Optional


class UploadError(Exception):
    pass


class InvalidInputError(UploadError, ValueError):
    pass


class InvalidStateError(UploadError):
    pass


class PlanAllocationFailedError(UploadError):
    pass


class TransferFailedError(UploadError):
    def __init__(self, status_code: Optional[int], part_number: Optional[int] = None, message: str = None):
        self.status_code = status_code
        self.part_number = part_number
        if message is None:
            message = f"Upload failed with status: {status_code}"
        if part_number is not None:
            message = f"Part {part_number}: {message}"
        super().__init__(message)


class TransferCanceledError(UploadError):
    pass


class NetworkError(UploadError):
    pass


class FinalizeFailedError(UploadError):
    pass


class AbortNotifyFailedError(UploadError):
    pass


class UploadCanceledError(UploadError):
    pass
