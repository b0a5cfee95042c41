"""Error taxonomy shared by the upload core and the HTTP layer.

Every error carries an HTTP-equivalent ``status_code`` and a stable ``error_code`` so the
API can render them without knowing each subclass.
"""


class UploadError(Exception):
    status_code = 500
    error_code = "upload_error"

    def __init__(self, detail: str, upload_id: str | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.upload_id = upload_id


class InvalidRequest(UploadError):
    status_code = 400
    error_code = "invalid_request"


class NotFound(UploadError):
    status_code = 404
    error_code = "not_found"


class InvalidState(UploadError):
    status_code = 409
    error_code = "invalid_state"


class Incomplete(UploadError):
    status_code = 409
    error_code = "incomplete"

    def __init__(
        self,
        detail: str,
        upload_id: str | None = None,
        progress_percent: int = 0,
        missing_parts: list[int] | None = None,
    ) -> None:
        super().__init__(detail, upload_id=upload_id)
        self.progress_percent = progress_percent
        self.missing_parts = missing_parts or []


class StorageError(UploadError):
    status_code = 502
    error_code = "storage_error"


class MissingPart(StorageError):
    error_code = "missing_part"

    def __init__(self, detail: str, upload_id: str | None = None, part_number: int | None = None) -> None:
        super().__init__(detail, upload_id=upload_id)
        self.part_number = part_number


class ShortCodeExhausted(StorageError):
    error_code = "short_code_exhausted"
