from fastapi import status

class UploadError(Exception):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "Upload failed"):
        self.message = message
        super().__init__(self.message)

class ValidationError(UploadError):
    status_code = status.HTTP_400_BAD_REQUEST

class NotFoundError(UploadError):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, message: str = "Upload session not found"):
        super().__init__(message)

class ForbiddenError(UploadError):
    status_code = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)

class StorageIOError(UploadError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

class PersistenceError(UploadError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
