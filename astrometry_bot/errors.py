from typing import Optional


class AstrometryBotError(Exception):
    pass


class ValidationError(AstrometryBotError):
    """An incoming image was refused before anything was sent to the solver"""


class UnsupportedFormat(ValidationError):
    def __init__(self, extension: str):
        super().__init__(f"Unsupported file extension: {extension or '<none>'}")
        self.extension = extension


class FileTooLarge(ValidationError):
    def __init__(self, size: int, limit: int):
        super().__init__(f"File of {size} bytes exceeds the {limit} byte limit")
        self.size = size
        self.limit = limit


class RateLimited(ValidationError):
    def __init__(self, chat_id: int):
        super().__init__(f"Chat {chat_id} submitted an image too recently")
        self.chat_id = chat_id


class AuthError(AstrometryBotError):
    pass


class UploadError(AstrometryBotError):
    pass


class PollTimeout(AstrometryBotError, TimeoutError):
    def __init__(self, stage: str, identifier: str, attempts: int):
        super().__init__(
            f"{stage.capitalize()} {identifier} did not finish after {attempts} attempts"
        )
        self.stage = stage
        self.identifier = identifier
        self.attempts = attempts


class JobFailed(AstrometryBotError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} failed to solve")
        self.job_id = job_id


class TelegramError(AstrometryBotError):
    def __init__(self, method: str, description: Optional[str] = None):
        super().__init__(f"Telegram {method} failed: {description or 'unknown error'}")
        self.method = method
        self.description = description


class DownloadError(AstrometryBotError):
    pass
