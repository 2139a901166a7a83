import json
from pathlib import PurePosixPath
from typing import Optional

from loguru import logger

from astrometry_bot.astrometry_client import AstrometryClient
from astrometry_bot.errors import (
    AuthError,
    FileTooLarge,
    JobFailed,
    PollTimeout,
    RateLimited,
    UnsupportedFormat,
    UploadError,
    ValidationError,
)
from astrometry_bot.models import CalibrationResult
from astrometry_bot.rate_limiter import RateLimiter
from astrometry_bot.storage import ImageStore
from astrometry_bot.telegram import Message, TelegramClient

ALLOWED_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp", ".tif", ".tiff")
MAX_FILE_SIZE = 10 * 1024 * 1024

SEND_IMAGE_PROMPT = "📷 Please send an image for plate-solving."
RATE_LIMITED_TEXT = "⏳ Please wait a minute before submitting another image."
UNSUPPORTED_FORMAT_TEXT = (
    "❌ Unsupported file format. Please send an image in JPG, PNG, BMP, or TIFF format."
)
TOO_LARGE_TEXT = "⚠️ The image is too large. Please send an image smaller than 10MB."
STARTED_TEXT = (
    "📥 Image received! Plate solving has started. This may take a few minutes. "
    "You will be notified once it's complete."
)
TIMED_OUT_TEXT = "⌛ Plate solving is taking too long. Please try again later."
JOB_FAILED_TEXT = "❌ Plate solving failed. The image could not be solved."
GENERIC_ERROR_TEXT = "⚠️ An error occurred while processing your image."

RESULT_IMAGES = (
    ("annotated_display", "🌟 *Plate Solving Successful!*\nHere is your plate-solved image."),
    ("red_green_image_display", "🔴🔵 *Plate Solving Successful!*\nHere is your red-green image."),
    ("extraction_image_display", "🔴🔵 *Plate Solving Successful!*\nHere is your Extraction image."),
)


class MessageHandler:
    """Turns one incoming chat message into a plate-solving run and its replies."""

    def __init__(
        self,
        telegram: TelegramClient,
        store: ImageStore,
        client: AstrometryClient,
        rate_limiter: Optional[RateLimiter] = None,
        results_url: str = "http://nova.astrometry.net",
        max_file_size: int = MAX_FILE_SIZE,
    ):
        self.telegram = telegram
        self.store = store
        self.client = client
        self.rate_limiter = rate_limiter or RateLimiter()
        self.results_url = results_url.rstrip("/")
        self.max_file_size = max_file_size
        self.logger = logger

    def validate(self, file_path: Optional[str], file_size: Optional[int]) -> None:
        extension = PurePosixPath(file_path or "").suffix.lower()
        if extension not in ALLOWED_EXTENSIONS:
            raise UnsupportedFormat(extension)
        if file_size and file_size > self.max_file_size:
            raise FileTooLarge(file_size, self.max_file_size)

    async def handle(self, message: Message) -> None:
        """Process a message; never raises."""
        chat_id = message.chat.id

        try:
            await self._process(message)
        except RateLimited:
            await self._reply(chat_id, RATE_LIMITED_TEXT)
        except UnsupportedFormat as e:
            self.logger.info(f"Rejected image from chat {chat_id}: {e}")
            await self._reply(chat_id, UNSUPPORTED_FORMAT_TEXT)
        except FileTooLarge as e:
            self.logger.info(f"Rejected image from chat {chat_id}: {e}")
            await self._reply(chat_id, TOO_LARGE_TEXT)
        except ValidationError as e:
            self.logger.info(f"Rejected image from chat {chat_id}: {e}")
            await self._reply(chat_id, GENERIC_ERROR_TEXT)
        except PollTimeout as e:
            self.logger.error(f"Plate solving for chat {chat_id} timed out: {e}")
            await self._reply(chat_id, TIMED_OUT_TEXT)
        except JobFailed as e:
            self.logger.error(f"Plate solving for chat {chat_id} failed: {e}")
            await self._reply(chat_id, JOB_FAILED_TEXT)
        except (AuthError, UploadError) as e:
            self.logger.error(f"Submission for chat {chat_id} was refused: {e}")
            await self._reply(chat_id, GENERIC_ERROR_TEXT)
        except Exception as e:
            self.logger.exception(f"Error processing image for chat {chat_id}: {e!r}")
            await self._reply(chat_id, GENERIC_ERROR_TEXT)

    async def _process(self, message: Message) -> None:
        chat_id = message.chat.id
        image = message.image_file()
        if image is None:
            await self.telegram.send_message(chat_id, SEND_IMAGE_PROMPT)
            return

        if not await self.rate_limiter.try_acquire(chat_id):
            raise RateLimited(chat_id)

        file_id, declared_size = image
        telegram_file = await self.telegram.get_file(file_id)
        self.validate(telegram_file.file_path, telegram_file.file_size or declared_size)

        local_path = await self.store.download(
            self.telegram.file_url(telegram_file.file_path), telegram_file.file_path
        )

        async def announce(submission_id: str) -> None:
            self.logger.info(f"Chat {chat_id} image submitted as {submission_id}")
            await self.telegram.send_message(chat_id, STARTED_TEXT)

        try:
            with local_path.open("rb") as image_file:
                calibration = await self.client.solve(
                    image_file,
                    filename=PurePosixPath(telegram_file.file_path).name,
                    on_submitted=announce,
                )
        finally:
            self.store.remove(local_path)

        await self._send_results(chat_id, calibration)

    async def _send_results(self, chat_id: int, calibration: CalibrationResult) -> None:
        job_id = calibration.job_id
        for page, caption in RESULT_IMAGES:
            await self.telegram.send_photo(
                chat_id,
                f"{self.results_url}/{page}/{job_id}",
                caption=caption,
                parse_mode="Markdown",
            )

        details = json.dumps(calibration.model_dump(mode="json", exclude_unset=True), indent=2)
        await self.telegram.send_message(
            chat_id,
            f"📋 *Calibration Details:*\n```json\n{details}\n```",
            parse_mode="Markdown",
        )

    async def _reply(self, chat_id: int, text: str) -> None:
        try:
            await self.telegram.send_message(chat_id, text)
        except Exception as e:
            self.logger.error(f"Could not notify chat {chat_id}: {e!r}")
