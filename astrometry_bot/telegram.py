import asyncio
from typing import Any, List, Optional, Tuple

import aiohttp
from loguru import logger
from pydantic import BaseModel

from astrometry_bot.errors import TelegramError


class Chat(BaseModel):
    id: int


class PhotoSize(BaseModel):
    file_id: str
    width: int = 0
    height: int = 0
    file_size: Optional[int] = None


class Document(BaseModel):
    file_id: str
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = None


class Message(BaseModel):
    message_id: int
    chat: Chat
    text: Optional[str] = None
    photo: Optional[List[PhotoSize]] = None
    document: Optional[Document] = None

    def image_file(self) -> Optional[Tuple[str, Optional[int]]]:
        """File id and declared size of the attached image, if any.

        Photos arrive in several sizes with the largest last. Images sent
        uncompressed arrive as documents.
        """
        if self.photo:
            largest = self.photo[-1]
            return largest.file_id, largest.file_size
        if self.document is not None:
            return self.document.file_id, self.document.file_size
        return None


class Update(BaseModel):
    update_id: int
    message: Optional[Message] = None


class TelegramFile(BaseModel):
    file_id: str
    file_size: Optional[int] = None
    file_path: Optional[str] = None


class TelegramClient:
    def __init__(self, token: str, api_url: str = "https://api.telegram.org", timeout: float = 30.0):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.logger = logger

    async def _call(self, method: str, payload: dict) -> Any:
        url = f"{self.api_url}/bot{self.token}/{method}"
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=payload) as response:
                    # error replies carry a JSON description as well
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self.logger.error(f"Telegram {method} request failed: {e!r}")
            raise TelegramError(method, str(e)) from e

        if not isinstance(data, dict) or not data.get("ok"):
            description = data.get("description") if isinstance(data, dict) else None
            self.logger.error(f"Telegram {method} returned an error: {description}")
            raise TelegramError(method, description)
        return data["result"]

    async def get_file(self, file_id: str) -> TelegramFile:
        result = await self._call("getFile", {"file_id": file_id})
        return TelegramFile.model_validate(result)

    def file_url(self, file_path: str) -> str:
        return f"{self.api_url}/file/bot{self.token}/{file_path}"

    async def send_message(
        self, chat_id: int, text: str, parse_mode: Optional[str] = None
    ) -> None:
        payload = {"chat_id": chat_id, "text": text}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        await self._call("sendMessage", payload)

    async def send_photo(
        self,
        chat_id: int,
        photo_url: str,
        caption: Optional[str] = None,
        parse_mode: Optional[str] = None,
    ) -> None:
        payload = {"chat_id": chat_id, "photo": photo_url}
        if caption:
            payload["caption"] = caption
        if parse_mode:
            payload["parse_mode"] = parse_mode
        await self._call("sendPhoto", payload)
