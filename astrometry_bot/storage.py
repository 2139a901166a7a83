import asyncio
import uuid
from pathlib import Path, PurePosixPath
from typing import Union

import aiohttp
from loguru import logger

from astrometry_bot.errors import DownloadError


class ImageStore:
    """Keeps downloaded images in a scratch directory until they are solved."""

    def __init__(self, directory: Union[str, Path] = "/tmp", timeout: float = 60.0):
        self.directory = Path(directory)
        self.timeout = timeout
        self.logger = logger

    async def download(self, url: str, file_path: str) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        # concurrent chats may send files with the same remote name
        local_path = self.directory / f"{uuid.uuid4().hex}_{PurePosixPath(file_path).name}"
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status >= 400:
                        raise DownloadError(
                            f"Failed to download image: {response.status} {response.reason}"
                        )
                    content = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DownloadError(f"Failed to download image: {e}") from e

        await asyncio.to_thread(local_path.write_bytes, content)
        self.logger.info(f"Image downloaded to {local_path}")
        return local_path

    def remove(self, path: Path) -> None:
        try:
            path.unlink()
        except OSError as e:
            self.logger.error(f"Failed to delete file {path}: {e}")
        else:
            self.logger.debug(f"Deleted file {path}")
