from typing import AsyncGenerator

import pytest
import pytest_asyncio
from aiohttp import web
from astrometry_bot.errors import DownloadError, TelegramError
from astrometry_bot.storage import ImageStore
from astrometry_bot.telegram import Message, TelegramClient, Update

TOKEN = "123:abc"


class FakeBotApi:
    def __init__(self):
        self.requests = []
        self.runner = None
        self.app = web.Application()
        self.app.router.add_post(f"/bot{TOKEN}/{{method}}", self.handle_method)
        self.app.router.add_get(f"/file/bot{TOKEN}/{{path:.+}}", self.handle_file)

    async def handle_method(self, request):
        method = request.match_info["method"]
        payload = await request.json()
        self.requests.append((method, payload))

        if payload.get("chat_id") == -1:
            return web.json_response(
                {"ok": False, "error_code": 400, "description": "Bad Request: chat not found"},
                status=400,
            )
        if method == "getFile":
            return web.json_response(
                {
                    "ok": True,
                    "result": {"file_id": payload["file_id"], "file_size": 4, "file_path": "photos/file_1.jpg"},
                }
            )
        return web.json_response({"ok": True, "result": {"message_id": 10}})

    async def handle_file(self, request):
        if request.match_info["path"] == "photos/file_1.jpg":
            return web.Response(body=b"\xff\xd8\xff\xe0")
        return web.Response(status=404)

    async def start(self, port):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        await web.TCPSite(self.runner, "localhost", port).start()

    async def stop(self):
        await self.runner.cleanup()


@pytest_asyncio.fixture
async def bot_api(unused_tcp_port_factory) -> AsyncGenerator:
    port = unused_tcp_port_factory()
    api = FakeBotApi()
    await api.start(port)
    try:
        yield api, TelegramClient(TOKEN, f"http://localhost:{port}")
    finally:
        await api.stop()


def test_largest_photo_is_picked():
    update = Update.model_validate(
        {
            "update_id": 1,
            "message": {
                "message_id": 3,
                "chat": {"id": 42, "type": "private"},
                "photo": [
                    {"file_id": "small", "width": 90, "height": 60, "file_size": 100},
                    {"file_id": "large", "width": 1280, "height": 853, "file_size": 9000},
                ],
            },
        }
    )

    assert update.message.image_file() == ("large", 9000)


def test_text_message_has_no_image():
    message = Message.model_validate({"message_id": 3, "chat": {"id": 42}, "text": "hello"})

    assert message.image_file() is None


@pytest.mark.asyncio
async def test_get_file_and_url(bot_api):
    api, client = bot_api

    telegram_file = await client.get_file("abc")

    assert telegram_file.file_path == "photos/file_1.jpg"
    assert api.requests == [("getFile", {"file_id": "abc"})]
    assert client.file_url(telegram_file.file_path).endswith(f"/file/bot{TOKEN}/photos/file_1.jpg")


@pytest.mark.asyncio
async def test_send_message_and_photo_payloads(bot_api):
    api, client = bot_api

    await client.send_message(42, "hello")
    await client.send_photo(42, "http://nova.test/annotated_display/1", caption="*ok*", parse_mode="Markdown")

    assert api.requests == [
        ("sendMessage", {"chat_id": 42, "text": "hello"}),
        (
            "sendPhoto",
            {
                "chat_id": 42,
                "photo": "http://nova.test/annotated_display/1",
                "caption": "*ok*",
                "parse_mode": "Markdown",
            },
        ),
    ]


@pytest.mark.asyncio
async def test_api_error_raises(bot_api):
    _, client = bot_api

    with pytest.raises(TelegramError, match="chat not found"):
        await client.send_message(-1, "hello")


@pytest.mark.asyncio
async def test_store_downloads_and_removes(bot_api, tmp_path):
    _, client = bot_api
    store = ImageStore(tmp_path / "downloads")

    path = await store.download(client.file_url("photos/file_1.jpg"), "photos/file_1.jpg")

    assert path.parent == tmp_path / "downloads"
    assert path.name.endswith("_file_1.jpg")
    assert path.read_bytes() == b"\xff\xd8\xff\xe0"

    store.remove(path)
    assert not path.exists()
    # a second removal only logs
    store.remove(path)


@pytest.mark.asyncio
async def test_store_download_error(bot_api, tmp_path):
    _, client = bot_api
    store = ImageStore(tmp_path)

    with pytest.raises(DownloadError, match="404"):
        await store.download(client.file_url("photos/missing.jpg"), "photos/missing.jpg")
