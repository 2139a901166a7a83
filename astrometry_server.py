import json
from collections import Counter
from typing import List, Optional, Union

from aiohttp import web
from loguru import logger

Scripted = Union[dict, int]


class AstrometryServer:
    """Scripted stand-in for the astrometry.net API.

    Each endpoint replays its script one entry per request and repeats the
    last entry once the script runs out. An int entry is answered as a bare
    HTTP error with that status code, a dict as a JSON body.
    """

    def __init__(
        self,
        api_key: str = "test-key",
        session_key: Optional[str] = "session-1",
        submission_script: Optional[List[Scripted]] = None,
        job_script: Optional[List[Scripted]] = None,
        calibration_script: Optional[List[Scripted]] = None,
        upload_response: Optional[Scripted] = None,
    ):
        self.api_key = api_key
        self.session_key = session_key
        self.submission_script = submission_script or [{"jobs": [101]}]
        self.job_script = job_script or [{"status": "success"}]
        self.calibration_script = calibration_script or [
            {"ra": 83.82, "dec": -5.39, "radius": 0.72, "pixscale": 1.2, "orientation": 90.0, "parity": 1.0}
        ]
        self.upload_response = upload_response or {"status": "success", "subid": 555}
        self.calls = Counter()
        self.uploads = []
        self.runner = None
        self.app = web.Application()
        self.app.router.add_post("/api/login", self.handle_login)
        self.app.router.add_post("/api/upload", self.handle_upload)
        self.app.router.add_get("/api/submissions/{subid}", self.handle_submission)
        self.app.router.add_get("/api/jobs/{jobid}", self.handle_job)
        self.app.router.add_get("/api/jobs/{jobid}/calibration", self.handle_calibration)
        self.logger = logger

    def _reply(self, entry: Scripted) -> web.Response:
        if isinstance(entry, int):
            return web.Response(status=entry, text="scripted error")
        # the real service labels its JSON as text/plain
        return web.Response(text=json.dumps(entry), content_type="text/plain")

    def _replay(self, name: str, script: List[Scripted]) -> web.Response:
        self.calls[name] += 1
        entry = script[min(self.calls[name], len(script)) - 1]
        self.logger.info(f"Returning {entry} for {name} call {self.calls[name]}")
        return self._reply(entry)

    async def handle_login(self, request):
        self.calls["login"] += 1
        form = await request.post()
        request_json = json.loads(form["request-json"])

        if request_json.get("apikey") != self.api_key:
            return self._reply({"status": "error", "errormessage": "bad apikey"})
        if self.session_key is None:
            return self._reply({"status": "success"})
        return self._reply({"status": "success", "message": "authenticated user", "session": self.session_key})

    async def handle_upload(self, request):
        self.calls["upload"] += 1
        form = await request.post()
        file_field = form["file"]
        self.uploads.append(
            {
                "content_length": request.content_length,
                "transfer_encoding": request.headers.get("Transfer-Encoding"),
                "request_json": json.loads(form["request-json"]),
                "filename": file_field.filename,
                "content": file_field.file.read(),
            }
        )
        return self._reply(self.upload_response)

    async def handle_submission(self, request):
        return self._replay("submission", self.submission_script)

    async def handle_job(self, request):
        return self._replay("job", self.job_script)

    async def handle_calibration(self, request):
        return self._replay("calibration", self.calibration_script)

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
