import asyncio
import json
from typing import Any, BinaryIO, Callable, Optional, Union

import aiohttp
from loguru import logger

from astrometry_bot.errors import AuthError, JobFailed, PollTimeout, UploadError
from astrometry_bot.models import (
    CalibrationResult,
    JobOutcome,
    JobStatus,
    JobStatusResult,
    LoginResult,
    OutcomeStatus,
    PollingConfig,
    SubmissionStatus,
    UploadResult,
)

# pydantic validation errors and JSON decode errors are both ValueErrors
TRANSIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ValueError)


class AstrometryClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        config: Optional[PollingConfig] = None,
        on_status_change: Optional[Callable[[JobStatusResult], Any]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.config = config or PollingConfig()
        self.logger = logger
        self.on_status_change = on_status_change

    async def login(self, session: aiohttp.ClientSession) -> str:
        """Exchanges the API key for a fresh session token"""
        url = f"{self.base_url}/login"
        form = {"request-json": json.dumps({"apikey": self.api_key})}

        try:
            async with session.post(url, data=form) as response:
                response.raise_for_status()
                # the service answers JSON with a text/plain content type
                data = await response.json(content_type=None)
                result = LoginResult.model_validate(data)
        except aiohttp.ClientResponseError as e:
            self.logger.error(f"Login failed with HTTP {e.status} at {url}: {e.message}")
            raise AuthError(f"Login failed with status: {e.status}") from e
        except TRANSIENT_ERRORS as e:
            self.logger.error(f"Login request to {url} failed: {e!r}")
            raise AuthError(f"Login request failed: {e}") from e

        if not result.session:
            self.logger.error(
                f"Login response has no session key: {result.errormessage or data}"
            )
            raise AuthError(result.errormessage or "Login response has no session key")

        self.logger.info("Logged in to the plate-solving service")
        return result.session

    def _build_upload_body(
        self, session_key: str, content: bytes, filename: str
    ) -> aiohttp.MultipartWriter:
        request_json = {
            "publicly_visible": "y",
            "allow_modifications": "d",
            "session": session_key,
            "allow_commercial_use": "d",
        }
        with aiohttp.MultipartWriter("form-data") as writer:
            part = writer.append(json.dumps(request_json))
            part.set_content_disposition("form-data", name="request-json")
            part = writer.append(content, {"Content-Type": "application/octet-stream"})
            part.set_content_disposition("form-data", name="file", filename=filename)
        return writer

    async def upload(
        self,
        session: aiohttp.ClientSession,
        image: Union[bytes, BinaryIO],
        filename: str = "image",
    ) -> str:
        """Logs in and submits the image, returning the submission id"""
        session_key = await self.login(session)

        if isinstance(image, (bytes, bytearray)):
            content = bytes(image)
        else:
            content = await asyncio.to_thread(image.read)
        body = self._build_upload_body(session_key, content, filename)
        if body.size is None:
            raise UploadError("Could not compute the upload body length")
        # the service rejects chunked uploads, so the length is always explicit
        headers = {"Content-Length": str(body.size)}
        url = f"{self.base_url}/upload"

        try:
            async with session.post(url, data=body, headers=headers) as response:
                text = await response.text()
                self.logger.debug(f"Upload response: {text}")
                response.raise_for_status()
                result = UploadResult.model_validate_json(text)
        except aiohttp.ClientResponseError as e:
            self.logger.error(f"Upload failed with HTTP {e.status} at {url}: {e.message}")
            raise UploadError(f"Upload failed with status: {e.status}") from e
        except TRANSIENT_ERRORS as e:
            self.logger.error(f"Upload request to {url} failed: {e!r}")
            raise UploadError(f"Upload request failed: {e}") from e

        if result.subid is None or result.subid == "":
            self.logger.error("Submission ID (subid) is missing in the upload response")
            raise UploadError("Invalid upload response: subid missing")

        self.logger.info(f"Submission ID: {result.subid}")
        return str(result.subid)

    async def _get_json(self, session: aiohttp.ClientSession, url: str) -> Any:
        async with session.get(url) as response:
            response.raise_for_status()
            return await response.json(content_type=None)

    async def _get_submission_once(
        self, session: aiohttp.ClientSession, submission_id: str
    ) -> SubmissionStatus:
        data = await self._get_json(session, f"{self.base_url}/submissions/{submission_id}")
        return SubmissionStatus.model_validate(data)

    async def _get_job_status_once(
        self, session: aiohttp.ClientSession, job_id: str
    ) -> JobStatusResult:
        data = await self._get_json(session, f"{self.base_url}/jobs/{job_id}")
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected job status payload: {data!r}")
        return JobStatusResult.from_response(data)

    async def _get_calibration_once(
        self, session: aiohttp.ClientSession, job_id: str
    ) -> CalibrationResult:
        data = await self._get_json(session, f"{self.base_url}/jobs/{job_id}/calibration")
        return CalibrationResult.model_validate(data)

    async def _handle_status_change(
        self, status_result: JobStatusResult, last_status: Optional[JobStatus]
    ) -> None:
        """Invoke the status change callback if the status has changed"""
        if last_status != status_result.status:
            self.logger.debug(f"Job status changed to {status_result.status.value}")
            if self.on_status_change is not None:
                await self.on_status_change(status_result)

    async def _wait_before_retry(self, delay: float) -> None:
        self.logger.debug(f"Waiting {delay:.2f}s before next attempt")
        await asyncio.sleep(delay)

    async def poll_submission(
        self, session: aiohttp.ClientSession, submission_id: str
    ) -> Optional[str]:
        """Poll the submission until the service assigns it a job.

        Failed queries count against the attempt budget but never end the
        loop early. Returns the job id, or None once the budget is spent.
        """
        budget = self.config.submission

        for attempt in range(1, budget.max_attempts + 1):
            try:
                status = await self._get_submission_once(session, submission_id)
            except TRANSIENT_ERRORS as e:
                self.logger.error(
                    f"Error fetching submission {submission_id} status "
                    f"on attempt {attempt}: {e!r}"
                )
            else:
                self.logger.debug(
                    f"Attempt {attempt}: submission {submission_id} jobs {status.jobs}"
                )
                if status.job_id is not None:
                    self.logger.info(
                        f"Job ID {status.job_id} found for submission {submission_id}"
                    )
                    return status.job_id
                self.logger.info(
                    f"No job for submission {submission_id} yet (attempt {attempt})"
                )

            if attempt < budget.max_attempts:
                await self._wait_before_retry(budget.delay)

        self.logger.error(
            f"No job ID found for submission {submission_id} "
            f"after {budget.max_attempts} attempts"
        )
        return None

    async def poll_job_outcome(
        self, session: aiohttp.ClientSession, job_id: str
    ) -> JobOutcome:
        """Poll the job until it succeeds, fails or the attempt budget is spent.

        On success the calibration is fetched right away. If that fetch fails
        the job status is queried again on the next attempt before retrying it.
        """
        budget = self.config.job
        last_status = None

        for attempt in range(1, budget.max_attempts + 1):
            try:
                status_result = await self._get_job_status_once(session, job_id)
            except TRANSIENT_ERRORS as e:
                self.logger.error(
                    f"Error fetching job {job_id} status on attempt {attempt}: {e!r}"
                )
            else:
                await self._handle_status_change(status_result, last_status)
                last_status = status_result.status

                if status_result.status == JobStatus.success:
                    try:
                        calibration = await self._get_calibration_once(session, job_id)
                    except TRANSIENT_ERRORS as e:
                        self.logger.error(
                            f"Error fetching calibration for job {job_id}: {e!r}"
                        )
                    else:
                        calibration.job_id = job_id
                        self.logger.info(f"Job {job_id} solved successfully")
                        return JobOutcome(
                            job_id=job_id,
                            status=OutcomeStatus.success,
                            calibration=calibration,
                        )
                elif status_result.status == JobStatus.failure:
                    self.logger.error(f"Job {job_id} failed")
                    return JobOutcome(job_id=job_id, status=OutcomeStatus.failure)
                elif status_result.status == JobStatus.solving:
                    self.logger.info(f"Job {job_id} is still solving (attempt {attempt})")
                else:
                    self.logger.warning(
                        f"Unknown job status for {job_id}: {status_result.raw_status!r}"
                    )

            if attempt < budget.max_attempts:
                await self._wait_before_retry(budget.delay)

        self.logger.error(f"Job {job_id} not solved after {budget.max_attempts} attempts")
        return JobOutcome(job_id=job_id, status=OutcomeStatus.timed_out)

    async def poll_job(
        self, session: aiohttp.ClientSession, job_id: str
    ) -> Optional[CalibrationResult]:
        outcome = await self.poll_job_outcome(session, job_id)
        return outcome.calibration

    async def solve(
        self,
        image: Union[bytes, BinaryIO],
        filename: str = "image",
        on_submitted: Optional[Callable[[str], Any]] = None,
    ) -> CalibrationResult:
        """Upload, wait for the job and return its calibration.

        Raises AuthError or UploadError when the submission is refused,
        PollTimeout when either polling stage runs out of attempts and
        JobFailed when the service reports that solving failed.
        """
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout)

        async with aiohttp.ClientSession(timeout=timeout) as session:
            submission_id = await self.upload(session, image, filename)
            if on_submitted is not None:
                await on_submitted(submission_id)

            job_id = await self.poll_submission(session, submission_id)
            if job_id is None:
                raise PollTimeout(
                    "submission", submission_id, self.config.submission.max_attempts
                )

            outcome = await self.poll_job_outcome(session, job_id)

        if outcome.status == OutcomeStatus.failure:
            raise JobFailed(job_id)
        if outcome.status == OutcomeStatus.timed_out:
            raise PollTimeout("job", job_id, self.config.job.max_attempts)
        return outcome.calibration
