"""JobDispatcher: Sends observation requests to the executor's run endpoint."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from .Config import ExecutorCredentials
from .Models import RequestReason
from .RetryPolicy import RetryExhausted, RetryPolicy

logger = logging.getLogger(__name__)

ACCESS_KEY_HEADER = "X-Chainlink-EA-AccessKey"
SECRET_HEADER = "X-Chainlink-EA-Secret"


class DispatchError(Exception):
    """Raised for a single failed run request.

    :ivar status_code: HTTP status code, if a response was received.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


@dataclass
class DispatchOutcome:
    """Result of :meth:`JobDispatcher.send_request`.

    :ivar ok: True if the executor accepted the run.
    :ivar attempts: Attempts made.
    :ivar status_code: Status code of the last response, if any.
    :ivar error: Last error message when not ok.
    """

    ok: bool
    attempts: int
    status_code: int | None = None
    error: str | None = None


class JobDispatcher:
    """Posts job runs to the executor with bounded retry.

    :ivar base_url: Executor base URL.
    :ivar credentials: External-initiator credentials.
    :ivar retry_policy: Retry policy for run requests.
    :ivar timeout: Per-request timeout in seconds.
    """

    DEFAULT_TIMEOUT = 60.0

    def __init__(
        self,
        base_url: str,
        credentials: ExecutorCredentials,
        retry_policy: RetryPolicy | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the dispatcher.

        :param base_url: Executor base URL (e.g. "http://chainlink:6691").
        :param credentials: External-initiator credentials.
        :param retry_policy: Retry policy (default: 3 immediate attempts).
        :param timeout: Per-request timeout (default: 60s).
        :param client: Optional preconfigured httpx client.
        """
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def run_url(self, external_job_id: str) -> str:
        return f"{self.base_url}/v2/jobs/{external_job_id}/runs"

    async def _post_run(
        self, external_job_id: str, request_id: int, reason: RequestReason
    ) -> httpx.Response:
        body = {
            "payment": 0,
            "request_id": request_id,
            "request_type": int(reason),
        }
        headers = {
            "Content-Type": "application/json",
            ACCESS_KEY_HEADER: self.credentials.access_key,
            SECRET_HEADER: self.credentials.secret,
        }
        try:
            response = await self._get_client().post(
                self.run_url(external_job_id), json=body, headers=headers
            )
        except httpx.TimeoutException as e:
            raise DispatchError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise DispatchError(f"Request failed: {e}") from e

        if not response.is_success:
            raise DispatchError(
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    async def send_request(
        self, external_job_id: str, request_id: int, reason: RequestReason
    ) -> DispatchOutcome:
        """Ask the executor to run a job.

        Never raises: a request that fails every attempt is logged and
        reported as a failed outcome.

        :param external_job_id: Executor-side job id.
        :param request_id: Request id echoed back with the result.
        :param reason: Why the request is being made.
        :returns: Dispatch outcome.
        """
        attempts = 0
        last_status: int | None = None

        async def attempt() -> httpx.Response:
            nonlocal attempts, last_status
            attempts += 1
            try:
                response = await self._post_run(external_job_id, request_id, reason)
            except DispatchError as e:
                last_status = e.status_code
                raise
            last_status = response.status_code
            return response

        logger.info(
            f"Sending job spec {external_job_id} request {request_id} ({reason.name})"
        )
        try:
            await self.retry_policy.run(
                attempt,
                description=f"Job request for {external_job_id}",
                retry_on=(DispatchError,),
            )
        except RetryExhausted as e:
            logger.error(f"{e}; request {request_id} dropped: {e.__cause__}")
            return DispatchOutcome(
                ok=False,
                attempts=attempts,
                status_code=last_status,
                error=str(e.__cause__),
            )

        return DispatchOutcome(ok=True, attempts=attempts, status_code=last_status)
