"""Api: Inbound HTTP surface used by the executor.

Endpoints:
    - ``POST /adapter``: job run result. Acknowledged immediately (200 for a
      numeric result, 500 otherwise); chain work runs after the response.
    - ``POST /jobs``: register a job.
    - ``DELETE /jobs/{job_id}``: remove a job.
    - ``GET /health``: liveness probe.
"""

from __future__ import annotations

import json
import logging

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .ResultHandler import AdapterResult, ResultHandler
from .StateStore import StateStore

logger = logging.getLogger(__name__)


class JobParams(BaseModel):
    name: str


class JobRegistration(BaseModel):
    jobId: str
    params: JobParams


def create_app(handler: ResultHandler, store: StateStore) -> FastAPI:
    """Build the FastAPI application.

    :param handler: Result handler that does the work behind each endpoint.
    :param store: State store, read by the health endpoint.
    :returns: Configured FastAPI app.
    """
    app = FastAPI(title="feedbridge external adapter")

    @app.post("/adapter")
    async def adapter(request: Request, background_tasks: BackgroundTasks):
        try:
            body = await request.json()
            data = body["data"]
            if not isinstance(data, dict):
                raise TypeError("data must be an object")
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"Malformed adapter request: {e!r}")
            return JSONResponse({"success": False}, status_code=500)

        adapter_result = AdapterResult.from_payload(data)
        logger.info(
            f"Bridge received {adapter_result.result} for {adapter_result.job_name} "
            f"(Request: {adapter_result.request_id}, Type: {data.get('request_type')})"
        )

        if not adapter_result.valid:
            logger.warning(
                f"Result {data.get('result')!r} for {adapter_result.job_name} is not a number"
            )
            return JSONResponse({"success": False}, status_code=500)

        background_tasks.add_task(handler.ingest_safely, adapter_result)
        return {"success": True}

    @app.post("/jobs")
    async def add_job(registration: JobRegistration):
        await handler.register_job(registration.jobId, registration.params.name)
        return {"success": True}

    @app.delete("/jobs/{job_id}")
    async def remove_job(job_id: str):
        await handler.remove_job(job_id)
        return {"success": True}

    @app.get("/health")
    async def health():
        snapshot = await store.read()
        return {"status": "ok", "jobs": len(snapshot.jobs)}

    return app
