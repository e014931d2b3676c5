# file: app/main.py
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Set

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.errors import InvalidQueryError, NotFoundError, PipelineError, to_payload
from app.logging_config import setup_logging
from app.orchestrator import Services, build_services

log = logging.getLogger("orchestrator")

STATUS_BY_CODE = {
    "invalid_query": 400,
    "not_found": 404,
    "daily_quota_exceeded": 429,
}


def create_app(services: Optional[Services] = None, configure_logging: bool = True) -> FastAPI:
    if configure_logging:
        setup_logging()
    services = services or build_services()
    background: Set[asyncio.Task] = set()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # the dispatch worker must run on the serving loop
        services.queue.start()
        log.info("Dispatch queue %s started", services.queue.name)
        yield
        for task in list(background):
            task.cancel()
        if background:
            await asyncio.gather(*background, return_exceptions=True)
        await services.queue.close(drain=False)

    app = FastAPI(title="Supplier Sourcing", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    @app.middleware("http")
    async def count_requests(request: Request, call_next):
        response = await call_next(request)
        services.metrics.record_request(request.url.path, response.status_code)
        return response

    @app.exception_handler(PipelineError)
    async def pipeline_error(request: Request, exc: PipelineError):
        return JSONResponse(status_code=STATUS_BY_CODE.get(exc.code, 500), content=to_payload(exc))

    @app.get("/health")
    async def health():
        """Queue counts, daily quota and limits"""
        try:
            report = await services.queue.health()
        except Exception as e:
            log.exception("Health check failed")
            return JSONResponse(status_code=503, content={"status": "unhealthy", **to_payload(e)})
        body = report.model_dump(mode="json")
        body["timestamp"] = datetime.now(timezone.utc).isoformat()
        return JSONResponse(status_code=200 if report.status == "healthy" else 503, content=body)

    @app.get("/metrics")
    async def metrics():
        snapshot = services.metrics.snapshot()
        snapshot["queue"] = services.queue.counts().model_dump()
        return snapshot

    @app.post("/search", status_code=202)
    async def start_search(request: Request, wait: bool = False):
        """
        Validate and open a run. By default the run continues in the background and
        the caller polls GET /searches/{id}; with ?wait=true the full RunResult is returned.
        """
        try:
            body = await request.json()
        except ValueError:
            raise InvalidQueryError("Request body must be JSON")
        orchestrator = services.orchestrator
        run = await orchestrator.open_run(body)
        if wait:
            result = await orchestrator.execute_run(run)
            return JSONResponse(status_code=200, content=result.model_dump(mode="json"))

        task = asyncio.get_running_loop().create_task(orchestrator.execute_run(run), name=f"search-{run.id}")
        background.add(task)
        task.add_done_callback(background.discard)
        return {"search_id": run.id, "status": run.status.value}

    @app.get("/searches")
    async def list_searches():
        runs = await services.store.list_runs()
        return {"count": len(runs), "searches": [r.model_dump(mode="json") for r in runs]}

    @app.get("/searches/{search_id}")
    async def get_search(search_id: str):
        detail = await services.orchestrator.describe(search_id)
        if detail is None:
            raise NotFoundError(f"Search {search_id} not found")
        return detail

    @app.post("/webhooks/inbound")
    async def inbound(request: Request):
        """Inbound reply webhook (JSON bodies only)"""
        try:
            payload = await request.json()
        except ValueError:
            raise InvalidQueryError("Request body must be JSON")
        return await services.replies.run(payload)

    @app.post("/webhooks/sendgrid-events")
    async def sendgrid_events(request: Request):
        try:
            payload = await request.json()
        except ValueError:
            raise InvalidQueryError("Request body must be JSON")
        return await services.replies.record_events(payload)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000, log_config=None)
