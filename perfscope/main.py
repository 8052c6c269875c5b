import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field

from perfscope.comparison import ComparisonEngine
from perfscope.config import settings
from perfscope.errors import DuplicateExecution, ErrorKind, ExecutionError
from perfscope.events import ExecutionRequest, TrackingOptions, split_input
from perfscope.feed import ExecutionFeed, FeedStore
from perfscope.graph import render_call_graph
from perfscope.logs import configure_logging
from perfscope.orchestrator import ExecutionHandle, ExecutionOrchestrator
from perfscope.registry import default_registry

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ErrorKind.UNSUPPORTED_LANGUAGE: 400,
    ErrorKind.DUPLICATE_EXECUTION: 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    registry = default_registry()
    app.state.registry = registry
    app.state.orchestrator = ExecutionOrchestrator(registry)
    app.state.comparison = ComparisonEngine(app.state.orchestrator)
    app.state.feeds = FeedStore()
    app.state.watchers = set()
    logger.info("perfscope ready: %s", ", ".join(info.id for info in registry.languages()))
    yield
    await registry.shutdown()
    for task in list(app.state.watchers):
        task.cancel()


app = FastAPI(title="perfscope", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(ExecutionError)
async def execution_error_handler(request: Request, exc: ExecutionError):
    status = ERROR_STATUS.get(exc.kind, 422)
    return JSONResponse(status_code=status, content={"status": "error", **exc.to_dict()})


class ExecuteRequest(BaseModel):
    code: str
    language: str
    input: Optional[str] = None
    options: TrackingOptions = TrackingOptions()
    timeout: Optional[float] = Field(default=None, gt=0)
    execution_id: Optional[str] = None

    def to_request(self) -> ExecutionRequest:
        fields = dict(code=self.code, language=self.language, stdin=self.input,
                      options=self.options, timeout=self.timeout)
        if self.execution_id:
            fields["execution_id"] = self.execution_id
        return ExecutionRequest(**fields)


class CompareRequest(BaseModel):
    code1: str
    code2: str
    language: str
    input: Optional[str] = None
    options: TrackingOptions = TrackingOptions()


class ProfileSample(BaseModel):
    size: float
    input: str = ""


class ProfileRequest(BaseModel):
    code: str
    language: str
    samples: List[ProfileSample] = Field(min_length=1)
    options: TrackingOptions = TrackingOptions()


class ComplexityRequest(BaseModel):
    code: str
    language: str


def _feed(execution_id: str) -> ExecutionFeed:
    feed = app.state.feeds.get(execution_id)
    if feed is None:
        raise HTTPException(status_code=404, detail=f"Unknown execution '{execution_id}'")
    return feed


async def _watch(handle: ExecutionHandle, feed: ExecutionFeed) -> None:
    try:
        report = await handle.result
    except asyncio.CancelledError:
        feed.error("Execution cancelled")
        raise
    except Exception as e:
        logger.error("Execution %s ended with an internal error: %s", handle.execution_id, e)
        feed.error(f"Internal error: {e}")
        return
    feed.complete(report)


@app.post("/execute")
async def execute(body: ExecuteRequest):
    request = body.to_request()
    registry = app.state.registry
    # resolve before creating a feed so an unsupported language leaves nothing behind
    registry.resolve(request.language)
    if registry.is_running(request.execution_id):
        raise DuplicateExecution(request.execution_id)
    feed = app.state.feeds.create(request.execution_id)
    try:
        handle = app.state.orchestrator.execute(request, sink=feed.update, on_progress=feed.progress)
    except ExecutionError:
        app.state.feeds.discard(request.execution_id)
        raise
    watcher = asyncio.create_task(_watch(handle, feed))
    app.state.watchers.add(watcher)
    watcher.add_done_callback(app.state.watchers.discard)
    return {"status": "started", "executionId": handle.execution_id}


@app.get("/executions/{execution_id}/events")
async def execution_events(execution_id: str):
    feed = _feed(execution_id)

    async def stream():
        async for message in feed.follow():
            yield json.dumps(message) + "\n"

    return StreamingResponse(stream(), media_type="application/x-ndjson")


@app.get("/executions/{execution_id}")
async def execution_report(execution_id: str):
    feed = _feed(execution_id)
    if feed.report is None:
        return {"status": "running" if not feed.finished else "error", "executionId": execution_id}
    return feed.report.wire()


@app.get("/executions/{execution_id}/call-graph")
async def execution_call_graph(execution_id: str):
    feed = _feed(execution_id)
    if feed.report is None or feed.report.metrics is None:
        raise HTTPException(status_code=409, detail="Execution has not completed successfully")
    fmt, text = render_call_graph(feed.report.metrics.call_graph)
    media_type = "image/svg+xml" if fmt == "svg" else "text/vnd.graphviz"
    return Response(content=text, media_type=media_type)


@app.post("/compare")
async def compare(body: CompareRequest):
    first = ExecutionRequest(code=body.code1, language=body.language, stdin=body.input, options=body.options)
    second = ExecutionRequest(code=body.code2, language=body.language, stdin=body.input, options=body.options)
    report = await app.state.comparison.compare(first, second)
    return report.wire()


@app.post("/profile")
async def profile(body: ProfileRequest):
    request = ExecutionRequest(code=body.code, language=body.language, options=body.options)
    samples = [(sample.size, split_input(sample.input)) for sample in body.samples]
    estimate = await app.state.comparison.profile(request, samples)
    return estimate.wire()


@app.get("/languages")
async def languages():
    return [info.wire() for info in app.state.registry.languages()]


@app.post("/analyze-complexity")
async def analyze_complexity(body: ComplexityRequest):
    handler = app.state.registry.resolve(body.language.lower())
    notation, derivation = handler.complexity_hint(body.code)
    return {"time": notation, "derivation": derivation + " (Local Analysis)"}


@app.get("/health")
async def health():
    return {"status": "ok", "inFlight": len(app.state.registry.in_flight)}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
