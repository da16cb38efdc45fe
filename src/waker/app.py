from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse

from waker.config import WakerConfig, load_config
from waker.errors import MissingRoutingHeader, WakerError
from waker.executor import ProcessExecutor, SubprocessExecutor
from waker.logging import EventType, LogLevel, configure_logging, get_logger
from waker.metrics import MetricNames, get_metrics
from waker.middleware import add_logging_middleware
from waker.orchestrator import WakeOrchestrator
from waker.projects import ProjectConfigResolver
from waker.proxy import ReverseProxy, capture
from waker.readiness import ReadinessProber

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

logger = get_logger("waker.app")
metrics = get_metrics()


def _display_header(name: str) -> str:
    return "-".join(part.capitalize() for part in name.split("-"))


def build_orchestrator(
    config: WakerConfig, executor: Optional[ProcessExecutor] = None
) -> WakeOrchestrator:
    return WakeOrchestrator(
        resolver=ProjectConfigResolver(config.projects_dir),
        executor=executor or SubprocessExecutor(),
        wake_command=config.wake_command,
        environment={"PET_DIR": config.pet_dir, "PET_CONFIG_DIR": config.pet_config_dir},
        wake_timeout_seconds=config.wake_timeout_seconds,
        grace_period_seconds=config.grace_period_seconds,
        metrics=metrics,
    )


def create_app(
    config: Optional[WakerConfig] = None,
    orchestrator: Optional[WakeOrchestrator] = None,
    prober: Optional[ReadinessProber] = None,
    proxy: Optional[ReverseProxy] = None,
    executor: Optional[ProcessExecutor] = None,
) -> FastAPI:
    """Build the waker app; collaborators default to ones built from config."""
    config = config or load_config()
    configure_logging(LogLevel(config.log_level))

    orchestrator = orchestrator or build_orchestrator(config, executor)
    prober = prober or ReadinessProber(
        max_attempts=config.probe_max_attempts,
        attempt_timeout_ms=config.probe_attempt_timeout_ms,
        retry_delay_ms=config.probe_retry_delay_ms,
        metrics=metrics,
    )
    proxy = proxy or ReverseProxy(
        routing_header=config.routing_header,
        timeout_seconds=config.proxy_timeout_seconds,
        metrics=metrics,
    )
    header_name = _display_header(config.routing_header)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.log_event(
            EventType.GATEWAY_START,
            f"Listening on {config.host}:{config.port}",
            metadata={"config_dir": config.pet_config_dir, "pet_dir": config.pet_dir},
        )
        yield
        logger.log_event(EventType.GATEWAY_STOP, "Shutting down...")
        await orchestrator.shutdown()

    app = FastAPI(title="pet-waker", lifespan=lifespan)
    app.state.config = config
    app.state.orchestrator = orchestrator
    app.state.prober = prober
    app.state.proxy = proxy

    add_logging_middleware(app, routing_header=config.routing_header, exclude_paths=["/_waker/"])

    @app.get("/_waker/health")
    def health():
        """Liveness plus the wakes currently held in the registry."""
        return {"status": "ok", "wakes": orchestrator.registry.snapshot()}

    @app.get("/_waker/metrics")
    def get_metrics_endpoint():
        return metrics.get_all_metrics()

    @app.api_route("/{path:path}", methods=PROXY_METHODS)
    async def wake_and_proxy(request: Request, path: str) -> Response:
        """Buffer the request, wake its project, wait until it listens, replay."""
        project = request.headers.get(config.routing_header, "").strip()

        try:
            if not project:
                raise MissingRoutingHeader(f"Missing {header_name} header")

            logger.info(
                f"Request for sleeping project: {project} {request.method} {request.url.path}",
                project=project,
                stage="received",
            )

            buffered = await capture(request, config.max_body_bytes)
            port = await orchestrator.wake(project)
            await prober.await_ready(port, project=project)
            return await proxy.forward(buffered, port, project=project)

        except WakerError as e:
            logger.log_request_failed(e, project=project or None)
            metrics.increment_counter(
                MetricNames.REQUESTS_FAILED,
                project=project or None,
                labels={"stage": e.stage, "error": type(e).__name__},
            )
            return PlainTextResponse(e.to_response_text(), status_code=e.status_code)

    return app


app = create_app()


def run() -> None:
    import uvicorn

    config = app.state.config
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())
