from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from tenantgen.config import Settings, load_token
from tenantgen.db.session import SecureSessionProvider
from tenantgen.errors import Unauthorized, UpstreamFailure
from tenantgen.security.bearer import BearerAuthenticator
from tenantgen.tenant.models import PluginInput, PluginResponse, assemble_response
from tenantgen.tenant.projector import label_filter_from_parameters, project
from tenantgen.tenant.store import TenantConfigStore

logger = logging.getLogger(__name__)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)

# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------
REQUEST_COUNT = Counter(
    "tenantgen_requests_total",
    "Generator plugin requests processed",
    ["status"],
)
TENANTS_RETURNED = Histogram(
    "tenantgen_tenants_returned",
    "Tenant parameter sets returned per request",
    buckets=[0, 1, 5, 10, 25, 50, 100, 250, 500, 1000],
)


def _init_tracing(otlp_endpoint: str) -> None:
    """
    Initialize OpenTelemetry tracing.

    - OTEL_EXPORTER_OTLP_ENDPOINT set → OTLP HTTP exporter
    - Otherwise → ConsoleSpanExporter
    """
    try:
        from opentelemetry import trace
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            BatchSpanProcessor,
            ConsoleSpanExporter,
            SimpleSpanProcessor,
        )

        resource = Resource.create({
            "service.name": "tenantgen-plugin",
            "service.version": "0.1.0",
        })
        provider = TracerProvider(resource=resource)

        if otlp_endpoint:
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
                OTLPSpanExporter,
            )
            provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint))
            )
            logger.info("OpenTelemetry: OTLP exporter → %s", otlp_endpoint)
        else:
            provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
            logger.info("OpenTelemetry: ConsoleSpanExporter")

        trace.set_tracer_provider(provider)
    except Exception as exc:
        logger.warning("OpenTelemetry init failed (non-fatal): %s", exc)


# ---------------------------------------------------------------------------
# App lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Any ConfigurationFailure raised here aborts startup; there is no
    # partial-service mode.
    settings = Settings.from_env()
    logging.getLogger().setLevel(settings.log_level)
    _init_tracing(settings.otlp_endpoint)

    # 1. Bearer token (mounted from a Secret)
    token = load_token(settings.token_file)
    app.state.authenticator = BearerAuthenticator(token)

    # 2. Shared database session
    provider = SecureSessionProvider(
        region=settings.region,
        root_cert_path=settings.root_cert_path,
        username=settings.username,
        password=settings.password,
        request_timeout_s=settings.query_timeout_s,
    )
    session = await provider.connect()
    app.state.session_provider = provider
    app.state.tenant_store = TenantConfigStore(session, timeout_s=settings.query_timeout_s)

    logger.info("Tenant generator plugin started (region=%s).", settings.region)

    yield

    await provider.close()
    logger.info("Tenant generator plugin shut down.")


app = FastAPI(title="Tenant Generator Plugin", version="0.1.0", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_authenticator(request: Request) -> BearerAuthenticator:
    return request.app.state.authenticator


def get_tenant_store(request: Request) -> TenantConfigStore:
    return request.app.state.tenant_store


def require_bearer(
    request: Request,
    authenticator: BearerAuthenticator = Depends(get_authenticator),
) -> None:
    authenticator.authenticate(request.headers.get("authorization"))


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------

@app.exception_handler(Unauthorized)
async def _unauthorized_handler(request: Request, exc: Unauthorized):
    REQUEST_COUNT.labels(status="403").inc()
    return PlainTextResponse("forbidden", status_code=403)


@app.exception_handler(UpstreamFailure)
async def _upstream_failure_handler(request: Request, exc: UpstreamFailure):
    REQUEST_COUNT.labels(status="500").inc()
    logger.error("internal-error: %s", exc)
    return PlainTextResponse("internal error", status_code=500)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.post(
    "/api/v1/getparams.execute",
    response_model=PluginResponse,
    dependencies=[Depends(require_bearer)],
)
async def get_params(
    body: PluginInput,
    store: TenantConfigStore = Depends(get_tenant_store),
) -> PluginResponse:
    """
    ApplicationSet plugin generator entry point.

    Headers:
      Authorization: Required. 'Bearer <plugin token>'.

    Optional input.parameters.filterLabelKey / filterLabelValue narrow the
    result to tenants whose labels match exactly.

    Returns 403 for a missing or wrong token, 500 for database/decode errors.
    """
    label_filter = label_filter_from_parameters(body.input.parameters)
    records = await store.fetch_enabled_tenants()
    maps = project(records, label_filter)

    logger.debug(
        "Generated %d/%d tenant parameter sets for %s",
        len(maps), len(records), body.application_set_name or "<unnamed>",
    )
    TENANTS_RETURNED.observe(len(maps))
    REQUEST_COUNT.labels(status="200").inc()
    return assemble_response(maps)


@app.get("/health")
async def health(request: Request):
    """Kubernetes liveness/readiness probe."""
    provider: Optional[SecureSessionProvider] = getattr(
        request.app.state, "session_provider", None
    )
    checks: Dict[str, Any] = {
        "database": "ok" if provider is not None and provider.connected else "disconnected",
    }
    all_ok = checks["database"] == "ok"
    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={"status": "ok" if all_ok else "degraded", "checks": checks},
    )


@app.get("/metrics")
async def metrics():
    """Prometheus scrape endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def run() -> None:
    import uvicorn

    port = Settings.from_env().port
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    run()
