from __future__ import annotations
import asyncio
import logging
import time
from typing import Any, List, Mapping

from cassandra.query import SimpleStatement
from opentelemetry import trace
from prometheus_client import Histogram
from pydantic import ValidationError

from tenantgen.errors import UpstreamFailure
from tenantgen.tenant.models import TenantConfigRecord

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("tenantgen.store")

QUERY_LATENCY = Histogram(
    "tenantgen_query_latency_seconds",
    "Tenant config query latency",
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# `enabled` is evaluated server-side; rows are never re-checked here.
TENANT_CONFIG_QUERY = (
    "SELECT tenant_id, namespace, target_cluster, repo_url, repo_path, labels, params "
    "FROM tenant_ops.tenant_configs "
    "WHERE enabled = true ALLOW FILTERING"
)


class TenantConfigStore:
    """
    Reads enabled tenant configurations through the shared driver session.

    The fetch is unpaged (fetch_size=None): the whole enabled set comes back
    in one round trip. This assumes tenant_configs stays small control-plane
    data; past a few thousand rows the single response grows unbounded and
    the query should move to paged iteration.

    No retry and no caching: every call issues exactly one query.
    """

    def __init__(self, session: Any, timeout_s: float = 10.0) -> None:
        self._session = session
        self._timeout_s = timeout_s

    async def fetch_enabled_tenants(self) -> List[TenantConfigRecord]:
        """
        Raises:
            UpstreamFailure: query error, timeout, or any row failing to decode.
        """
        with tracer.start_as_current_span(
            "store.fetch_enabled_tenants",
            attributes={"db.system": "cassandra", "db.statement": TENANT_CONFIG_QUERY},
        ) as span:
            start = time.perf_counter()
            try:
                rows = await asyncio.wait_for(self._execute_unpaged(), self._timeout_s)
            except asyncio.TimeoutError as exc:
                raise UpstreamFailure(
                    f"tenant config query timed out after {self._timeout_s}s"
                ) from exc
            except Exception as exc:
                raise UpstreamFailure(f"tenant config query failed: {exc}") from exc
            finally:
                QUERY_LATENCY.observe(time.perf_counter() - start)

            records = [_decode_row(row) for row in rows]
            span.set_attribute("store.rows_fetched", len(records))
            return records

    async def _execute_unpaged(self) -> List[Mapping[str, Any]]:
        """
        Bridge the driver's callback-based ResponseFuture into asyncio.

        Callbacks fire on the driver's IO thread, so results are handed back
        with call_soon_threadsafe. If the awaiting request is cancelled the
        late result is dropped; the shared session is left untouched.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def _on_result(rows: Any) -> None:
            loop.call_soon_threadsafe(_resolve, future, list(rows or []))

        def _on_error(exc: BaseException) -> None:
            loop.call_soon_threadsafe(_reject, future, exc)

        statement = SimpleStatement(TENANT_CONFIG_QUERY, fetch_size=None)
        response_future = self._session.execute_async(statement)
        response_future.add_callbacks(callback=_on_result, errback=_on_error)
        return await future


def _resolve(future: asyncio.Future, rows: List[Mapping[str, Any]]) -> None:
    if not future.done():
        future.set_result(rows)


def _reject(future: asyncio.Future, exc: BaseException) -> None:
    if not future.done():
        future.set_exception(exc)


def _decode_row(row: Mapping[str, Any]) -> TenantConfigRecord:
    try:
        return TenantConfigRecord.from_row(row)
    except ValidationError as exc:
        tenant_id = row.get("tenant_id") if isinstance(row, Mapping) else None
        raise UpstreamFailure(
            f"failed to decode tenant config row (tenant_id={tenant_id!r}): {exc}"
        ) from exc
    except (TypeError, AttributeError) as exc:
        raise UpstreamFailure(f"unexpected tenant config row shape: {exc}") from exc
