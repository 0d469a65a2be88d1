"""Tests for TenantConfigStore against a fake driver session."""
import asyncio
import threading

import pytest

from tenantgen.errors import UpstreamFailure
from tenantgen.tenant.store import TENANT_CONFIG_QUERY, TenantConfigStore
from tenantgen.tests.fakes import DeferredSession, FakeSession, ScriptedSession, make_row


class TestFetchEnabledTenants:
    @pytest.mark.asyncio
    async def test_decodes_rows_in_order(self, prod_row, staging_row, unlabeled_row):
        session = FakeSession(rows=[prod_row, staging_row, unlabeled_row])
        records = await TenantConfigStore(session).fetch_enabled_tenants()
        assert [r.tenant_id for r in records] == ["acme", "globex", "initech"]
        assert records[0].labels == {"env": "prod", "tier": "gold"}
        assert records[0].params == {"replicas": "3"}
        assert records[2].labels is None

    @pytest.mark.asyncio
    async def test_issues_single_unpaged_query(self, prod_row):
        session = FakeSession(rows=[prod_row])
        await TenantConfigStore(session).fetch_enabled_tenants()
        assert len(session.statements) == 1
        stmt = session.statements[0]
        assert stmt.query_string == TENANT_CONFIG_QUERY
        assert stmt.fetch_size is None

    def test_query_selects_enabled_only(self):
        assert "WHERE enabled = true" in TENANT_CONFIG_QUERY
        assert "FROM tenant_ops.tenant_configs" in TENANT_CONFIG_QUERY

    @pytest.mark.asyncio
    async def test_no_rows(self):
        records = await TenantConfigStore(FakeSession(rows=[])).fetch_enabled_tenants()
        assert records == []

    @pytest.mark.asyncio
    async def test_each_call_queries_again(self, prod_row):
        session = FakeSession(rows=[prod_row])
        store = TenantConfigStore(session)
        await store.fetch_enabled_tenants()
        await store.fetch_enabled_tenants()
        assert len(session.statements) == 2

    @pytest.mark.asyncio
    async def test_accepts_mapping_columns(self):
        from collections import OrderedDict

        row = make_row("acme", labels=OrderedDict([("env", "prod")]))
        records = await TenantConfigStore(FakeSession(rows=[row])).fetch_enabled_tenants()
        assert records[0].labels == {"env": "prod"}


class TestFetchFailures:
    @pytest.mark.asyncio
    async def test_driver_error_is_upstream_failure(self):
        session = FakeSession(error=RuntimeError("connection lost"))
        with pytest.raises(UpstreamFailure, match="connection lost"):
            await TenantConfigStore(session).fetch_enabled_tenants()

    @pytest.mark.asyncio
    async def test_missing_mandatory_column_fails_whole_fetch(self, prod_row):
        bad = make_row("broken")
        del bad["repo_url"]
        session = FakeSession(rows=[prod_row, bad])
        with pytest.raises(UpstreamFailure, match="broken"):
            await TenantConfigStore(session).fetch_enabled_tenants()

    @pytest.mark.asyncio
    async def test_null_mandatory_column_fails(self):
        session = FakeSession(rows=[make_row("acme", namespace=None)])
        with pytest.raises(UpstreamFailure):
            await TenantConfigStore(session).fetch_enabled_tenants()

    @pytest.mark.asyncio
    async def test_empty_mandatory_column_fails(self):
        session = FakeSession(rows=[make_row("acme", repo_path="")])
        with pytest.raises(UpstreamFailure):
            await TenantConfigStore(session).fetch_enabled_tenants()

    @pytest.mark.asyncio
    async def test_type_mismatch_fails(self):
        session = FakeSession(rows=[make_row("acme", params={"replicas": 3})])
        with pytest.raises(UpstreamFailure):
            await TenantConfigStore(session).fetch_enabled_tenants()

    @pytest.mark.asyncio
    async def test_timeout_is_upstream_failure(self):
        store = TenantConfigStore(FakeSession(hang=True), timeout_s=0.05)
        with pytest.raises(UpstreamFailure, match="timed out"):
            await store.fetch_enabled_tenants()


# ---------------------------------------------------------------------------
# Shared session: concurrent use and failure isolation
# ---------------------------------------------------------------------------

def _fire_from_driver_thread(fn, arg) -> None:
    """Invoke a driver callback from another thread, as the IO loop does."""
    t = threading.Thread(target=fn, args=(arg,))
    t.start()
    t.join()


def _capture_loop_errors():
    """Collect anything the running event loop would report as an unhandled error."""
    errors = []
    asyncio.get_running_loop().set_exception_handler(
        lambda _loop, context: errors.append(context)
    )
    return errors


class TestSharedSession:
    @pytest.mark.asyncio
    async def test_concurrent_fetches_isolate_one_failure(self, prod_row, staging_row):
        session = ScriptedSession([[prod_row], RuntimeError("stream reset"), [staging_row]])
        store = TenantConfigStore(session)

        results = await asyncio.gather(
            store.fetch_enabled_tenants(),
            store.fetch_enabled_tenants(),
            store.fetch_enabled_tenants(),
            return_exceptions=True,
        )

        assert len(session.statements) == 3
        assert [r.tenant_id for r in results[0]] == ["acme"]
        assert isinstance(results[1], UpstreamFailure)
        assert [r.tenant_id for r in results[2]] == ["globex"]

    @pytest.mark.asyncio
    async def test_concurrent_fetches_answered_out_of_order(self, prod_row, staging_row):
        session = DeferredSession()
        store = TenantConfigStore(session)
        first = asyncio.ensure_future(store.fetch_enabled_tenants())
        second = asyncio.ensure_future(store.fetch_enabled_tenants())
        while len(session.futures) < 2:
            await asyncio.sleep(0)

        _fire_from_driver_thread(session.futures[1].callback, [staging_row])
        _fire_from_driver_thread(session.futures[0].callback, [prod_row])

        assert [r.tenant_id for r in await first] == ["acme"]
        assert [r.tenant_id for r in await second] == ["globex"]

    @pytest.mark.asyncio
    async def test_late_result_after_timeout_is_dropped(self, prod_row):
        loop_errors = _capture_loop_errors()
        session = DeferredSession()
        store = TenantConfigStore(session, timeout_s=0.05)
        with pytest.raises(UpstreamFailure, match="timed out"):
            await store.fetch_enabled_tenants()

        _fire_from_driver_thread(session.futures[0].callback, [prod_row])
        _fire_from_driver_thread(session.futures[0].errback, RuntimeError("late"))
        await asyncio.sleep(0.01)
        assert loop_errors == []

        # The same session keeps serving later requests.
        task = asyncio.ensure_future(store.fetch_enabled_tenants())
        while len(session.futures) < 2:
            await asyncio.sleep(0)
        _fire_from_driver_thread(session.futures[1].callback, [prod_row])
        assert [r.tenant_id for r in await task] == ["acme"]

    @pytest.mark.asyncio
    async def test_late_result_after_cancellation_is_dropped(self, prod_row):
        loop_errors = _capture_loop_errors()
        session = DeferredSession()
        store = TenantConfigStore(session)
        task = asyncio.ensure_future(store.fetch_enabled_tenants())
        while not session.futures:
            await asyncio.sleep(0)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        _fire_from_driver_thread(session.futures[0].callback, [prod_row])
        await asyncio.sleep(0.01)
        assert loop_errors == []
