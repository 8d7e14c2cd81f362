"""
Tests for DSR execution.

Subjects are discovered with the real pipeline first so every task
targets classifications the way production does.
"""

from types import SimpleNamespace
from uuid import uuid4

import pytest

from datalens.core.detection import build_detector
from datalens.core.types import DeletionMode, DSRStatus, TaskStatus
from datalens.exceptions import InvalidTransitionError, NotFoundError
from datalens.server.config import DetectionSettings
from datalens.server.events import (
    DSR_COMPLETED,
    DSR_DATA_ACCESSED,
    DSR_DATA_DELETED,
    DSR_FAILED,
    DSR_MANUAL_DELETION_REQUIRED,
)
from datalens.services import DiscoveryPipeline, DSRExecutor, DSRService
from datalens.services.dsr_executor import (
    CORRECTION_NOTE,
    MANUAL_DELETION_MESSAGE,
    build_entity_filters,
    failed_task_count,
)

from conftest import FakeBackend, RecordingQueue, make_registry, make_source

ALICE = {"email": "alice@example.com"}


@pytest.fixture
def crm() -> FakeBackend:
    return FakeBackend({
        "users": [
            {"email": "alice@example.com", "phone": "415-555-0100"},
            {"email": "bob@example.com", "phone": "415-555-0199"},
        ],
        "orders": [
            {"email": "alice@example.com", "total": "19.99"},
        ],
    })


@pytest.fixture
def legacy() -> FakeBackend:
    return FakeBackend({
        "members": [{"email": "alice@example.com", "name": "Alice"}],
    })


@pytest.fixture
def registry(crm, legacy):
    return make_registry(postgresql=crm, mysql=legacy)


@pytest.fixture
def executor(repos, settings, registry, events) -> DSRExecutor:
    return DSRExecutor(repos, settings, registry, events)


async def _discovered_source(repos, settings, registry, tenant_id, backend, **kwargs):
    """Create a source and classify it, then forget the discovery calls."""
    source = await make_source(repos, tenant_id, **kwargs)
    pipeline = DiscoveryPipeline(repos, settings, registry, build_detector(DetectionSettings()))
    await pipeline.scan_data_source(source.id)
    backend.calls.clear()
    backend.max_open_sessions = 0
    return source


async def _approved(repos, settings, tenant_id, request_type, identifiers=None):
    service = DSRService(repos, settings, RecordingQueue())
    dsr = await service.create_dsr(tenant_id, request_type, subject_identifiers=identifiers or ALICE)
    return await service.approve_dsr(dsr.id)


async def _tasks_by_source(repos, dsr):
    return {t.data_source_id: t for t in await repos.dsr_tasks.list_by_dsr(dsr.id)}


class TestErasure:

    @pytest.mark.asyncio
    async def test_auto_and_manual_sources(
        self, repos, settings, registry, executor, recorder, crm, legacy, tenant_id
    ):
        auto = await _discovered_source(repos, settings, registry, tenant_id, crm, name="CRM")
        manual = await _discovered_source(
            repos, settings, registry, tenant_id, legacy,
            name="Legacy members", source_type="MYSQL", deletion_mode=DeletionMode.MANUAL.value,
        )
        dsr = await _approved(repos, settings, tenant_id, "ERASURE")

        result = await executor.execute_dsr(dsr.id)

        assert result.status == DSRStatus.COMPLETED.value
        assert result.completed_at is not None

        tasks = await _tasks_by_source(repos, dsr)
        assert tasks[manual.id].status == TaskStatus.MANUAL_ACTION_REQUIRED.value
        assert tasks[manual.id].result == {
            "status": "MANUAL_ACTION_REQUIRED",
            "message": MANUAL_DELETION_MESSAGE,
        }
        # A manual source is never contacted
        assert legacy.calls == []
        assert legacy.tables["members"] == [{"email": "alice@example.com", "name": "Alice"}]

        auto_result = tasks[auto.id].result
        assert tasks[auto.id].status == TaskStatus.COMPLETED.value
        assert auto_result["total_deleted"] == 2
        assert sorted(d["entity"] for d in auto_result["deletions"]) == ["orders", "users"]
        assert all(d["status"] == "DELETED" and d["filters"] == ALICE for d in auto_result["deletions"])
        assert crm.tables["users"] == [{"email": "bob@example.com", "phone": "415-555-0199"}]
        assert crm.tables["orders"] == []

        assert len(await recorder.of_type(DSR_MANUAL_DELETION_REQUIRED)) == 1
        [deleted] = await recorder.of_type(DSR_DATA_DELETED)
        assert deleted.payload["total_deleted"] == 2
        assert len(await recorder.of_type(DSR_COMPLETED)) == 1

    @pytest.mark.asyncio
    async def test_delete_error_recorded_per_entity(self, repos, settings, registry, executor, crm, tenant_id):
        source = await _discovered_source(repos, settings, registry, tenant_id, crm)
        crm.delete_errors.add("orders")
        dsr = await _approved(repos, settings, tenant_id, "ERASURE")

        result = await executor.execute_dsr(dsr.id)

        task = (await _tasks_by_source(repos, dsr))[source.id]
        by_entity = {d["entity"]: d for d in task.result["deletions"]}
        assert by_entity["orders"] == {"entity": "orders", "status": "FAILED", "error": "delete from orders failed"}
        assert by_entity["users"]["count"] == 1
        assert task.result["total_deleted"] == 1
        assert result.status == DSRStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_unmatched_identifiers_delete_nothing(self, repos, settings, registry, executor, crm, tenant_id):
        source = await _discovered_source(repos, settings, registry, tenant_id, crm)
        dsr = await _approved(repos, settings, tenant_id, "ERASURE", {"passport": "X1234567"})

        await executor.execute_dsr(dsr.id)

        task = (await _tasks_by_source(repos, dsr))[source.id]
        assert task.result["deletions"] == []
        assert crm.operations("delete") == []
        assert len(crm.tables["users"]) == 2


class TestAccess:

    @pytest.mark.asyncio
    async def test_exports_subject_records(self, repos, settings, registry, executor, recorder, crm, tenant_id):
        source = await _discovered_source(repos, settings, registry, tenant_id, crm, name="CRM")
        dsr = await _approved(repos, settings, tenant_id, "ACCESS")

        result = await executor.execute_dsr(dsr.id)

        assert result.status == DSRStatus.COMPLETED.value
        task = (await _tasks_by_source(repos, dsr))[source.id]
        assert task.status == TaskStatus.COMPLETED.value
        assert task.result["data_source"] == "CRM"
        assert task.result["total_records"] == 2
        exported = {d["entity"]: d["records"] for d in task.result["data"]}
        assert exported["users"] == [{"email": "alice@example.com", "phone": "415-555-0100"}]
        assert "errors" not in task.result
        # Access never deletes
        assert crm.operations("delete") == []
        assert len(crm.tables["users"]) == 2

        [accessed] = await recorder.of_type(DSR_DATA_ACCESSED)
        assert accessed.payload["total_records"] == 2

    @pytest.mark.asyncio
    async def test_portability_runs_as_access(self, repos, settings, registry, executor, crm, tenant_id):
        source = await _discovered_source(repos, settings, registry, tenant_id, crm)
        dsr = await _approved(repos, settings, tenant_id, "PORTABILITY")

        await executor.execute_dsr(dsr.id)

        task = (await _tasks_by_source(repos, dsr))[source.id]
        assert task.result["total_records"] == 2

    @pytest.mark.asyncio
    async def test_export_error_kept_in_result(self, repos, settings, registry, executor, crm, tenant_id):
        source = await _discovered_source(repos, settings, registry, tenant_id, crm)
        crm.export_errors.add("orders")
        dsr = await _approved(repos, settings, tenant_id, "ACCESS")

        await executor.execute_dsr(dsr.id)

        task = (await _tasks_by_source(repos, dsr))[source.id]
        assert task.status == TaskStatus.COMPLETED.value
        assert task.result["errors"] == [{"entity": "orders", "error": "export of orders failed"}]
        assert task.result["total_records"] == 1


class TestAggregation:

    @pytest.mark.asyncio
    async def test_failed_task_fails_dsr(self, repos, settings, registry, executor, recorder, crm, legacy, tenant_id):
        ok = await _discovered_source(repos, settings, registry, tenant_id, crm)
        broken = await _discovered_source(
            repos, settings, registry, tenant_id, legacy, name="Legacy", source_type="MYSQL"
        )
        legacy.connect_error = "too many connections"
        dsr = await _approved(repos, settings, tenant_id, "ACCESS")

        result = await executor.execute_dsr(dsr.id)

        assert result.status == DSRStatus.FAILED.value
        assert result.reason == "1 task(s) failed"
        tasks = await _tasks_by_source(repos, dsr)
        assert tasks[broken.id].status == TaskStatus.FAILED.value
        assert tasks[broken.id].error == "too many connections"
        assert tasks[broken.id].completed_at is not None
        # The sibling still ran
        assert tasks[ok.id].status == TaskStatus.COMPLETED.value

        [failed] = await recorder.of_type(DSR_FAILED)
        assert failed.payload == {"dsr_id": str(dsr.id), "errors": 1}

    @pytest.mark.asyncio
    async def test_unsupported_task_type_fails_task(self, repos, settings, registry, executor, crm, tenant_id):
        source = await _discovered_source(repos, settings, registry, tenant_id, crm)
        dsr = await _approved(repos, settings, tenant_id, "NOMINATION")

        result = await executor.execute_dsr(dsr.id)

        task = (await _tasks_by_source(repos, dsr))[source.id]
        assert task.status == TaskStatus.FAILED.value
        assert task.error == "unsupported task type: NOMINATION"
        assert result.status == DSRStatus.FAILED.value
        assert crm.calls == []

    @pytest.mark.asyncio
    async def test_correction_acknowledged(self, repos, settings, registry, executor, crm, tenant_id):
        source = await _discovered_source(repos, settings, registry, tenant_id, crm)
        dsr = await _approved(repos, settings, tenant_id, "CORRECTION")

        result = await executor.execute_dsr(dsr.id)

        task = (await _tasks_by_source(repos, dsr))[source.id]
        assert task.status == TaskStatus.COMPLETED.value
        assert task.result["note"] == CORRECTION_NOTE
        assert result.status == DSRStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_no_sources_completes(self, repos, settings, executor, tenant_id):
        dsr = await _approved(repos, settings, tenant_id, "ACCESS")

        result = await executor.execute_dsr(dsr.id)

        assert result.status == DSRStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self, repos, settings, registry, events, crm, tenant_id):
        settings.dsr.max_concurrency = 2
        for index in range(5):
            await _discovered_source(repos, settings, registry, tenant_id, crm, name=f"Replica {index}")
        executor = DSRExecutor(repos, settings, registry, events)
        dsr = await _approved(repos, settings, tenant_id, "ACCESS")

        result = await executor.execute_dsr(dsr.id)

        assert result.status == DSRStatus.COMPLETED.value
        assert len(crm.operations("connect")) == 5
        assert 1 <= crm.max_open_sessions <= 2
        assert crm.open_sessions == 0


class TestExecutionGuards:

    @pytest.mark.asyncio
    async def test_second_run_rejected(self, repos, settings, registry, executor, crm, tenant_id):
        await _discovered_source(repos, settings, registry, tenant_id, crm)
        dsr = await _approved(repos, settings, tenant_id, "ERASURE")
        await executor.execute_dsr(dsr.id)
        crm.calls.clear()

        with pytest.raises(InvalidTransitionError):
            await executor.execute_dsr(dsr.id)

        assert crm.calls == []

    @pytest.mark.asyncio
    async def test_pending_dsr_not_executed(self, repos, settings, executor, tenant_id):
        service = DSRService(repos, settings, RecordingQueue())
        dsr = await service.create_dsr(tenant_id, "ACCESS", subject_identifiers=ALICE)

        with pytest.raises(InvalidTransitionError):
            await executor.execute_dsr(dsr.id)

        assert (await repos.dsrs.get(dsr.id)).status == DSRStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_unknown_dsr(self, executor):
        with pytest.raises(NotFoundError):
            await executor.execute_dsr(uuid4())

    @pytest.mark.asyncio
    async def test_execution_result(self, repos, settings, registry, executor, crm, tenant_id):
        source = await _discovered_source(repos, settings, registry, tenant_id, crm)
        dsr = await _approved(repos, settings, tenant_id, "ACCESS")
        await executor.execute_dsr(dsr.id)

        report = await executor.get_execution_result(dsr.id)

        assert report["dsr_id"] == str(dsr.id)
        assert report["status"] == DSRStatus.COMPLETED.value
        assert report["total"] == 1
        [task] = report["tasks"]
        assert task["data_source_id"] == str(source.id)
        assert task["status"] == TaskStatus.COMPLETED.value
        assert task["completed_at"] is not None


class TestHelpers:

    def test_build_entity_filters_case_insensitive(self):
        classifications = [
            SimpleNamespace(entity_name="users", field_name="Email"),
            SimpleNamespace(entity_name="users", field_name="phone"),
            SimpleNamespace(entity_name="orders", field_name="email"),
            SimpleNamespace(entity_name="audit", field_name="ip_address"),
        ]

        filters = build_entity_filters(classifications, {"EMAIL": "alice@example.com", "phone": "415-555-0100"})

        assert filters == {
            "users": {"Email": "alice@example.com", "phone": "415-555-0100"},
            "orders": {"email": "alice@example.com"},
        }

    def test_build_entity_filters_no_identifiers(self):
        classifications = [SimpleNamespace(entity_name="users", field_name="email")]

        assert build_entity_filters(classifications, {}) == {}

    def test_failed_task_count(self):
        tasks = [SimpleNamespace(status=s) for s in ("COMPLETED", "MANUAL_ACTION_REQUIRED", "FAILED", "VERIFIED")]

        assert failed_task_count(tasks) == 1
