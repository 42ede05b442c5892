"""Tests for the Celery extraction task."""

from unittest.mock import AsyncMock, patch

import pytest

from app.core.exceptions import ConflictError, NodeExecutionError
from app.tasks.extraction_tasks import _run_extraction_async, run_extraction_task


def _raising(exc):
    def run(coro):
        coro.close()
        raise exc

    return run


@pytest.mark.asyncio
async def test_run_extraction_uses_worker_session_factory(session_factory, capabilities, ontology):
    engine = AsyncMock()
    with patch(
        "app.tasks.extraction_tasks._make_session_factory",
        return_value=(session_factory, engine),
    ), patch("app.core.dependencies.build_capabilities", return_value=capabilities):
        result = await _run_extraction_async(str(ontology.id))

    assert result["status"] == "ok"
    assert result["executed"][0] == "schema_capture"
    assert result["executed"][-1] == "finalization"
    engine.dispose.assert_awaited_once()


def test_conflict_is_reported_not_raised():
    with patch("app.tasks.extraction_tasks._run_async", side_effect=_raising(ConflictError("run in progress"))):
        result = run_extraction_task("5c0b5b4e-0000-4000-8000-000000000001")

    assert result == {
        "status": "conflict",
        "error": "run in progress",
        "ontology_id": "5c0b5b4e-0000-4000-8000-000000000001",
    }


def test_node_failure_names_the_node():
    error = NodeExecutionError("column_enrichment", RuntimeError("boom"))
    with patch("app.tasks.extraction_tasks._run_async", side_effect=_raising(error)):
        result = run_extraction_task("5c0b5b4e-0000-4000-8000-000000000001")

    assert result["status"] == "failed"
    assert result["node"] == "column_enrichment"
    assert result["error"] == "column_enrichment failed: boom"
