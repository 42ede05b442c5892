"""Tests for the governance surface envelopes and the HTTP API over it."""

import uuid

import pytest

from app.governance.surface import GovernanceSurface
from app.ontology import changes as change_service
from app.ontology import questions as question_service
from app.ontology.changes import ChangeAction


async def _question(db, ontology_id, prompt="Is status 3 'cancelled' or 'refunded'?"):
    question, _ = await question_service.raise_question(
        db, ontology_id, prompt=prompt, category="enumeration", source_stage="column_enrichment"
    )
    await db.commit()
    return question


# ===========================================================================
# Envelope contract
# ===========================================================================


class TestEnvelope:
    @pytest.mark.asyncio
    async def test_create_ontology(self, surface):
        result = await surface.create_ontology("warehouse")
        assert result.ok is True
        assert result.error is None
        assert result.data["name"] == "warehouse"
        assert result.data["active_run_id"] is None

    @pytest.mark.asyncio
    async def test_duplicate_ontology_is_conflict(self, surface, ontology):
        result = await surface.create_ontology("shop")
        assert result.ok is False
        assert result.error.code == "conflict"

    @pytest.mark.asyncio
    async def test_malformed_id_is_validation_error(self, surface):
        result = await surface.list_changes("not-a-uuid")
        assert result.ok is False
        assert result.error.code == "validation_error"
        assert "not-a-uuid" in result.error.message

    @pytest.mark.asyncio
    async def test_unknown_ids_are_not_found(self, surface, ontology):
        for result in (
            await surface.get_entity(ontology.id, uuid.uuid4()),
            await surface.approve_change(ontology.id, uuid.uuid4()),
            await surface.skip_question(ontology.id, uuid.uuid4()),
            await surface.get_relationship_pair(ontology.id, uuid.uuid4()),
            await surface.pipeline_status(uuid.uuid4()),
        ):
            assert result.ok is False
            assert result.error.code == "not_found"

    @pytest.mark.asyncio
    async def test_invalid_filter_is_validation_error(self, surface, ontology):
        result = await surface.list_questions(ontology.id, status="archived")
        assert result.ok is False
        assert result.error.code == "validation_error"

    @pytest.mark.asyncio
    async def test_pipeline_without_orchestrator(self, session_factory, ontology):
        result = await GovernanceSurface(session_factory).run_pipeline(ontology.id)
        assert result.ok is False
        assert result.error.code == "configuration_error"


# ===========================================================================
# Review workflow
# ===========================================================================


class TestReviewWorkflow:
    @pytest.mark.asyncio
    async def test_run_then_approve_all(self, surface, ontology):
        run = await surface.run_pipeline(ontology.id)
        assert run.ok is True
        assert run.data["executed"][-1] == "finalization"

        pending = (await surface.list_changes(ontology.id)).data
        assert len(pending) == 10

        result = await surface.approve_all(ontology.id, reviewer="ana")
        assert result.ok is True
        assert result.data == {"applied_count": 10, "failed_count": 0, "failures": []}

        assert (await surface.list_changes(ontology.id)).data == []
        entities = (await surface.list_entities(ontology.id)).data
        assert all(e["is_staged"] is False for e in entities)

        user = next(e for e in entities if e["name"] == "User")
        detail = (await surface.get_entity(ontology.id, user["id"])).data
        assert [(o["location"], o["role"], o["is_primary"]) for o in detail["occurrences"]] == [
            ("public.users.id", "primary", True),
            ("public.orders.user_id", "placed_by", False),
        ]

        relationship_id = detail["occurrences"][1]["relationship_id"]
        pair = (await surface.get_relationship_pair(ontology.id, relationship_id)).data
        assert pair["forward"]["association"] == "placed_by"
        assert pair["reverse"]["association"] == "places"
        assert pair["forward"]["is_staged"] is False

    @pytest.mark.asyncio
    async def test_failed_approve_keeps_reason(self, surface, captured_ontology, db):
        change = await change_service.record_change(
            db,
            captured_ontology.id,
            ChangeAction.CREATE_ENTITY,
            set_fields={"name": "Product", "primary": {"schema": "public", "table": "products", "column": "id"}},
        )
        await db.commit()

        result = await surface.approve_change(captured_ontology.id, change.id)

        assert result.ok is False
        assert result.error.code == "schema_mismatch"
        [listed] = (await surface.list_changes(captured_ontology.id)).data
        assert listed["status"] == "pending"
        assert listed["reason"].startswith("apply failed:")

    @pytest.mark.asyncio
    async def test_reject_then_approve_conflicts(self, surface, captured_ontology, db):
        change = await change_service.record_change(
            db,
            captured_ontology.id,
            ChangeAction.CREATE_ENTITY,
            set_fields={"name": "User", "primary": {"schema": "public", "table": "users", "column": "id"}},
        )
        await db.commit()

        rejected = await surface.reject_change(captured_ontology.id, change.id, reason="not now", reviewer="ana")
        assert rejected.data["status"] == "rejected"

        result = await surface.approve_change(captured_ontology.id, change.id)
        assert result.error.code == "conflict"
        assert (await surface.list_entities(captured_ontology.id)).data == []


class TestProposeChange:
    @pytest.mark.asyncio
    async def test_deleting_one_direction_keeps_the_partner(self, surface, ontology):
        await surface.run_pipeline(ontology.id)
        await surface.approve_all(ontology.id)
        entities = {e["name"]: e["id"] for e in (await surface.list_entities(ontology.id)).data}
        user = (await surface.get_entity(ontology.id, entities["User"])).data
        forward_id = user["occurrences"][1]["relationship_id"]

        proposed = await surface.propose_change(
            ontology.id, "delete_relationship", target_id=forward_id, set_fields={"reason": "duplicate link"}
        )
        assert proposed.ok is True
        assert proposed.data["status"] == "pending"
        assert proposed.data["source"] == "manual"
        pair = (await surface.get_relationship_pair(ontology.id, forward_id)).data
        assert pair["forward"]["is_deleted"] is False

        approved = await surface.approve_change(ontology.id, proposed.data["id"], reviewer="ana")
        assert approved.data["status"] == "approved"

        pair = (await surface.get_relationship_pair(ontology.id, forward_id)).data
        assert pair["forward"]["is_deleted"] is True
        assert pair["reverse"]["is_deleted"] is False
        user = (await surface.get_entity(ontology.id, entities["User"])).data
        order = (await surface.get_entity(ontology.id, entities["Order"])).data
        assert [o["role"] for o in user["occurrences"]] == ["primary"]
        assert [o["role"] for o in order["occurrences"]] == ["primary", "places"]

    @pytest.mark.asyncio
    async def test_manual_edit_waits_for_approval(self, surface, ontology):
        await surface.run_pipeline(ontology.id)
        await surface.approve_all(ontology.id)
        user = next(e for e in (await surface.list_entities(ontology.id)).data if e["name"] == "User")

        proposed = await surface.propose_change(
            ontology.id, "update_entity", target_id=user["id"], set_fields={"description": "A registered customer"}
        )
        detail = (await surface.get_entity(ontology.id, user["id"])).data
        assert detail["entity"]["description"] == "A user of the shop"

        await surface.approve_change(ontology.id, proposed.data["id"])
        detail = (await surface.get_entity(ontology.id, user["id"])).data
        assert detail["entity"]["description"] == "A registered customer"

    @pytest.mark.asyncio
    async def test_invalid_proposals(self, surface, ontology):
        unknown_action = await surface.propose_change(ontology.id, "rename_everything")
        missing_target = await surface.propose_change(ontology.id, "delete_entity")
        bad_source = await surface.propose_change(
            ontology.id, "update_entity", target_id=uuid.uuid4(), source="oracle"
        )
        no_ontology = await surface.propose_change(uuid.uuid4(), "create_entity")

        assert unknown_action.error.code == "validation_error"
        assert missing_target.error.code == "validation_error"
        assert bad_source.error.code == "validation_error"
        assert no_ontology.error.code == "not_found"
        assert (await surface.list_changes(ontology.id)).data == []


class TestQuestionWorkflow:
    @pytest.mark.asyncio
    async def test_dismissed_question_cannot_be_skipped(self, surface, ontology, db):
        question = await _question(db, ontology.id)

        dismissed = await surface.dismiss_question(ontology.id, question.id, reason="irrelevant", actor="ana")
        assert dismissed.data["status"] == "dismissed"

        skipped = await surface.skip_question(ontology.id, question.id)
        assert skipped.ok is False
        assert skipped.error.code == "conflict"

        [listed] = (await surface.list_questions(ontology.id)).data
        assert listed["status"] == "dismissed"
        assert listed["status_reason"] == "irrelevant"

    @pytest.mark.asyncio
    async def test_skip_then_resolve(self, surface, ontology, db):
        question = await _question(db, ontology.id)

        assert (await surface.skip_question(ontology.id, question.id)).data["status"] == "skipped"
        resolved = await surface.resolve_question(ontology.id, str(question.id), "refunded", actor="ana")

        assert resolved.ok is True
        assert resolved.data["answer"] == "refunded"
        assert resolved.data["answered_by"] == "ana"

    @pytest.mark.asyncio
    async def test_escalate(self, surface, ontology, db):
        question = await _question(db, ontology.id)
        result = await surface.escalate_question(ontology.id, question.id, reason="needs finance")
        assert result.data["status"] == "escalated"
        assert (await surface.list_questions(ontology.id, status="open")).data == []


# ===========================================================================
# HTTP API
# ===========================================================================


class TestHttpApi:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "postgres": True}

    @pytest.mark.asyncio
    async def test_create_ontology(self, client):
        resp = await client.post("/api/v1/ontologies/", json={"name": "warehouse"})
        assert resp.status_code == 201
        body = resp.json()
        assert body["ok"] is True
        assert body["data"]["name"] == "warehouse"

    @pytest.mark.asyncio
    async def test_error_envelopes_map_to_status_codes(self, client, ontology):
        resp = await client.get("/api/v1/ontologies/not-a-uuid/changes")
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

        resp = await client.get(f"/api/v1/ontologies/{ontology.id}/entities/{uuid.uuid4()}")
        assert resp.status_code == 404
        assert resp.json() == {
            "ok": False,
            "data": None,
            "error": {"code": "not_found", "message": resp.json()["error"]["message"]},
        }

        resp = await client.post("/api/v1/ontologies/", json={"name": "shop"})
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_run_review_and_status(self, client, ontology):
        resp = await client.post(f"/api/v1/ontologies/{ontology.id}/pipeline/run", params={"background": "false"})
        assert resp.status_code == 200
        assert resp.json()["data"]["skipped"] == []

        resp = await client.get(f"/api/v1/ontologies/{ontology.id}/pipeline")
        nodes = resp.json()["data"]["nodes"]
        assert [n["status"] for n in nodes] == ["succeeded"] * 9

        resp = await client.get(f"/api/v1/ontologies/{ontology.id}/changes", params={"target_type": "relationship"})
        [change] = resp.json()["data"]

        resp = await client.post(
            f"/api/v1/ontologies/{ontology.id}/changes/{change['id']}/approve", json={"reviewer": "ana"}
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

        resp = await client.post(f"/api/v1/ontologies/{ontology.id}/changes/approve-all", json={"reviewer": "ana"})
        assert resp.status_code == 200
        assert resp.json()["data"]["failed_count"] == 0

        resp = await client.post(f"/api/v1/ontologies/{ontology.id}/changes/{change['id']}/approve")
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "approved"

    @pytest.mark.asyncio
    async def test_propose_change_endpoint(self, client, captured_ontology):
        resp = await client.post(
            f"/api/v1/ontologies/{captured_ontology.id}/changes",
            json={
                "action": "create_entity",
                "set_fields": {"name": "User", "primary": {"schema": "public", "table": "users", "column": "id"}},
            },
        )
        assert resp.status_code == 201
        change = resp.json()["data"]
        assert (change["action"], change["source"], change["target_type"]) == ("create_entity", "manual", "entity")

        resp = await client.post(
            f"/api/v1/ontologies/{captured_ontology.id}/changes", json={"action": "delete_entity"}
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    @pytest.mark.asyncio
    async def test_question_endpoints(self, client, ontology, db):
        question = await _question(db, ontology.id)
        base = f"/api/v1/ontologies/{ontology.id}/questions"

        resp = await client.post(f"{base}/{question.id}/dismiss", json={"reason": "irrelevant"})
        assert resp.status_code == 200

        resp = await client.post(f"{base}/{question.id}/resolve", json={"answer": "too late"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

        resp = await client.get(base, params={"status": "dismissed"})
        assert [q["id"] for q in resp.json()["data"]] == [str(question.id)]
