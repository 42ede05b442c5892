"""Tests for the pending-change ledger: record, approve, reject, approve-all."""

import uuid

import pytest
from sqlalchemy import func, select

from app.catalog.types import ColumnLocation
from app.core.exceptions import ConflictError, NotFoundError, SchemaMismatchError, ValidationError
from app.models.entity import OntologyEntity
from app.ontology import changes as change_service
from app.ontology import entities as entity_service
from app.ontology import relationships as relationship_service
from app.ontology.changes import ChangeAction, ChangeStatus


def _loc(table: str, column: str) -> dict:
    return ColumnLocation("public", table, column).to_dict()


async def _create_entity_change(db, ontology_id, name, table, column="id"):
    return await change_service.record_change(
        db,
        ontology_id,
        ChangeAction.CREATE_ENTITY,
        set_fields={"name": name, "primary": _loc(table, column)},
        source="manual",
    )


async def _entity_count(db, ontology_id, name):
    result = await db.execute(
        select(func.count())
        .select_from(OntologyEntity)
        .where(OntologyEntity.ontology_id == ontology_id, OntologyEntity.name == name)
    )
    return result.scalar_one()


# ===========================================================================
# Recording
# ===========================================================================


class TestRecordChange:
    @pytest.mark.asyncio
    async def test_diff_shape_and_target_type(self, db, captured_ontology):
        change = await change_service.record_change(
            db,
            captured_ontology.id,
            "update_entity",
            target_id=uuid.uuid4(),
            set_fields={"description": "new"},
            before={"description": "old"},
        )
        assert change.status == ChangeStatus.PENDING.value
        assert change.target_type == "entity"
        assert change.diff == {"set": {"description": "new"}, "before": {"description": "old"}}

    @pytest.mark.asyncio
    async def test_unknown_action_rejected(self, db, captured_ontology):
        with pytest.raises(ValidationError):
            await change_service.record_change(db, captured_ontology.id, "rename_everything")

    @pytest.mark.asyncio
    async def test_list_filters_by_target_type(self, db, captured_ontology):
        await _create_entity_change(db, captured_ontology.id, "User", "users")
        await change_service.record_change(
            db, captured_ontology.id, ChangeAction.UPDATE_COLUMN, location=_loc("users", "email"),
            set_fields={"description": "Login email"},
        )

        entities = await change_service.list_changes(db, captured_ontology.id, target_type="entity")
        columns = await change_service.list_changes(db, captured_ontology.id, target_type="column")
        assert [c.action for c in entities] == ["create_entity"]
        assert [c.action for c in columns] == ["update_column"]


# ===========================================================================
# Approve / reject
# ===========================================================================


class TestApproveChange:
    @pytest.mark.asyncio
    async def test_approve_applies_diff(self, db, captured_ontology):
        change = await _create_entity_change(db, captured_ontology.id, "User", "users")

        approved = await change_service.approve_change(db, captured_ontology.id, change.id, reviewer="ana")

        assert approved.status == "approved"
        assert approved.reviewed_by == "ana"
        assert approved.reviewed_at is not None
        entity = await entity_service.get_entity(db, captured_ontology.id, approved.target_id)
        assert entity.name == "User"
        assert entity.is_staged is False

    @pytest.mark.asyncio
    async def test_reapprove_is_idempotent(self, db, captured_ontology):
        change = await _create_entity_change(db, captured_ontology.id, "User", "users")

        await change_service.approve_change(db, captured_ontology.id, change.id)
        again = await change_service.approve_change(db, captured_ontology.id, change.id)

        assert again.status == "approved"
        assert await _entity_count(db, captured_ontology.id, "User") == 1

    @pytest.mark.asyncio
    async def test_approving_rejected_change_conflicts(self, db, captured_ontology):
        change = await _create_entity_change(db, captured_ontology.id, "User", "users")
        await change_service.reject_change(db, captured_ontology.id, change.id, reason="not needed")

        with pytest.raises(ConflictError):
            await change_service.approve_change(db, captured_ontology.id, change.id)
        assert change.status == "rejected"
        assert await _entity_count(db, captured_ontology.id, "User") == 0

    @pytest.mark.asyncio
    async def test_unknown_change_not_found_and_others_untouched(self, db, captured_ontology):
        change = await _create_entity_change(db, captured_ontology.id, "User", "users")

        with pytest.raises(NotFoundError):
            await change_service.approve_change(db, captured_ontology.id, uuid.uuid4())
        assert change.status == "pending"

    @pytest.mark.asyncio
    async def test_location_missing_from_snapshot_stays_pending(self, db, captured_ontology):
        change = await _create_entity_change(db, captured_ontology.id, "Product", "products")

        with pytest.raises(SchemaMismatchError):
            await change_service.approve_change(db, captured_ontology.id, change.id)

        assert change.status == "pending"
        assert change.reason.startswith("apply failed: ")
        assert "public.products.id" in change.reason
        assert await _entity_count(db, captured_ontology.id, "Product") == 0

    @pytest.mark.asyncio
    async def test_manual_edit_wins_over_agent_update(self, db, captured_ontology):
        entity, _ = await entity_service.upsert_entity(
            db, captured_ontology.id, "User", ColumnLocation("public", "users", "id"),
            staged=False, source="manual", description="Curated by a human",
        )
        change = await change_service.record_change(
            db, captured_ontology.id, ChangeAction.UPDATE_ENTITY,
            target_id=entity.id, set_fields={"description": "Guess"}, source="agent",
        )

        with pytest.raises(ConflictError):
            await change_service.approve_change(db, captured_ontology.id, change.id)

        assert entity.description == "Curated by a human"
        assert change.status == "pending"

    @pytest.mark.asyncio
    async def test_staged_pair_needs_live_entities(self, db, captured_ontology):
        order, _ = await entity_service.upsert_entity(
            db, captured_ontology.id, "Order", ColumnLocation("public", "orders", "id"), staged=True
        )
        user, _ = await entity_service.upsert_entity(
            db, captured_ontology.id, "User", ColumnLocation("public", "users", "id"), staged=False
        )
        written = await relationship_service.create_pair(
            db, captured_ontology.id, order, user,
            ColumnLocation("public", "orders", "user_id"), ColumnLocation("public", "users", "id"),
        )
        change = await change_service.record_change(
            db, captured_ontology.id, ChangeAction.CREATE_RELATIONSHIP, target_id=written.pair_id
        )

        with pytest.raises(ValidationError):
            await change_service.approve_change(db, captured_ontology.id, change.id)
        assert written.forward.is_staged is True

        order.is_staged = False
        await db.flush()
        await change_service.approve_change(db, captured_ontology.id, change.id)
        assert written.forward.is_staged is False
        assert written.reverse.is_staged is False


class TestRejectChange:
    @pytest.mark.asyncio
    async def test_reject_leaves_staged_row_staged(self, db, captured_ontology):
        entity, _ = await entity_service.upsert_entity(
            db, captured_ontology.id, "User", ColumnLocation("public", "users", "id"), staged=True
        )
        change = await change_service.record_change(
            db, captured_ontology.id, ChangeAction.CREATE_ENTITY, target_id=entity.id
        )

        rejected = await change_service.reject_change(
            db, captured_ontology.id, change.id, reason="duplicate", reviewer="ana"
        )

        assert rejected.status == "rejected"
        assert rejected.reason == "duplicate"
        assert entity.is_staged is True

    @pytest.mark.asyncio
    async def test_reject_approved_conflicts(self, db, captured_ontology):
        change = await _create_entity_change(db, captured_ontology.id, "User", "users")
        await change_service.approve_change(db, captured_ontology.id, change.id)

        with pytest.raises(ConflictError):
            await change_service.reject_change(db, captured_ontology.id, change.id)


# ===========================================================================
# Approve all
# ===========================================================================


class TestApproveAll:
    @pytest.mark.asyncio
    async def test_counts_and_continues_past_failures(self, db, captured_ontology):
        # relationship recorded first; apply order still creates entities before it
        relationship = await change_service.record_change(
            db,
            captured_ontology.id,
            ChangeAction.CREATE_RELATIONSHIP,
            set_fields={
                "source_entity": "Order",
                "target_entity": "User",
                "source": _loc("orders", "user_id"),
                "target": _loc("users", "id"),
                "association": "placed_by",
                "reverse_association": "places",
            },
            source="manual",
        )
        await _create_entity_change(db, captured_ontology.id, "Order", "orders")
        await _create_entity_change(db, captured_ontology.id, "User", "users")
        bad = await _create_entity_change(db, captured_ontology.id, "Product", "products")

        result = await change_service.approve_all(db, captured_ontology.id, reviewer="ana")

        assert result.applied_count == 3
        assert result.failed_count == 1
        assert result.failures[0]["change_id"] == str(bad.id)
        assert result.failures[0]["code"] == "schema_mismatch"

        pair = await relationship_service.get_pair(db, captured_ontology.id, relationship.target_id)
        assert pair.forward.association == "placed_by"
        assert pair.reverse.association == "places"
        pending = await change_service.list_changes(db, captured_ontology.id, status="pending")
        assert [c.id for c in pending] == [bad.id]

    @pytest.mark.asyncio
    async def test_nothing_pending(self, db, captured_ontology):
        result = await change_service.approve_all(db, captured_ontology.id)
        assert (result.applied_count, result.failed_count, result.failures) == (0, 0, [])
