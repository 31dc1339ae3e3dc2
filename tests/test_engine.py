"""Tests for EffectivePermissionEngine: aggregation, delegation and decision auditing."""
import pytest
from sqlalchemy import func, select

from conftest import BEFORE, T0, day
from permission_service.core.errors import IdempotencyKeyReusedError
from permission_service.features.audit.models import AuditRecord, Decision
from permission_service.features.delegations.models import DelegationScope
from permission_service.features.permissions.engine import EffectivePermissionEngine


async def _audit_count(db) -> int:
    result = await db.execute(select(func.count()).select_from(AuditRecord))
    return result.scalar_one()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
async def finance(seed):
    """transactions:read/approve and budgets:read, with a manager role inheriting from viewer."""
    read = await seed.permission("transactions", "read")
    approve = await seed.permission("transactions", "approve")
    budgets = await seed.permission("budgets", "read")
    viewer = await seed.role_with("viewer", read, budgets)
    manager = await seed.role_with("manager", approve, parent=viewer)
    return {"read": read, "approve": approve, "budgets": budgets, "viewer": viewer, "manager": manager}


class TestRoleSources:
    async def test_user_without_grants_has_empty_set(self, db, seed, engine):
        user = await seed.user("nobody")
        permissions = await engine.effective_permissions(db, user.id, T0)
        assert len(permissions) == 0
        assert permissions.names == frozenset()

    async def test_inherits_ancestor_permissions(self, db, seed, engine, finance):
        user = await seed.user("mgr")
        await seed.user_role(user, finance["manager"])

        permissions = await engine.effective_permissions(db, user.id, T0)
        assert permissions.names == {"transactions:read", "transactions:approve", "budgets:read"}

        inherited = permissions.matching("transactions", "tx-1", "read")
        assert [entry.via_role_id for entry in inherited] == [finance["viewer"].id]

    async def test_role_permission_granted_later_is_not_yet_active(self, db, seed, engine):
        user = await seed.user("early")
        export = await seed.permission("reports", "export")
        role = await seed.role("analyst")
        await seed.user_role(user, role, BEFORE)
        await seed.role_grant(role, export, day(10))

        assert "reports:export" not in await engine.effective_permissions(db, user.id, day(5))
        assert "reports:export" in await engine.effective_permissions(db, user.id, day(10))

    async def test_scoped_role_applies_only_to_its_scope(self, db, seed, engine, finance):
        user = await seed.user("scoped")
        await seed.user_role(user, finance["manager"], scope_id="budget-7")

        assert (await engine.check(db, user.id, "transactions", "budget-7", "approve", T0)).granted
        assert not (await engine.check(db, user.id, "transactions", "budget-8", "approve", T0)).granted
        permissions = await engine.effective_permissions(db, user.id, T0)
        assert permissions.names == frozenset()
        assert ("transactions", "budget-7", "approve") in permissions.resource_permissions

    async def test_wildcard_permission_matches_everything(self, db, seed, engine, superuser):
        evaluation = await engine.check(db, superuser.id, "ledgers", "l-1", "close", T0)
        assert evaluation.granted


class TestResourceGrants:
    async def test_exact_instance_only(self, db, seed, engine):
        user = await seed.user("reviewer")
        await seed.resource_grant(user, "transactions", "tx-1", "approve")

        assert (await engine.check(db, user.id, "transactions", "tx-1", "approve", T0)).granted
        assert not (await engine.check(db, user.id, "transactions", "tx-2", "approve", T0)).granted
        assert not (await engine.check(db, user.id, "transactions", "tx-1", "read", T0)).granted

    async def test_expires_lazily(self, db, seed, engine):
        user = await seed.user("short")
        await seed.resource_grant(user, "transactions", "tx-1", "read", T0, expires_at=day(1))

        assert (await engine.check(db, user.id, "transactions", "tx-1", "read", T0)).granted
        assert not (await engine.check(db, user.id, "transactions", "tx-1", "read", day(1))).granted


class TestDelegation:
    async def test_full_delegation_lends_delegator_access(self, db, seed, engine, finance):
        alice = await seed.user("alice")
        bob = await seed.user("bob")
        await seed.user_role(alice, finance["manager"])
        delegation = await seed.delegation(alice, bob, DelegationScope.FULL, T0, valid_until=day(7))

        evaluation = await engine.check(db, bob.id, "transactions", "tx-1", "approve", day(1))
        assert evaluation.granted
        assert evaluation.contributing_grants[0].via_delegation_id == delegation.id
        assert not (await engine.check(db, bob.id, "transactions", "tx-1", "approve", day(7))).granted

    async def test_read_only_scope_filters_actions(self, db, seed, engine, finance):
        alice = await seed.user("alice")
        bob = await seed.user("bob")
        await seed.user_role(alice, finance["manager"])
        await seed.delegation(alice, bob, DelegationScope.READ_ONLY, T0)

        permissions = await engine.effective_permissions(db, bob.id, day(1))
        assert permissions.names == {"transactions:read", "budgets:read"}

    async def test_read_only_scope_narrows_wildcards(self, db, seed, engine, superuser):
        bob = await seed.user("bob")
        await seed.delegation(superuser, bob, DelegationScope.READ_ONLY, T0, resource_type="budgets")

        permissions = await engine.effective_permissions(db, bob.id, day(1))
        assert permissions.names == {"budgets:read", "budgets:list", "budgets:view"}
        assert not (await engine.check(db, bob.id, "budgets", "b-1", "delete", day(1))).granted
        assert not (await engine.check(db, bob.id, "ledgers", "l-1", "read", day(1))).granted

    async def test_resource_ids_narrow_the_delegation(self, db, seed, engine, finance):
        alice = await seed.user("alice")
        bob = await seed.user("bob")
        await seed.user_role(alice, finance["viewer"])
        await seed.delegation(
            alice, bob, DelegationScope.FULL, T0, resource_type="transactions", resource_ids=["tx-1", "tx-2"]
        )

        assert (await engine.check(db, bob.id, "transactions", "tx-2", "read", day(1))).granted
        assert not (await engine.check(db, bob.id, "transactions", "tx-3", "read", day(1))).granted
        assert not (await engine.check(db, bob.id, "budgets", "tx-1", "read", day(1))).granted

    async def test_delegation_follows_delegator_revocation(self, db, seed, engine, finance):
        alice = await seed.user("alice")
        bob = await seed.user("bob")
        grant = await seed.user_role(alice, finance["viewer"])
        await seed.delegation(alice, bob, DelegationScope.FULL, T0)
        grant.revoked_at = day(3)
        await db.commit()

        assert (await engine.check(db, bob.id, "transactions", "tx-1", "read", day(2))).granted
        assert not (await engine.check(db, bob.id, "transactions", "tx-1", "read", day(4))).granted

    async def test_chain_does_not_recurse(self, db, seed, engine, finance):
        a = await seed.user("a")
        b = await seed.user("b")
        c = await seed.user("c")
        d = await seed.user("d")
        await seed.user_role(a, finance["manager"])
        await seed.delegation(a, b, DelegationScope.FULL, T0)
        await seed.delegation(b, c, DelegationScope.FULL, T0)
        await seed.delegation(c, d, DelegationScope.FULL, T0)

        assert (await engine.check(db, b.id, "transactions", "tx-1", "approve", day(1))).granted
        assert len(await engine.effective_permissions(db, c.id, day(1))) == 0
        assert len(await engine.effective_permissions(db, d.id, day(1))) == 0

    async def test_chain_only_carries_delegators_own_grants(self, db, seed, engine, finance):
        a = await seed.user("a")
        b = await seed.user("b")
        c = await seed.user("c")
        await seed.user_role(a, finance["manager"])
        await seed.resource_grant(b, "reports", "r-1", "read")
        await seed.delegation(a, b, DelegationScope.FULL, T0)
        await seed.delegation(b, c, DelegationScope.FULL, T0)

        permissions = await engine.effective_permissions(db, c.id, day(1))
        assert permissions.resource_permissions == {("reports", "r-1", "read")}
        assert permissions.names == frozenset()

    async def test_mutual_delegation_terminates(self, db, seed, finance):
        deep = EffectivePermissionEngine(max_delegation_depth=5)
        a = await seed.user("a")
        b = await seed.user("b")
        await seed.user_role(a, finance["viewer"])
        await seed.delegation(a, b, DelegationScope.FULL, T0)
        await seed.delegation(b, a, DelegationScope.FULL, T0)

        assert "transactions:read" in await deep.effective_permissions(db, b.id, day(1))

    async def test_deeper_limit_is_configurable(self, db, seed, finance):
        deep = EffectivePermissionEngine(max_delegation_depth=2)
        a = await seed.user("a")
        b = await seed.user("b")
        c = await seed.user("c")
        await seed.user_role(a, finance["viewer"])
        await seed.delegation(a, b, DelegationScope.FULL, T0)
        await seed.delegation(b, c, DelegationScope.FULL, T0)

        assert "transactions:read" in await deep.effective_permissions(db, c.id, day(1))


class TestEvaluate:
    async def test_listing_and_check_write_no_audit(self, db, seed, engine, finance):
        user = await seed.user("quiet")
        await seed.user_role(user, finance["viewer"])

        await engine.effective_permissions(db, user.id, T0)
        await engine.check(db, user.id, "transactions", "tx-1", "read", T0)
        assert await _audit_count(db) == 0

    async def test_granted_decision_is_audited_once(self, db, seed, engine, finance):
        user = await seed.user("auditee")
        await seed.user_role(user, finance["viewer"])

        evaluation = await engine.evaluate(db, user.id, "transactions", "tx-1", "read", T0)

        assert evaluation.decision is Decision.GRANTED
        record = await db.get(AuditRecord, evaluation.audit_record_id)
        assert record.decision is Decision.GRANTED
        assert record.action == "evaluate"
        assert record.actor_id == user.id
        assert record.occurred_at == T0
        assert record.context["contributing_grants"][0]["kind"] == "role_grant"
        assert await _audit_count(db) == 1

    async def test_denied_decision_is_audited_with_reason(self, db, seed, engine):
        user = await seed.user("denied")

        evaluation = await engine.evaluate(db, user.id, "transactions", "tx-1", "approve", T0, actor_id="gateway")

        assert evaluation.decision is Decision.DENIED
        assert evaluation.contributing_grants == ()
        record = await db.get(AuditRecord, evaluation.audit_record_id)
        assert record.reason == "no_matching_grant"
        assert record.actor_id == "gateway"

    async def test_unknown_user_is_denied_not_an_error(self, db, engine):
        evaluation = await engine.evaluate(db, "01HUNKNOWNUSER000000000000", "transactions", None, "read", T0)
        assert evaluation.decision is Decision.DENIED

    async def test_retry_with_idempotency_key_writes_one_record(self, db, seed, engine, finance):
        user = await seed.user("retry")
        await seed.user_role(user, finance["viewer"])

        first = await engine.evaluate(db, user.id, "transactions", "tx-1", "read", T0, idempotency_key="req-1")
        second = await engine.evaluate(db, user.id, "transactions", "tx-1", "read", T0, idempotency_key="req-1")

        assert first.audit_record_id == second.audit_record_id
        assert second.decision is Decision.GRANTED
        assert await _audit_count(db) == 1
        assert second.contributing_grants == first.contributing_grants

    async def test_retry_returns_recorded_decision_not_a_fresh_one(self, db, seed, engine):
        user = await seed.user("late-grant")
        denied = await engine.evaluate(db, user.id, "invoices", "inv-1", "approve", T0, idempotency_key="req-2")
        await seed.resource_grant(user, "invoices", "inv-1", "approve", BEFORE)

        retried = await engine.evaluate(db, user.id, "invoices", "inv-1", "approve", T0, idempotency_key="req-2")

        assert denied.decision is Decision.DENIED
        assert retried.decision is Decision.DENIED
        assert retried.contributing_grants == ()
        assert retried.audit_record_id == denied.audit_record_id

    async def test_key_reused_for_another_request_conflicts(self, db, seed, engine, finance):
        user = await seed.user("reuser")
        other = await seed.user("other")
        await seed.user_role(user, finance["viewer"])
        user_id, other_id = user.id, other.id
        await engine.evaluate(db, user_id, "transactions", "tx-1", "read", T0, idempotency_key="req-3")

        with pytest.raises(IdempotencyKeyReusedError):
            await engine.evaluate(db, user_id, "transactions", "tx-2", "read", T0, idempotency_key="req-3")
        with pytest.raises(IdempotencyKeyReusedError):
            await engine.evaluate(db, other_id, "transactions", "tx-1", "read", T0, idempotency_key="req-3")
        assert await _audit_count(db) == 1
