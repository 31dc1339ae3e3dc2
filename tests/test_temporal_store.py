"""Tests for the temporal assignment store: activeness, one open row per key, history."""
import itertools

import pytest
from sqlalchemy import select

from conftest import BEFORE, T0, day
from permission_service.core.database.engine import atomic
from permission_service.core.errors import ConflictError, InvariantViolationError, NotFoundError
from permission_service.features.permissions import store
from permission_service.features.permissions.models import RoleParentLink, UserRoleGrant


# granted_at, revoked_at, expires_at as day offsets (None = unset)
GRANTED = [0, 10]
REVOKED = [None, 5, 10, 20]
EXPIRES = [None, 5, 10, 20]
INSTANTS = [-1, 0, 4, 5, 9, 10, 15, 20, 30]


def _expected(granted, revoked, expires, instant) -> bool:
    return granted <= instant and (revoked is None or revoked > instant) and (expires is None or expires > instant)


def _grant(user_id, role_id, granted, revoked, expires, scope_id=""):
    return UserRoleGrant(
        user_id=user_id,
        role_id=role_id,
        scope_id=scope_id,
        granted_at=day(granted),
        revoked_at=day(revoked) if revoked is not None else None,
        expires_at=day(expires) if expires is not None else None,
    )


class TestActiveness:
    @pytest.mark.parametrize("granted,revoked,expires", list(itertools.product(GRANTED, REVOKED, EXPIRES)))
    def test_python_predicate(self, granted, revoked, expires):
        grant = _grant("u", "r", granted, revoked, expires)
        for instant in INSTANTS:
            assert grant.is_active_at(day(instant)) is _expected(granted, revoked, expires, instant), instant

    async def test_sql_predicate_agrees(self, db, seed):
        user = await seed.user("subject")
        role = await seed.role("viewer")
        combos = list(itertools.product(GRANTED, REVOKED, EXPIRES))
        rows = {}
        for index, (granted, revoked, expires) in enumerate(combos):
            row = _grant(user.id, role.id, granted, revoked, expires, scope_id=f"scope-{index}")
            db.add(row)
            rows[f"scope-{index}"] = (granted, revoked, expires)
        await db.commit()

        for instant in INSTANTS:
            result = await db.execute(
                select(UserRoleGrant.scope_id).where(UserRoleGrant.active_at(day(instant)))
            )
            active = set(result.scalars().all())
            expected = {scope for scope, combo in rows.items() if _expected(*combo, instant)}
            assert active == expected, instant

    async def test_expired_grant_is_inactive_without_revocation(self, db, seed):
        user = await seed.user("temp")
        role = await seed.role("contractor")
        grant = await seed.user_role(user, role, T0, expires_at=day(7))

        assert [g.id for g in await store.active_user_role_grants(db, user.id, day(6))] == [grant.id]
        assert await store.active_user_role_grants(db, user.id, day(7)) == []
        assert grant.revoked_at is None


class TestSingleOpenRow:
    async def test_second_grant_for_same_key_conflicts(self, db, seed):
        user = await seed.user("dup")
        role = await seed.role("clerk")
        await seed.user_role(user, role, T0)

        with pytest.raises(ConflictError):
            await store.insert_grant(
                db, UserRoleGrant, {"user_id": user.id, "role_id": role.id, "scope_id": ""},
                at=day(1), actor_id=None,
            )

    async def test_future_dated_open_row_still_conflicts(self, db, seed):
        user = await seed.user("pending")
        role = await seed.role("clerk")
        await seed.user_role(user, role, day(10))

        with pytest.raises(ConflictError):
            await store.insert_grant(
                db, UserRoleGrant, {"user_id": user.id, "role_id": role.id, "scope_id": ""},
                at=day(1), actor_id=None,
            )

    async def test_different_scope_is_a_different_key(self, db, seed):
        user = await seed.user("scoped")
        role = await seed.role("approver")
        first = await seed.user_role(user, role, T0, scope_id="budget-1")
        second = await seed.user_role(user, role, T0, scope_id="budget-2")
        assert first.id != second.id

    async def test_expired_open_row_is_closed_before_regrant(self, db, seed):
        user = await seed.user("renewed")
        role = await seed.role("clerk")
        old = await seed.user_role(user, role, T0, expires_at=day(5))
        new = await seed.user_role(user, role, day(8))

        assert old.id != new.id
        assert old.revoked_at == day(8)
        assert new.is_active_at(day(9))

    async def test_index_rejects_racing_writer(self, db, seed, session_factory):
        """A second open row that slips past the lookup is stopped by the partial unique index."""
        user = await seed.user("racer")
        role = await seed.role("clerk")
        await seed.user_role(user, role, T0)

        async with session_factory() as other:
            with pytest.raises(ConflictError):
                async with atomic(other):
                    other.add(UserRoleGrant(user_id=user.id, role_id=role.id, scope_id="", granted_at=day(1)))

        open_rows = await db.execute(
            select(UserRoleGrant).where(UserRoleGrant.user_id == user.id, UserRoleGrant.revoked_at.is_(None))
        )
        assert len(open_rows.scalars().all()) == 1


class TestRevocation:
    async def test_regrant_after_revoke_preserves_history(self, db, seed):
        user = await seed.user("history")
        role = await seed.role("clerk")
        first = await seed.user_role(user, role, T0)
        await store.revoke_grant(db, UserRoleGrant, first.id, at=day(10), actor_id=None)
        await db.commit()
        second = await seed.user_role(user, role, day(20))

        result = await db.execute(select(UserRoleGrant).where(UserRoleGrant.user_id == user.id))
        rows = result.scalars().all()
        assert {row.id for row in rows} == {first.id, second.id}
        assert first.revoked_at == day(10)
        assert second.revoked_at is None
        assert await store.active_user_role_grants(db, user.id, day(15)) == []
        assert [g.id for g in await store.active_user_role_grants(db, user.id, day(5))] == [first.id]
        assert [g.id for g in await store.active_user_role_grants(db, user.id, day(25))] == [second.id]

    async def test_revoking_twice_is_not_found(self, db, seed):
        user = await seed.user("twice")
        role = await seed.role("clerk")
        grant = await seed.user_role(user, role, T0)
        await store.revoke_grant(db, UserRoleGrant, grant.id, at=day(1), actor_id=None)

        with pytest.raises(NotFoundError):
            await store.revoke_grant(db, UserRoleGrant, grant.id, at=day(2), actor_id=None)

    async def test_revoking_before_grant_is_an_invariant_violation(self, db, seed):
        user = await seed.user("backdated")
        role = await seed.role("clerk")
        grant = await seed.user_role(user, role, day(10))

        with pytest.raises(InvariantViolationError):
            await store.revoke_grant(db, UserRoleGrant, grant.id, at=day(5), actor_id=None)

    async def test_unknown_grant_is_not_found(self, db):
        with pytest.raises(NotFoundError):
            await store.revoke_grant(db, UserRoleGrant, "01HZZZZZZZZZZZZZZZZZZZZZZZ", at=T0, actor_id=None)

    async def test_revoke_referencing_counts_open_and_pending_rows(self, db, seed):
        user = await seed.user("bulk")
        role = await seed.role("clerk")
        other = await seed.role("auditor")
        await seed.user_role(user, role, BEFORE)
        await seed.user_role(user, other, day(30))
        await seed.user_role(user, role, BEFORE, scope_id="expired", expires_at=T0)

        count = await store.revoke_referencing(db, UserRoleGrant, "user_id", user.id, at=day(1), actor_id=None)
        await db.commit()

        assert count == 2
        result = await db.execute(
            select(UserRoleGrant).where(UserRoleGrant.user_id == user.id, UserRoleGrant.revoked_at.is_(None))
        )
        assert [row.scope_id for row in result.scalars().all()] == ["expired"]


class TestRoleAncestry:
    async def test_ancestry_nearest_first(self, db, seed):
        base = await seed.role("base")
        middle = await seed.role("middle", parent=base)
        top = await seed.role("top", parent=middle)
        assert await store.role_ancestry(db, top.id, T0) == [top.id, middle.id, base.id]

    async def test_ancestry_follows_links_active_at_the_instant(self, db, seed):
        base = await seed.role("base")
        other = await seed.role("other")
        child = await seed.role("child")
        link = await seed.parent_link(child, base, T0)
        await store.revoke_grant(db, RoleParentLink, link.id, at=day(10), actor_id=None)
        await seed.parent_link(child, other, day(10))

        assert await store.role_ancestry(db, child.id, BEFORE) == [child.id]
        assert await store.role_ancestry(db, child.id, day(5)) == [child.id, base.id]
        assert await store.role_ancestry(db, child.id, day(10)) == [child.id, other.id]

    async def test_ancestry_stops_at_deleted_role(self, db, seed):
        base = await seed.role("base")
        middle = await seed.role("middle", parent=base)
        top = await seed.role("top", parent=middle)
        middle.deleted_at = day(10)
        await db.commit()

        assert await store.role_ancestry(db, top.id, day(9)) == [top.id, middle.id, base.id]
        assert await store.role_ancestry(db, top.id, day(10)) == [top.id]
        assert await store.role_ancestry(db, middle.id, day(10)) == []

    async def test_stored_cycle_is_an_invariant_violation(self, db, seed):
        a = await seed.role("a")
        b = await seed.role("b", parent=a)
        await seed.parent_link(a, b)

        with pytest.raises(InvariantViolationError):
            await store.role_ancestry(db, a.id, T0)
