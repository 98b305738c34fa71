"""Tenant onboarding, tenant switching and role assignment."""

import pytest

from bkeep_auth.service.bootstrap import ensure_superadmin
from bkeep_auth.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from bkeep_auth.service.tenants import TenantService

from conftest import PASSWORD


class TestOnboarding:
    def test_superadmins_join_new_tenant(self, runtime):
        root = ensure_superadmin(runtime.store, "root@example.com", PASSWORD)
        actor = {"id": root.id, "email": root.email, "name": root.name}

        tenant = runtime.tenants.onboard("  Globex Ledger ", "tenant_globex", actor=actor)

        assert tenant.name == "Globex Ledger"
        assert runtime.store.get_membership(root.id, tenant.id).is_primary is False
        assert runtime.resolver.resolve(root.id, tenant.id).role.name == "superadmin"
        assert runtime.store.list_audit("tenant.created")[0].actor["id"] == root.id

    def test_duplicate_schema_conflicts(self, runtime, tenant):
        with pytest.raises(ConflictError):
            runtime.tenants.onboard("Copy", tenant.schema_name)

    @pytest.mark.parametrize(
        "schema_name",
        ["", "1tenant", "Tenant", "tenant-acme", "tenant acme", "t" * 64],
    )
    def test_schema_name_rules(self, schema_name):
        with pytest.raises(BadRequestError) as excinfo:
            TenantService.validate_schema_name(schema_name)
        assert excinfo.value.errors[0]["field"] == "schemaName"

    def test_longest_schema_name_accepted(self):
        TenantService.validate_schema_name("t" + "_" * 62)

    def test_blank_name(self, runtime):
        with pytest.raises(BadRequestError, match="tenant name is required"):
            runtime.tenants.onboard("   ", "tenant_blank")


class TestSwitch:
    @pytest.fixture
    def member(self, runtime, make_user):
        user = make_user("ada@example.com", role="admin")
        second = runtime.store.create_tenant("Second", "tenant_second")
        runtime.store.add_membership(user.id, second.id)
        runtime.store.sync_user_roles(
            user.id, second.id, [runtime.store.get_role_by_name("viewer").id]
        )
        return user, second

    async def test_switch_rebinds_tokens(self, runtime, member, tenant):
        user, second = member
        session = await runtime.auth.login("ada@example.com", PASSWORD)
        claims = await runtime.tokens.verify_access(session.access_token)

        switched = await runtime.tenants.switch(
            claims,
            second.id,
            refresh_token=session.refresh_token,
            access_token=session.access_token,
            session_id=session.session_id,
        )

        new_claims = await runtime.tokens.verify_access(switched.access_token)
        assert new_claims["selectedTenantId"] == second.id
        assert new_claims["role"] == "viewer"
        assert await runtime.tokens.cache.get(session.access_token) is None
        assert runtime.store.get_valid_refresh_token(session.refresh_token) is None
        with pytest.raises(AuthenticationError):
            await runtime.auth.refresh(session.refresh_token)

        primaries = [m.tenant.id for m in runtime.store.list_memberships(user.id) if m.is_primary]
        assert primaries == [second.id]
        entry = runtime.store.list_audit("tenant.switched")[0]
        assert entry.metadata == {"previousTenantId": tenant.id}

    async def test_switch_to_foreign_tenant(self, runtime, member):
        user, _ = member
        foreign = runtime.store.create_tenant("Foreign", "tenant_foreign")
        with pytest.raises(ForbiddenError):
            await runtime.tenants.switch({"id": user.id}, foreign.id)

    async def test_switch_to_inactive_tenant(self, runtime, member):
        user, second = member
        second.is_active = False
        with pytest.raises(ForbiddenError, match="tenant is not active"):
            await runtime.tenants.switch({"id": user.id}, second.id)

    async def test_switch_unknown_user(self, runtime, tenant):
        with pytest.raises(NotFoundError):
            await runtime.tenants.switch({"id": "missing"}, tenant.id)


class TestRoleAssignment:
    def test_replaces_role_in_selected_tenant(self, runtime, make_user, tenant):
        user = make_user("ada@example.com", role="viewer")
        accountant = runtime.store.get_role_by_name("accountant")

        body = runtime.tenants.update_user_roles(
            user.id, tenant.id, [accountant.id, accountant.id]
        )

        assert body["role"]["name"] == "accountant"
        assert [g.role.name for g in runtime.store.user_roles_in_tenant(user.id, tenant.id)] == [
            "accountant"
        ]

    @pytest.mark.parametrize("role_names", [[], ["viewer", "admin"]])
    def test_exactly_one_role(self, runtime, make_user, tenant, role_names):
        user = make_user("ada@example.com", role="viewer")
        role_ids = [runtime.store.get_role_by_name(n).id for n in role_names]
        with pytest.raises(BadRequestError):
            runtime.tenants.update_user_roles(user.id, tenant.id, role_ids)

    def test_superadmin_cannot_be_assigned(self, runtime, make_user, tenant):
        user = make_user("ada@example.com", role="viewer")
        superadmin = runtime.store.get_role_by_name("superadmin")
        with pytest.raises(ForbiddenError):
            runtime.tenants.update_user_roles(user.id, tenant.id, [superadmin.id])

    def test_unknown_role_and_user(self, runtime, make_user, tenant):
        user = make_user("ada@example.com", role="viewer")
        with pytest.raises(BadRequestError, match="invalid role id"):
            runtime.tenants.update_user_roles(user.id, tenant.id, ["missing"])
        with pytest.raises(NotFoundError):
            runtime.tenants.update_user_roles("missing", tenant.id, ["whatever"])

    def test_member_of_another_tenant_is_out_of_reach(self, runtime, make_user, tenant):
        other = runtime.store.create_tenant("Other Books", "tenant_other")
        victim = make_user("boss@other.example.com", role="admin", target=other)
        viewer = runtime.store.get_role_by_name("viewer")

        with pytest.raises(ForbiddenError, match="does not belong"):
            runtime.tenants.update_user_roles(victim.id, tenant.id, [viewer.id])

        (grant,) = runtime.store.user_roles_in_tenant(victim.id, other.id)
        assert grant.role.name == "admin"

    def test_only_selected_tenant_role_changes(self, runtime, make_user, tenant):
        user = make_user("ada@example.com", role="admin")
        second = runtime.store.create_tenant("Second", "tenant_second")
        runtime.store.add_membership(user.id, second.id)
        viewer = runtime.store.get_role_by_name("viewer")
        runtime.store.sync_user_roles(user.id, second.id, [viewer.id])
        accountant = runtime.store.get_role_by_name("accountant")

        body = runtime.tenants.update_user_roles(user.id, second.id, [accountant.id])

        assert body["selectedTenantId"] == second.id
        roles = runtime.store.user_roles_in_tenant
        assert [g.role.name for g in roles(user.id, tenant.id)] == ["admin"]
        assert [g.role.name for g in roles(user.id, second.id)] == ["accountant"]


class TestBootstrap:
    def test_ensure_superadmin_is_idempotent(self, runtime):
        first = ensure_superadmin(runtime.store, "root@example.com", PASSWORD)
        second = ensure_superadmin(runtime.store, "root@example.com", "Rotated-Secret-9")

        assert first.id == second.id
        (membership,) = runtime.store.list_memberships(first.id)
        assert membership.tenant.schema_name == "tenant_bkeep"
        assert runtime.resolver.resolve(first.id).role.name == "superadmin"
