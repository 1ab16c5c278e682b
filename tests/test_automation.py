"""Tests for cross-service secret propagation and discover-or-create provisioning."""

from __future__ import annotations

import asyncio

import pytest

from conftest import INFISICAL_URL, KEYCLOAK_URL, FakeRemote, body_of
from keycloak_infisical_mcp.auth.session import Session
from keycloak_infisical_mcp.auth.session_manager import SessionManager
from keycloak_infisical_mcp.errors import OperationResult, RemoteRejected
from keycloak_infisical_mcp.integration.automation import (
    Category,
    CrossServiceAutomation,
    ProvisioningState,
    ProvisioningTarget,
    secret_key,
)
from keycloak_infisical_mcp.policy.registry import CapabilityRegistry

pytestmark = pytest.mark.anyio

API = f"{INFISICAL_URL}/api"
ADMIN = f"{KEYCLOAK_URL}/admin/realms"
PROJECTS = f"{API}/v1/workspace"
FOLDERS = f"{API}/v1/folders"
PROJECT = {"id": "p-ks", "name": "Keycloak Secrets"}


def _existing_project(remote: FakeRemote) -> None:
    remote.on("GET", PROJECTS, {"workspaces": [{"id": "p-other", "name": "Other"}, PROJECT]})


def _secret_url(key: str) -> str:
    return f"{API}/v3/secrets/raw/{key}"


class TestSecretKey:
    def test_client_secret_key(self) -> None:
        assert secret_key(Category.CLIENT, "my-app") == "KEYCLOAK_CLIENT_my-app_SECRET"

    def test_user_key_uses_password_suffix(self) -> None:
        assert secret_key(Category.USER, "alice") == "KEYCLOAK_USER_alice_PASSWORD"

    def test_idp_and_realm_keys_use_secret_suffix(self) -> None:
        assert secret_key(Category.IDP, "github") == "KEYCLOAK_IDP_github_SECRET"
        assert secret_key(Category.REALM, "acme") == "KEYCLOAK_REALM_acme_SECRET"

    def test_custom_prefix(self) -> None:
        assert secret_key(Category.CLIENT, "api", prefix="KC_") == "KC_CLIENT_api_SECRET"


class TestProvisioning:
    async def test_existing_project_is_found_without_creating(self, session: Session, remote: FakeRemote) -> None:
        _existing_project(remote)

        target = await session.automation.resolve_target()

        assert target == ProvisioningTarget("p-ks", "/keycloak")
        assert remote.count("POST", f"{API}/v2/workspace") == 0
        assert session.automation.state is ProvisioningState.RESOLVED

    async def test_missing_project_is_created_then_relisted(self, session: Session, remote: FakeRemote) -> None:
        remote.on("GET", PROJECTS, {"workspaces": []})
        remote.on("GET", PROJECTS, {"workspaces": [PROJECT]})
        remote.on("POST", f"{API}/v2/workspace", {"project": {"id": "p-ks"}})

        target = await session.automation.resolve_target()

        assert target.project_id == "p-ks"
        (create,) = remote.requests("POST", f"{API}/v2/workspace")
        assert body_of(create)["projectName"] == "Keycloak Secrets"
        assert remote.count("GET", PROJECTS) == 2

    async def test_concurrent_resolution_converges_on_one_project(
        self, session: Session, remote: FakeRemote
    ) -> None:
        remote.on("GET", PROJECTS, {"workspaces": []})
        remote.on("GET", PROJECTS, {"workspaces": [PROJECT]})
        remote.on("POST", f"{API}/v2/workspace", {"project": {"id": "p-ks"}})

        targets = await asyncio.gather(*(session.automation.resolve_target() for _ in range(8)))

        assert {t.project_id for t in targets} == {"p-ks"}
        assert remote.count("POST", f"{API}/v2/workspace") == 1

    async def test_resolution_is_memoized(self, session: Session, remote: FakeRemote) -> None:
        _existing_project(remote)

        await session.automation.resolve_target()
        await session.automation.resolve_target()

        assert remote.count("GET", PROJECTS) == 1

    async def test_failed_discovery_short_circuits_later_propagations(
        self, session: Session, remote: FakeRemote
    ) -> None:
        remote.on("GET", PROJECTS, {"message": "internal"}, status=500)

        first = await session.automation.propagate(Category.USER, "alice", "pw", "master", "initial password")
        second = await session.automation.propagate(Category.USER, "bob", "pw", "master", "initial password")

        assert first.status == second.status == "failed"
        assert session.automation.state is ProvisioningState.FAILED
        assert remote.count("GET", PROJECTS) == 1

    async def test_configured_project_id_bypasses_discovery(self, session: Session, remote: FakeRemote) -> None:
        session.automation.update_config(project_id="p-pinned")

        target = await session.automation.resolve_target()

        assert target.project_id == "p-pinned"
        assert remote.count("GET", PROJECTS) == 0

    async def test_ensure_folder_tolerates_already_exists(self, session: Session, remote: FakeRemote) -> None:
        remote.on("POST", FOLDERS, {"message": "Folder with name 'keycloak' already exists"}, status=400)

        first = await session.automation.ensure_folder("p-ks", "dev", "/keycloak")
        second = await session.automation.ensure_folder("p-ks", "dev", "/keycloak")

        assert first.ok
        assert second.ok

    async def test_ensure_folder_creates_each_segment(self, session: Session, remote: FakeRemote) -> None:
        remote.on("POST", FOLDERS, {"folder": {}})

        result = await session.automation.ensure_folder("p-ks", "dev", "/keycloak/prod")

        assert result.ok
        bodies = [body_of(r) for r in remote.requests("POST", FOLDERS)]
        assert [(b["name"], b["path"]) for b in bodies] == [("keycloak", "/"), ("prod", "/keycloak")]
        assert all(b["workspaceId"] == "p-ks" for b in bodies)

    async def test_other_folder_failures_are_reported(self, session: Session, remote: FakeRemote) -> None:
        remote.on("POST", FOLDERS, {"message": "Forbidden"}, status=403)

        result = await session.automation.ensure_folder("p-ks", "dev", "/keycloak")

        assert not result.ok
        assert isinstance(result.error, RemoteRejected)


class TestPropagation:
    async def test_stored_secret_carries_realm_and_reason(self, session: Session, remote: FakeRemote) -> None:
        _existing_project(remote)
        remote.on("POST", FOLDERS, {"folder": {}})
        remote.on("POST", _secret_url("KEYCLOAK_USER_alice_PASSWORD"), {"secret": {}})

        record = await session.automation.propagate(Category.USER, "alice", "pw", "acme", "initial password")

        assert record.status == "stored"
        body = body_of(remote.requests("POST", _secret_url("KEYCLOAK_USER_alice_PASSWORD"))[0])
        assert body["workspaceId"] == "p-ks"
        assert body["environment"] == "dev"
        assert body["secretPath"] == "/keycloak"
        assert body["secretValue"] == "pw"
        assert body["secretComment"] == "Initial password for Keycloak user 'alice' in realm 'acme'"
        assert {"key": "source", "value": "keycloak"} in body["secretMetadata"]
        assert {"key": "realm", "value": "acme"} in body["secretMetadata"]

    async def test_default_tags_are_resolved_and_created_once(self, session: Session, remote: FakeRemote) -> None:
        tags_url = f"{PROJECTS}/p-ks/tags"
        _existing_project(remote)
        remote.on("POST", FOLDERS, {"folder": {}})
        remote.on("GET", tags_url, {"workspaceTags": [{"id": "t-kc", "slug": "keycloak", "name": "keycloak"}]})
        remote.on("POST", tags_url, {"workspaceTag": {"id": "t-auto", "slug": "auto-generated"}})
        remote.on("POST", _secret_url("KEYCLOAK_CLIENT_api_SECRET"), {"secret": {}})
        remote.on("POST", _secret_url("KEYCLOAK_CLIENT_web_SECRET"), {"secret": {}})

        await session.automation.propagate(Category.CLIENT, "api", "s1", "master", "client secret")
        await session.automation.propagate(Category.CLIENT, "web", "s2", "master", "client secret")

        for key in ("KEYCLOAK_CLIENT_api_SECRET", "KEYCLOAK_CLIENT_web_SECRET"):
            body = body_of(remote.requests("POST", _secret_url(key))[0])
            assert body["tagIds"] == ["t-kc", "t-auto"]
        (created,) = remote.requests("POST", tags_url)
        assert body_of(created)["slug"] == "auto-generated"
        assert remote.count("GET", tags_url) == 1

    async def test_explicit_tag_ids_are_kept_and_slugs_can_be_cleared(
        self, session: Session, remote: FakeRemote
    ) -> None:
        _existing_project(remote)
        remote.on("POST", FOLDERS, {"folder": {}})
        remote.on("POST", _secret_url("KEYCLOAK_REALM_acme_SECRET"), {"secret": {}})

        await session.automation.configure({"enabled": True, "tagIds": ["t-1"], "tagSlugs": []})
        record = await session.automation.propagate(Category.REALM, "acme", "s", "acme", "realm secret")

        assert record.status == "stored"
        body = body_of(remote.requests("POST", _secret_url("KEYCLOAK_REALM_acme_SECRET"))[0])
        assert body["tagIds"] == ["t-1"]
        assert remote.count("GET", f"{PROJECTS}/p-ks/tags") == 0

    async def test_unresolvable_tags_do_not_block_the_secret(self, session: Session, remote: FakeRemote) -> None:
        _existing_project(remote)
        remote.on("POST", FOLDERS, {"folder": {}})
        remote.on("POST", _secret_url("KEYCLOAK_USER_bob_PASSWORD"), {"secret": {}})

        record = await session.automation.propagate(Category.USER, "bob", "pw", "master", "initial password")

        assert record.status == "stored"
        assert "tagIds" not in body_of(remote.requests("POST", _secret_url("KEYCLOAK_USER_bob_PASSWORD"))[0])

    async def test_disabled_at_propagation_time_skips(self, session: Session, remote: FakeRemote) -> None:
        task = session.automation.on_identity_result(
            "create_user", {"username": "alice", "password": "pw"}, OperationResult.success({"realm": "master"})
        )
        session.automation.update_config(enabled=False)

        record = await task

        assert record.status == "skipped"
        assert remote.calls == []

    async def test_configuration_changes_apply_to_later_propagations(
        self, session: Session, remote: FakeRemote
    ) -> None:
        _existing_project(remote)
        remote.on("POST", FOLDERS, {"folder": {}})
        remote.on("POST", _secret_url("KC_CLIENT_api_SECRET"), {"secret": {}})

        session.automation.update_config(secret_prefix="KC_", folder_path="/kc", environment="prod")
        record = await session.automation.propagate(Category.CLIENT, "api", "s", "master", "client secret")

        assert record.secret_key == "KC_CLIENT_api_SECRET"
        body = body_of(remote.requests("POST", _secret_url("KC_CLIENT_api_SECRET"))[0])
        assert body["secretPath"] == "/kc"
        assert body["environment"] == "prod"

    @pytest.mark.parametrize(
        ("operation", "args", "payload"),
        [
            ("create_user", {"username": "alice"}, {"realm": "master"}),
            ("create_client", {"clientId": "spa"}, {"clientId": "spa", "publicClient": True}),
            ("create_identity_provider", {"alias": "saml", "config": {}}, {"alias": "saml"}),
            ("create_group", {"name": "ops"}, None),
        ],
    )
    async def test_non_qualifying_results_do_not_trigger(
        self, session: Session, operation: str, args: dict, payload: dict | None
    ) -> None:
        result = OperationResult.success(payload)

        assert session.automation.on_identity_result(operation, args, result) is None

    async def test_failed_results_do_not_trigger(self, session: Session) -> None:
        failed = OperationResult.failure(RemoteRejected("keycloak", 409, {}))

        assert session.automation.on_identity_result("create_user", {"username": "a", "password": "p"}, failed) is None


class TestConfidentialClientScenario:
    async def test_propagation_failure_leaves_client_creation_intact(
        self, session: Session, remote: FakeRemote, registry: CapabilityRegistry
    ) -> None:
        remote.on("POST", f"{ADMIN}/master/clients", status=201, headers={"Location": f"{ADMIN}/master/clients/c-1"})
        remote.on("GET", f"{ADMIN}/master/clients/c-1/client-secret", {"type": "secret", "value": "generated"})
        remote.on("GET", PROJECTS, {"workspaces": []})
        remote.on("GET", PROJECTS, {"workspaces": [PROJECT]})
        remote.on("POST", f"{API}/v2/workspace", {"project": {"id": "p-ks"}})
        remote.on("POST", FOLDERS, {"folder": {}})
        remote.on("POST", _secret_url("KEYCLOAK_CLIENT_my-app_SECRET"), {"message": "boom"}, status=500)

        result = await registry.dispatch(session, "keycloak_create_client", {"clientId": "my-app"})
        await session.automation.drain()

        assert result.ok
        assert result.payload["secret"] == "generated"
        assert remote.count("POST", f"{API}/v2/workspace") == 1
        assert remote.count("POST", FOLDERS) == 1
        assert remote.count("POST", _secret_url("KEYCLOAK_CLIENT_my-app_SECRET")) == 1
        (record,) = session.automation.records
        assert record.status == "failed"
        assert record.secret_key == "KEYCLOAK_CLIENT_my-app_SECRET"


class TestIntegrationTools:
    async def test_status_reports_records_and_state(self, session: Session, remote: FakeRemote) -> None:
        _existing_project(remote)
        remote.on("POST", FOLDERS, {"folder": {}})
        remote.on("POST", _secret_url("KEYCLOAK_IDP_github_SECRET"), {"secret": {}})
        await session.automation.propagate(Category.IDP, "github", "x", "master", "identity provider client secret")

        status = await session.automation.get_status({})

        assert status.ok
        assert status.payload["enabled"] is True
        assert status.payload["provisioning"]["state"] == "ready"
        assert status.payload["provisioning"]["projectId"] == "p-ks"
        assert status.payload["recentPropagations"][0]["secretKey"] == "KEYCLOAK_IDP_github_SECRET"
        assert status.payload["recentPropagations"][0]["status"] == "stored"

    async def test_configure_updates_options(self, session: Session, remote: FakeRemote) -> None:
        result = await session.automation.configure({"enabled": False, "secretPrefix": "SSO_"})

        assert result.ok
        assert result.payload["config"]["enabled"] is False
        assert result.payload["config"]["secretPrefix"] == "SSO_"
        assert session.automation.secret_key(Category.CLIENT, "x") == "SSO_CLIENT_x_SECRET"
        assert remote.calls == []

    async def test_store_existing_secret_with_category(self, session: Session, remote: FakeRemote) -> None:
        _existing_project(remote)
        remote.on("POST", FOLDERS, {"folder": {}})
        remote.on("POST", _secret_url("KEYCLOAK_CLIENT_legacy_SECRET"), {"secret": {}})

        result = await session.automation.store_existing_secret(
            {"secretName": "legacy", "secretValue": "v", "context": "migration", "category": "CLIENT"}
        )

        assert result.ok
        assert result.payload["secretKey"] == "KEYCLOAK_CLIENT_legacy_SECRET"

    async def test_store_existing_secret_reports_failure(self, session: Session, remote: FakeRemote) -> None:
        _existing_project(remote)
        remote.on("POST", FOLDERS, {"folder": {}})
        remote.on("POST", _secret_url("KEYCLOAK_legacy"), {"message": "denied"}, status=403)

        result = await session.automation.store_existing_secret(
            {"secretName": "legacy", "secretValue": "v", "context": "migration"}
        )

        assert not result.ok
        assert isinstance(result.error, RemoteRejected)
        assert result.error.status_code == 403

    async def test_automation_is_per_session(self, manager: SessionManager) -> None:
        first = manager.create_session()
        second = manager.create_session()

        assert isinstance(first.automation, CrossServiceAutomation)
        assert first.automation is not second.automation
        assert first.automation.config is not second.automation.config
        await manager.close_all()
