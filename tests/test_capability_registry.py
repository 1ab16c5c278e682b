"""Tests for capability filtering, validation and dispatch."""

from __future__ import annotations

import httpx
import pytest

from conftest import INFISICAL_URL, KEYCLOAK_URL, FakeRemote, body_of
from keycloak_infisical_mcp.auth.session import INFISICAL, INTEGRATION, KEYCLOAK, Session
from keycloak_infisical_mcp.auth.session_manager import SessionManager
from keycloak_infisical_mcp.config import Settings
from keycloak_infisical_mcp.errors import (
    CatalogError,
    InternalError,
    SessionNotFound,
    UnknownCapability,
    ValidationError,
)
from keycloak_infisical_mcp.integration.automation import CrossServiceAutomation
from keycloak_infisical_mcp.policy.descriptors import CapabilityDescriptor, ResourceDescriptor
from keycloak_infisical_mcp.policy.params import Params
from keycloak_infisical_mcp.policy.registry import (
    DEFAULT_CAPABILITIES,
    DEFAULT_RESOURCES,
    CapabilityRegistry,
)

pytestmark = pytest.mark.anyio

ADMIN = f"{KEYCLOAK_URL}/admin/realms"
API = f"{INFISICAL_URL}/api"


@pytest.fixture
async def keycloak_session(keycloak_only_settings: Settings, remote: FakeRemote):
    manager = SessionManager(keycloak_only_settings, transport=remote.transport)
    session = manager.create_session()
    yield session
    await manager.close_all()


class TestCatalog:
    def test_default_catalog_is_complete(self) -> None:
        registry = CapabilityRegistry()

        for descriptor in DEFAULT_CAPABILITIES:
            schema = registry.input_schema(descriptor.name)
            assert schema["type"] == "object"

    def test_tool_names_are_prefixed_by_backend(self) -> None:
        prefixes = {"keycloak": "keycloak_", "infisical": "infisical_", "integration": "keycloak_infisical_"}

        for descriptor in DEFAULT_CAPABILITIES:
            assert descriptor.name.startswith(prefixes[descriptor.target])

    def test_resource_uris_use_backend_scheme(self) -> None:
        for descriptor in DEFAULT_RESOURCES:
            assert descriptor.uri_template.startswith(f"{descriptor.target}://")

    def test_schema_uses_wire_names(self) -> None:
        schema = CapabilityRegistry().input_schema("keycloak_create_user")

        assert "temporaryPassword" in schema["properties"]
        assert "username" in schema["required"]

    def test_missing_handler_is_rejected_at_startup(self) -> None:
        broken = CapabilityDescriptor("keycloak_frobnicate", "No such operation", KEYCLOAK, "frobnicate")

        with pytest.raises(CatalogError, match="frobnicate"):
            CapabilityRegistry([broken], [])

    @pytest.mark.parametrize(
        ("target", "method"), [(INFISICAL, "resolve_project_id"), (KEYCLOAK, "aclose"), (INTEGRATION, "drain")]
    )
    def test_helper_methods_are_not_dispatchable(self, target: str, method: str) -> None:
        broken = CapabilityDescriptor(f"expose_{method}", "Not an operation", target, method)

        with pytest.raises(CatalogError, match="is not an operation"):
            CapabilityRegistry([broken], [])

    def test_integration_handlers_are_operations(self) -> None:
        handlers = [getattr(CrossServiceAutomation, d.method) for d in DEFAULT_CAPABILITIES if d.target == INTEGRATION]

        assert handlers
        assert all(handler.is_operation for handler in handlers)

    def test_unknown_target_is_rejected(self) -> None:
        broken = ResourceDescriptor("vault://secrets", "Vault", "Not a backend", "vault", "list_secrets")

        with pytest.raises(CatalogError, match="unknown target"):
            CapabilityRegistry([], [broken])

    def test_duplicate_names_are_rejected(self) -> None:
        tool = CapabilityDescriptor("keycloak_create_realm", "Create", KEYCLOAK, "create_realm", Params)

        with pytest.raises(CatalogError, match="Duplicate"):
            CapabilityRegistry([tool, tool], [])


class TestCapabilityFiltering:
    async def test_full_session_sees_every_tool(self, session: Session, registry: CapabilityRegistry) -> None:
        names = {d.name for d in registry.list_capabilities(session)}

        assert names == {d.name for d in DEFAULT_CAPABILITIES}

    async def test_keycloak_only_session_hides_other_backends(
        self, keycloak_session: Session, registry: CapabilityRegistry
    ) -> None:
        names = [d.name for d in registry.list_capabilities(keycloak_session)]
        uris = [d.uri_template for d in registry.list_resources(keycloak_session)]

        assert names
        assert all(name.startswith("keycloak_") for name in names)
        assert not any(name.startswith("keycloak_infisical_") for name in names)
        assert all(uri.startswith("keycloak://") for uri in uris)

    async def test_hidden_tool_is_unknown_at_dispatch(
        self, keycloak_session: Session, registry: CapabilityRegistry, remote: FakeRemote
    ) -> None:
        with pytest.raises(UnknownCapability) as excinfo:
            await registry.dispatch(
                keycloak_session, "infisical_create_secret", {"secretName": "A", "secretValue": "b"}
            )

        assert excinfo.value.to_dict()["code"] == "UNKNOWN_CAPABILITY"
        assert remote.calls == []

    async def test_hidden_resource_is_unknown(
        self, keycloak_session: Session, registry: CapabilityRegistry
    ) -> None:
        with pytest.raises(UnknownCapability):
            await registry.read_resource(keycloak_session, "infisical://projects")

    async def test_unregistered_tool_is_unknown(self, session: Session, registry: CapabilityRegistry) -> None:
        with pytest.raises(UnknownCapability):
            await registry.dispatch(session, "keycloak_reticulate_splines", {})


class TestDispatch:
    async def test_invalid_arguments_make_no_remote_call(
        self, session: Session, registry: CapabilityRegistry, remote: FakeRemote
    ) -> None:
        result = await registry.dispatch(session, "keycloak_create_user", {"email": "x@example.com"})

        assert not result.ok
        assert isinstance(result.error, ValidationError)
        assert "username" in result.error.fields
        assert remote.calls == []

    async def test_wrong_type_is_a_validation_error(
        self, session: Session, registry: CapabilityRegistry, remote: FakeRemote
    ) -> None:
        result = await registry.dispatch(session, "keycloak_create_user", {"username": "a", "enabled": "maybe"})

        assert isinstance(result.error, ValidationError)
        assert remote.calls == []

    async def test_arguments_reach_backend_with_wire_names(
        self, session: Session, registry: CapabilityRegistry, remote: FakeRemote
    ) -> None:
        remote.on("POST", f"{API}/v3/secrets/raw/TOKEN", {"secret": {"secretKey": "TOKEN"}})

        result = await registry.dispatch(
            session,
            "infisical_create_secret",
            {"workspaceId": "p-9", "secretName": "TOKEN", "secretValue": "t", "secretComment": "ci"},
        )

        assert result.ok
        body = body_of(remote.requests("POST", f"{API}/v3/secrets/raw/TOKEN")[0])
        assert body["workspaceId"] == "p-9"
        assert body["secretComment"] == "ci"

    async def test_unexpected_exception_becomes_internal_error(
        self, session: Session, registry: CapabilityRegistry, remote: FakeRemote
    ) -> None:
        def explode(request: httpx.Request) -> httpx.Response:
            raise RuntimeError("kaboom")

        remote.on("GET", ADMIN, responder=explode)

        result = await registry.read_resource(session, "keycloak://realms")

        assert not result.ok
        assert isinstance(result.error, InternalError)
        assert "kaboom" not in result.error.message
        assert session.inflight == 0

    async def test_keycloak_write_is_handed_to_automation(
        self, session: Session, registry: CapabilityRegistry, remote: FakeRemote
    ) -> None:
        remote.on("POST", f"{ADMIN}/master/users", status=201, headers={"Location": f"{ADMIN}/master/users/u-1"})
        session.automation.update_config(enabled=False)

        result = await registry.dispatch(session, "keycloak_create_user", {"username": "alice", "password": "pw"})
        await session.automation.drain()

        assert result.ok
        (record,) = session.automation.records
        assert record.secret_key == "KEYCLOAK_USER_alice_PASSWORD"
        assert record.status == "skipped"

    async def test_integration_tool_dispatches_to_automation(
        self, session: Session, registry: CapabilityRegistry
    ) -> None:
        result = await registry.dispatch(session, "keycloak_infisical_get_integration_status", {})

        assert result.ok
        assert result.payload["enabled"] is True


class TestResources:
    async def test_path_and_query_parameters_are_merged(
        self, session: Session, registry: CapabilityRegistry, remote: FakeRemote
    ) -> None:
        remote.on("GET", f"{ADMIN}/acme/users/u-1", {"id": "u-1", "username": "alice"})

        result = await registry.read_resource(session, "keycloak://user/u-1?realm=acme")

        assert result.ok
        assert result.payload["username"] == "alice"

    async def test_path_value_wins_over_query(
        self, session: Session, registry: CapabilityRegistry, remote: FakeRemote
    ) -> None:
        remote.on("GET", f"{ADMIN}/master/users/u-1", {"id": "u-1"})

        result = await registry.read_resource(session, "keycloak://user/u-1?userId=u-2")

        assert result.ok
        assert remote.count("GET", f"{ADMIN}/master/users/u-1") == 1

    async def test_static_resource_with_trailing_slash(
        self, session: Session, registry: CapabilityRegistry, remote: FakeRemote
    ) -> None:
        remote.on("GET", ADMIN, [{"realm": "master"}])

        result = await registry.read_resource(session, "keycloak://realms/")

        assert result.payload == [{"realm": "master"}]

    async def test_count_resource_is_not_taken_for_a_user_id(
        self, session: Session, registry: CapabilityRegistry, remote: FakeRemote
    ) -> None:
        remote.on("GET", f"{ADMIN}/master/users/count", 42)

        result = await registry.read_resource(session, "keycloak://users/count")

        assert result.payload == 42

    async def test_project_alias_in_path(
        self, session: Session, registry: CapabilityRegistry, remote: FakeRemote
    ) -> None:
        remote.on("GET", f"{API}/v1/workspace/p-7", {"workspace": {"id": "p-7"}})

        result = await registry.read_resource(session, "infisical://project/p-7")

        assert result.ok

    async def test_unknown_uri(self, session: Session, registry: CapabilityRegistry) -> None:
        with pytest.raises(UnknownCapability):
            await registry.read_resource(session, "keycloak://nonsense/1")

    async def test_closing_session_refuses_work(self, session: Session, registry: CapabilityRegistry) -> None:
        await session.close()

        with pytest.raises(SessionNotFound):
            await registry.read_resource(session, "keycloak://realms")


def test_descriptor_requires_defaults_to_target() -> None:
    descriptor = CapabilityDescriptor("infisical_x", "x", INFISICAL, "list_secrets")

    assert descriptor.requires == frozenset({INFISICAL})
