"""Keycloak admin REST client.

Every operation takes the parameter dict produced by the capability
registry (wire names, camelCase) and returns an ``OperationResult``.  The
``realm`` parameter defaults to the configured realm.  Parameters that are
not path/control fields are forwarded as the representation body, so the
client accepts any attribute the admin API understands.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from keycloak_infisical_mcp.auth.token_broker import TokenBroker
from keycloak_infisical_mcp.backends.base import BackendClient, operation
from keycloak_infisical_mcp.errors import OperationResult

logger = logging.getLogger(__name__)


class KeycloakClient(BackendClient):
    """Thin wrapper over ``/admin/realms``."""

    backend = "keycloak"

    def __init__(
        self,
        broker: TokenBroker,
        http_client: httpx.AsyncClient,
        default_realm: str = "master",
    ) -> None:
        super().__init__(broker, http_client)
        self._default_realm = default_realm

    @property
    def default_realm(self) -> str:
        return self._default_realm

    # -- realms ---------------------------------------------------------------

    @operation
    async def list_realms(self, args: dict[str, Any]) -> OperationResult:
        return await self._request("GET", "/realms", summary="Listed realms")

    @operation
    async def get_realm(self, args: dict[str, Any]) -> OperationResult:
        realm = self._realm(args)
        return await self._request("GET", f"/realms/{realm}", summary=f"Realm '{realm}'")

    @operation
    async def create_realm(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "realm")
        body = {"enabled": True, **args}
        result = await self._request("POST", "/realms", json=body, summary=f"Realm '{args['realm']}' created")
        return _with_payload(result, {"realm": args["realm"]})

    @operation
    async def update_realm(self, args: dict[str, Any]) -> OperationResult:
        realm = self._realm(args)
        return await self._request(
            "PUT", f"/realms/{realm}", json=_body(args), summary=f"Realm '{realm}' updated"
        )

    @operation
    async def delete_realm(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "realm")
        realm = args["realm"]
        return await self._request("DELETE", f"/realms/{realm}", summary=f"Realm '{realm}' deleted")

    # -- users ----------------------------------------------------------------

    @operation
    async def list_users(self, args: dict[str, Any]) -> OperationResult:
        realm = self._realm(args)
        params = {
            "first": args.get("first", 0),
            "max": args.get("max", 100),
            "search": args.get("search"),
            "username": args.get("username"),
            "email": args.get("email"),
        }
        return await self._request("GET", f"/realms/{realm}/users", params=params, summary=f"Listed users in '{realm}'")

    @operation
    async def get_user(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "userId")
        realm = self._realm(args)
        return await self._request(
            "GET", f"/realms/{realm}/users/{args['userId']}", summary=f"User '{args['userId']}'"
        )

    @operation
    async def get_user_count(self, args: dict[str, Any]) -> OperationResult:
        realm = self._realm(args)
        return await self._request("GET", f"/realms/{realm}/users/count", summary=f"User count in '{realm}'")

    @operation
    async def create_user(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "username")
        realm = self._realm(args)
        body = _body(args, "password", "temporaryPassword")
        body.setdefault("enabled", True)
        if args.get("password"):
            body["credentials"] = [{
                "type": "password",
                "value": args["password"],
                "temporary": bool(args.get("temporaryPassword", False)),
            }]

        response = await self._send("POST", f"/realms/{realm}/users", json=body)
        if isinstance(response, OperationResult):
            return response
        user_id = _created_id(response)
        return OperationResult.success(
            {"id": user_id, "username": args["username"], "realm": realm},
            f"User '{args['username']}' created in realm '{realm}'",
        )

    @operation
    async def update_user(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "userId")
        realm = self._realm(args)
        return await self._request(
            "PUT",
            f"/realms/{realm}/users/{args['userId']}",
            json=_body(args, "userId"),
            summary=f"User '{args['userId']}' updated",
        )

    @operation
    async def delete_user(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "userId")
        realm = self._realm(args)
        return await self._request(
            "DELETE", f"/realms/{realm}/users/{args['userId']}", summary=f"User '{args['userId']}' deleted"
        )

    # -- clients --------------------------------------------------------------

    @operation
    async def list_clients(self, args: dict[str, Any]) -> OperationResult:
        realm = self._realm(args)
        params = {"first": args.get("first", 0), "max": args.get("max", 100), "clientId": args.get("clientId")}
        return await self._request("GET", f"/realms/{realm}/clients", params=params, summary=f"Listed clients in '{realm}'")

    @operation
    async def get_client(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "clientUuid")
        realm = self._realm(args)
        return await self._request(
            "GET", f"/realms/{realm}/clients/{args['clientUuid']}", summary=f"Client '{args['clientUuid']}'"
        )

    @operation
    async def create_client(self, args: dict[str, Any]) -> OperationResult:
        """Create a client; confidential clients get their secret read back.

        The generated secret is attached to the payload under ``secret``.
        If the follow-up read fails the creation still succeeds, without it.
        """
        self._require(args, "clientId")
        realm = self._realm(args)
        body = _body(args)
        body.setdefault("protocol", "openid-connect")
        body.setdefault("publicClient", False)

        response = await self._send("POST", f"/realms/{realm}/clients", json=body)
        if isinstance(response, OperationResult):
            return response

        client_uuid = _created_id(response)
        payload: dict[str, Any] = {
            "id": client_uuid,
            "clientId": args["clientId"],
            "realm": realm,
            "publicClient": body["publicClient"],
        }
        if client_uuid and is_confidential(body):
            secret = await self._read_client_secret(realm, client_uuid)
            if secret:
                payload["secret"] = secret
        return OperationResult.success(payload, f"Client '{args['clientId']}' created in realm '{realm}'")

    @operation
    async def update_client(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "clientUuid")
        realm = self._realm(args)
        return await self._request(
            "PUT",
            f"/realms/{realm}/clients/{args['clientUuid']}",
            json=_body(args, "clientUuid"),
            summary=f"Client '{args['clientUuid']}' updated",
        )

    @operation
    async def delete_client(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "clientUuid")
        realm = self._realm(args)
        return await self._request(
            "DELETE", f"/realms/{realm}/clients/{args['clientUuid']}", summary=f"Client '{args['clientUuid']}' deleted"
        )

    @operation
    async def get_client_secret(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "clientUuid")
        realm = self._realm(args)
        return await self._request(
            "GET",
            f"/realms/{realm}/clients/{args['clientUuid']}/client-secret",
            summary=f"Secret of client '{args['clientUuid']}'",
        )

    @operation
    async def list_client_roles(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "clientUuid")
        realm = self._realm(args)
        return await self._request(
            "GET", f"/realms/{realm}/clients/{args['clientUuid']}/roles", summary="Listed client roles"
        )

    @operation
    async def create_client_role(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "clientUuid", "name")
        realm = self._realm(args)
        return await self._request(
            "POST",
            f"/realms/{realm}/clients/{args['clientUuid']}/roles",
            json=_body(args, "clientUuid"),
            summary=f"Client role '{args['name']}' created",
        )

    # -- realm roles ----------------------------------------------------------

    @operation
    async def list_roles(self, args: dict[str, Any]) -> OperationResult:
        realm = self._realm(args)
        params = {"first": args.get("first", 0), "max": args.get("max", 100), "search": args.get("search")}
        return await self._request("GET", f"/realms/{realm}/roles", params=params, summary=f"Listed roles in '{realm}'")

    @operation
    async def get_role(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "roleName")
        realm = self._realm(args)
        return await self._request("GET", f"/realms/{realm}/roles/{args['roleName']}", summary=f"Role '{args['roleName']}'")

    @operation
    async def create_role(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "name")
        realm = self._realm(args)
        return await self._request(
            "POST", f"/realms/{realm}/roles", json=_body(args), summary=f"Role '{args['name']}' created"
        )

    @operation
    async def update_role(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "roleName")
        realm = self._realm(args)
        body = _body(args, "roleName")
        body.setdefault("name", args["roleName"])
        return await self._request(
            "PUT", f"/realms/{realm}/roles/{args['roleName']}", json=body, summary=f"Role '{args['roleName']}' updated"
        )

    @operation
    async def delete_role(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "roleName")
        realm = self._realm(args)
        return await self._request(
            "DELETE", f"/realms/{realm}/roles/{args['roleName']}", summary=f"Role '{args['roleName']}' deleted"
        )

    @operation
    async def assign_realm_role(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "userId", "roleName")
        realm = self._realm(args)
        role = await self._request("GET", f"/realms/{realm}/roles/{args['roleName']}", summary="")
        if not role.ok:
            return role
        return await self._request(
            "POST",
            f"/realms/{realm}/users/{args['userId']}/role-mappings/realm",
            json=[role.payload],
            summary=f"Realm role '{args['roleName']}' assigned to user '{args['userId']}'",
        )

    @operation
    async def assign_client_role(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "userId", "clientUuid", "roleName")
        realm = self._realm(args)
        client_uuid = args["clientUuid"]
        role = await self._request("GET", f"/realms/{realm}/clients/{client_uuid}/roles/{args['roleName']}", summary="")
        if not role.ok:
            return role
        return await self._request(
            "POST",
            f"/realms/{realm}/users/{args['userId']}/role-mappings/clients/{client_uuid}",
            json=[role.payload],
            summary=f"Client role '{args['roleName']}' assigned to user '{args['userId']}'",
        )

    @operation
    async def assign_role(self, args: dict[str, Any]) -> OperationResult:
        """Client role when a client is named, realm role otherwise."""
        client_uuid = args.pop("clientId", None) or args.get("clientUuid")
        if client_uuid:
            return await self.assign_client_role({**args, "clientUuid": client_uuid})
        return await self.assign_realm_role(args)

    # -- groups ---------------------------------------------------------------

    @operation
    async def list_groups(self, args: dict[str, Any]) -> OperationResult:
        realm = self._realm(args)
        params = {"first": args.get("first", 0), "max": args.get("max", 100), "search": args.get("search")}
        return await self._request("GET", f"/realms/{realm}/groups", params=params, summary=f"Listed groups in '{realm}'")

    @operation
    async def get_group(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "groupId")
        realm = self._realm(args)
        return await self._request("GET", f"/realms/{realm}/groups/{args['groupId']}", summary=f"Group '{args['groupId']}'")

    @operation
    async def create_group(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "name")
        realm = self._realm(args)
        return await self._request(
            "POST", f"/realms/{realm}/groups", json=_body(args), summary=f"Group '{args['name']}' created"
        )

    @operation
    async def update_group(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "groupId")
        realm = self._realm(args)
        return await self._request(
            "PUT",
            f"/realms/{realm}/groups/{args['groupId']}",
            json=_body(args, "groupId"),
            summary=f"Group '{args['groupId']}' updated",
        )

    @operation
    async def delete_group(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "groupId")
        realm = self._realm(args)
        return await self._request(
            "DELETE", f"/realms/{realm}/groups/{args['groupId']}", summary=f"Group '{args['groupId']}' deleted"
        )

    # -- identity providers ---------------------------------------------------

    @operation
    async def list_identity_providers(self, args: dict[str, Any]) -> OperationResult:
        realm = self._realm(args)
        return await self._request(
            "GET", f"/realms/{realm}/identity-provider/instances", summary=f"Listed identity providers in '{realm}'"
        )

    @operation
    async def get_identity_provider(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "alias")
        realm = self._realm(args)
        return await self._request(
            "GET",
            f"/realms/{realm}/identity-provider/instances/{args['alias']}",
            summary=f"Identity provider '{args['alias']}'",
        )

    @operation
    async def create_identity_provider(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "alias", "providerId")
        realm = self._realm(args)
        body = _body(args)
        body.setdefault("enabled", True)

        response = await self._send("POST", f"/realms/{realm}/identity-provider/instances", json=body)
        if isinstance(response, OperationResult):
            return response

        payload: dict[str, Any] = {"alias": args["alias"], "providerId": args["providerId"], "realm": realm}
        created = await self._request(
            "GET", f"/realms/{realm}/identity-provider/instances/{args['alias']}", summary=""
        )
        if created.ok and isinstance(created.payload, dict):
            payload = {**created.payload, "realm": realm}
        else:
            logger.warning(
                "Identity provider '%s' created but read-back failed: %s",
                args["alias"],
                created.error.message if created.error else "empty body",
            )
        return OperationResult.success(payload, f"Identity provider '{args['alias']}' created in realm '{realm}'")

    @operation
    async def update_identity_provider(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "alias")
        realm = self._realm(args)
        return await self._request(
            "PUT",
            f"/realms/{realm}/identity-provider/instances/{args['alias']}",
            json=_body(args),
            summary=f"Identity provider '{args['alias']}' updated",
        )

    @operation
    async def delete_identity_provider(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "alias")
        realm = self._realm(args)
        return await self._request(
            "DELETE",
            f"/realms/{realm}/identity-provider/instances/{args['alias']}",
            summary=f"Identity provider '{args['alias']}' deleted",
        )

    # -- client scopes, flows, organizations ----------------------------------

    @operation
    async def list_client_scopes(self, args: dict[str, Any]) -> OperationResult:
        realm = self._realm(args)
        return await self._request("GET", f"/realms/{realm}/client-scopes", summary=f"Listed client scopes in '{realm}'")

    @operation
    async def create_client_scope(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "name")
        realm = self._realm(args)
        body = _body(args)
        body.setdefault("protocol", "openid-connect")
        return await self._request(
            "POST", f"/realms/{realm}/client-scopes", json=body, summary=f"Client scope '{args['name']}' created"
        )

    @operation
    async def list_authentication_flows(self, args: dict[str, Any]) -> OperationResult:
        realm = self._realm(args)
        return await self._request(
            "GET", f"/realms/{realm}/authentication/flows", summary=f"Listed authentication flows in '{realm}'"
        )

    @operation
    async def create_authentication_flow(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "alias")
        realm = self._realm(args)
        body = _body(args)
        body.setdefault("providerId", "basic-flow")
        body.setdefault("topLevel", True)
        body.setdefault("builtIn", False)
        return await self._request(
            "POST",
            f"/realms/{realm}/authentication/flows",
            json=body,
            summary=f"Authentication flow '{args['alias']}' created",
        )

    @operation
    async def list_organizations(self, args: dict[str, Any]) -> OperationResult:
        realm = self._realm(args)
        params = {"first": args.get("first", 0), "max": args.get("max", 100), "search": args.get("search")}
        return await self._request(
            "GET", f"/realms/{realm}/organizations", params=params, summary=f"Listed organizations in '{realm}'"
        )

    @operation
    async def create_organization(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "name")
        realm = self._realm(args)
        body = _body(args)
        domains = body.pop("domains", None) or []
        body["domains"] = [d if isinstance(d, dict) else {"name": d} for d in domains]
        return await self._request(
            "POST", f"/realms/{realm}/organizations", json=body, summary=f"Organization '{args['name']}' created"
        )

    # -- events ---------------------------------------------------------------

    @operation
    async def list_events(self, args: dict[str, Any]) -> OperationResult:
        realm = self._realm(args)
        params = {
            "first": args.get("first", 0),
            "max": args.get("max", 100),
            "type": args.get("type"),
            "client": args.get("client"),
            "user": args.get("user"),
            "dateFrom": args.get("dateFrom"),
            "dateTo": args.get("dateTo"),
        }
        return await self._request("GET", f"/realms/{realm}/events", params=params, summary=f"Events in '{realm}'")

    @operation
    async def list_admin_events(self, args: dict[str, Any]) -> OperationResult:
        realm = self._realm(args)
        params = {
            "first": args.get("first", 0),
            "max": args.get("max", 100),
            "operationTypes": args.get("operationTypes"),
            "resourceTypes": args.get("resourceTypes"),
            "dateFrom": args.get("dateFrom"),
            "dateTo": args.get("dateTo"),
        }
        return await self._request(
            "GET", f"/realms/{realm}/admin-events", params=params, summary=f"Admin events in '{realm}'"
        )

    # -- private helpers ------------------------------------------------------

    def _realm(self, args: dict[str, Any]) -> str:
        return args.get("realm") or self._default_realm

    async def _read_client_secret(self, realm: str, client_uuid: str) -> str | None:
        result = await self._request(
            "GET", f"/realms/{realm}/clients/{client_uuid}/client-secret", summary=""
        )
        if result.ok and isinstance(result.payload, dict):
            return result.payload.get("value")
        logger.warning(
            "Client %s created in realm '%s' but its secret could not be read: %s",
            client_uuid,
            realm,
            result.error.message if result.error else "empty body",
        )
        return None


def is_confidential(client: dict[str, Any]) -> bool:
    return not client.get("publicClient", False) and not client.get("bearerOnly", False)


# Path/control parameters that never belong in a representation body.
_CONTROL_FIELDS = ("realm", "first", "max")


def _body(args: dict[str, Any], *exclude: str) -> dict[str, Any]:
    skip = set(_CONTROL_FIELDS) | set(exclude)
    return {key: value for key, value in args.items() if key not in skip}


def _created_id(response: httpx.Response) -> str | None:
    location = response.headers.get("Location", "")
    return location.rstrip("/").rsplit("/", 1)[-1] or None


def _with_payload(result: OperationResult, payload: Any) -> OperationResult:
    if not result.ok or result.payload is not None:
        return result
    return OperationResult.success(payload, result.summary)
