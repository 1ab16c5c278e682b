"""Infisical REST client (``/api/v1``, ``/api/v2`` and ``/api/v3`` endpoints).

Project-scoped operations accept the project id under either ``projectId``
or its legacy alias ``workspaceId``; both resolve to the same canonical
value, falling back to the configured default project.  The environment
and organization fall back to their configured defaults too.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from keycloak_infisical_mcp.auth.token_broker import TokenBroker
from keycloak_infisical_mcp.backends.base import BackendClient, operation
from keycloak_infisical_mcp.errors import OperationResult, ValidationError

logger = logging.getLogger(__name__)

PROJECT_ALIASES = ("projectId", "workspaceId")


class InfisicalClient(BackendClient):
    backend = "infisical"

    def __init__(
        self,
        broker: TokenBroker,
        http_client: httpx.AsyncClient,
        default_project_id: str | None = None,
        default_environment: str = "dev",
        default_org_id: str | None = None,
    ) -> None:
        super().__init__(broker, http_client)
        self._default_project_id = default_project_id
        self._default_environment = default_environment
        self._default_org_id = default_org_id

    # -- secrets --------------------------------------------------------------

    @operation
    async def list_secrets(self, args: dict[str, Any]) -> OperationResult:
        project_id = self.resolve_project_id(args)
        environment = self._environment(args)
        params = {
            "workspaceId": project_id,
            "environment": environment,
            "secretPath": args.get("secretPath", "/"),
            "viewSecretValue": args.get("viewSecretValue", True),
            "expandSecretReferences": args.get("expandSecretReferences", False),
            "recursive": args.get("recursive", False),
            "include_imports": args.get("includeImports", False),
            "tagSlugs": args.get("tagSlugs"),
        }
        return await self._request(
            "GET", "/v3/secrets/raw", params=params, summary=f"Listed secrets in {project_id}/{environment}"
        )

    @operation
    async def get_secret(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "secretName")
        params = {
            "workspaceId": self.resolve_project_id(args),
            "environment": self._environment(args),
            "secretPath": args.get("secretPath", "/"),
            "version": args.get("version"),
            "type": args.get("type", "shared"),
            "expandSecretReferences": args.get("expandSecretReferences", False),
        }
        return await self._request(
            "GET", f"/v3/secrets/raw/{args['secretName']}", params=params, summary=f"Secret '{args['secretName']}'"
        )

    @operation
    async def create_secret(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "secretName", "secretValue")
        body = {
            "workspaceId": self.resolve_project_id(args),
            "environment": self._environment(args),
            "secretValue": args["secretValue"],
            "secretPath": args.get("secretPath", "/"),
            "secretComment": args.get("secretComment", ""),
            "type": args.get("type", "shared"),
            "skipMultilineEncoding": args.get("skipMultilineEncoding", False),
        }
        _copy(args, body, "secretMetadata", "tagIds", "secretReminderRepeatDays", "secretReminderNote")
        return await self._request(
            "POST",
            f"/v3/secrets/raw/{args['secretName']}",
            json=body,
            summary=f"Secret '{args['secretName']}' created",
        )

    @operation
    async def update_secret(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "secretName")
        body = {
            "workspaceId": self.resolve_project_id(args),
            "environment": self._environment(args),
            "secretPath": args.get("secretPath", "/"),
            "type": args.get("type", "shared"),
        }
        _copy(
            args, body,
            "secretValue", "secretComment", "secretMetadata", "tagIds", "newSecretName",
            "skipMultilineEncoding", "secretReminderRepeatDays", "secretReminderNote",
        )
        return await self._request(
            "PATCH",
            f"/v3/secrets/raw/{args['secretName']}",
            json=body,
            summary=f"Secret '{args['secretName']}' updated",
        )

    @operation
    async def delete_secret(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "secretName")
        body = {
            "workspaceId": self.resolve_project_id(args),
            "environment": self._environment(args),
            "secretPath": args.get("secretPath", "/"),
            "type": args.get("type", "shared"),
        }
        return await self._request(
            "DELETE",
            f"/v3/secrets/raw/{args['secretName']}",
            json=body,
            summary=f"Secret '{args['secretName']}' deleted",
        )

    # -- projects -------------------------------------------------------------

    @operation
    async def list_projects(self, args: dict[str, Any]) -> OperationResult:
        return await self._request("GET", "/v1/workspace", summary="Listed projects")

    @operation
    async def get_project(self, args: dict[str, Any]) -> OperationResult:
        project_id = self.resolve_project_id(args)
        return await self._request("GET", f"/v1/workspace/{project_id}", summary=f"Project '{project_id}'")

    @operation
    async def create_project(self, args: dict[str, Any]) -> OperationResult:
        name = args.get("projectName") or args.get("name")
        if not name:
            raise ValidationError("Missing required parameter(s): projectName", fields=["projectName"])
        body = {
            "projectName": name,
            "projectDescription": args.get("projectDescription") or args.get("description"),
            "type": args.get("type", "secret-manager"),
            "shouldCreateDefaultEnvs": args.get("shouldCreateDefaultEnvs", True),
        }
        _copy(args, body, "slug", "kmsKeyId", "template")
        body = {key: value for key, value in body.items() if value is not None}
        return await self._request("POST", "/v2/workspace", json=body, summary=f"Project '{name}' created")

    @operation
    async def update_project(self, args: dict[str, Any]) -> OperationResult:
        project_id = self.resolve_project_id(args)
        body: dict[str, Any] = {}
        _copy(args, body, "name", "description", "autoCapitalization")
        return await self._request("PATCH", f"/v1/workspace/{project_id}", json=body, summary=f"Project '{project_id}' updated")

    @operation
    async def delete_project(self, args: dict[str, Any]) -> OperationResult:
        project_id = self.resolve_project_id(args)
        return await self._request("DELETE", f"/v1/workspace/{project_id}", summary=f"Project '{project_id}' deleted")

    # -- environments ---------------------------------------------------------

    @operation
    async def list_environments(self, args: dict[str, Any]) -> OperationResult:
        project_id = self.resolve_project_id(args)
        return await self._request(
            "GET", f"/v1/workspace/{project_id}/environments", summary=f"Listed environments of '{project_id}'"
        )

    @operation
    async def create_environment(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "name", "slug")
        project_id = self.resolve_project_id(args)
        body = {"name": args["name"], "slug": args["slug"], "position": args.get("position", 1)}
        return await self._request(
            "POST",
            f"/v1/workspace/{project_id}/environments",
            json=body,
            summary=f"Environment '{args['name']}' created",
        )

    @operation
    async def update_environment(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "environmentId")
        project_id = self.resolve_project_id(args)
        body: dict[str, Any] = {}
        _copy(args, body, "name", "slug", "position")
        return await self._request(
            "PATCH",
            f"/v1/workspace/{project_id}/environments/{args['environmentId']}",
            json=body,
            summary=f"Environment '{args['environmentId']}' updated",
        )

    @operation
    async def delete_environment(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "environmentId")
        project_id = self.resolve_project_id(args)
        return await self._request(
            "DELETE",
            f"/v1/workspace/{project_id}/environments/{args['environmentId']}",
            summary=f"Environment '{args['environmentId']}' deleted",
        )

    # -- folders --------------------------------------------------------------

    @operation
    async def list_folders(self, args: dict[str, Any]) -> OperationResult:
        params = {
            "workspaceId": self.resolve_project_id(args),
            "environment": self._environment(args),
            "path": args.get("path", "/"),
            "recursive": args.get("recursive", False),
            "lastSecretModified": args.get("lastSecretModified"),
        }
        return await self._request("GET", "/v1/folders", params=params, summary="Listed folders")

    @operation
    async def get_folder(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "folderId")
        return await self._request("GET", f"/v1/folders/{args['folderId']}", summary=f"Folder '{args['folderId']}'")

    @operation
    async def create_folder(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "name")
        body = {
            "workspaceId": self.resolve_project_id(args),
            "environment": self._environment(args),
            "name": args["name"],
            "path": args.get("path", "/"),
        }
        _copy(args, body, "description")
        return await self._request("POST", "/v1/folders", json=body, summary=f"Folder '{args['name']}' created")

    @operation
    async def update_folder(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "folderId", "name")
        body = {
            "workspaceId": self.resolve_project_id(args),
            "environment": self._environment(args),
            "name": args["name"],
            "path": args.get("path", "/"),
        }
        return await self._request(
            "PATCH", f"/v1/folders/{args['folderId']}", json=body, summary=f"Folder '{args['folderId']}' updated"
        )

    @operation
    async def delete_folder(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "folderId")
        body = {
            "workspaceId": self.resolve_project_id(args),
            "environment": self._environment(args),
            "path": args.get("path", "/"),
        }
        return await self._request(
            "DELETE", f"/v1/folders/{args['folderId']}", json=body, summary=f"Folder '{args['folderId']}' deleted"
        )

    # -- secret tags ----------------------------------------------------------

    @operation
    async def list_secret_tags(self, args: dict[str, Any]) -> OperationResult:
        project_id = self.resolve_project_id(args)
        return await self._request("GET", f"/v1/workspace/{project_id}/tags", summary="Listed secret tags")

    @operation
    async def get_secret_tag(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "tagId")
        project_id = self.resolve_project_id(args)
        return await self._request(
            "GET", f"/v1/workspace/{project_id}/tags/{args['tagId']}", summary=f"Secret tag '{args['tagId']}'"
        )

    @operation
    async def create_secret_tag(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "slug")
        project_id = self.resolve_project_id(args)
        body = {"slug": args["slug"], "color": args.get("color", "#000000")}
        _copy(args, body, "name")
        return await self._request(
            "POST", f"/v1/workspace/{project_id}/tags", json=body, summary=f"Secret tag '{args['slug']}' created"
        )

    @operation
    async def update_secret_tag(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "tagId")
        project_id = self.resolve_project_id(args)
        body: dict[str, Any] = {}
        _copy(args, body, "name", "slug", "color")
        return await self._request(
            "PATCH",
            f"/v1/workspace/{project_id}/tags/{args['tagId']}",
            json=body,
            summary=f"Secret tag '{args['tagId']}' updated",
        )

    @operation
    async def delete_secret_tag(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "tagId")
        project_id = self.resolve_project_id(args)
        return await self._request(
            "DELETE", f"/v1/workspace/{project_id}/tags/{args['tagId']}", summary=f"Secret tag '{args['tagId']}' deleted"
        )

    # -- organization ---------------------------------------------------------

    @operation
    async def list_organization_memberships(self, args: dict[str, Any]) -> OperationResult:
        org_id = self._org(args)
        return await self._request(
            "GET", f"/v2/organizations/{org_id}/memberships", summary=f"Memberships of organization '{org_id}'"
        )

    @operation
    async def update_organization_membership(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "membershipId", "role")
        org_id = self._org(args)
        body: dict[str, Any] = {"role": args["role"]}
        _copy(args, body, "isActive", "metadata")
        return await self._request(
            "PATCH",
            f"/v2/organizations/{org_id}/memberships/{args['membershipId']}",
            json=body,
            summary=f"Membership '{args['membershipId']}' updated",
        )

    @operation
    async def delete_organization_membership(self, args: dict[str, Any]) -> OperationResult:
        self._require(args, "membershipId")
        org_id = self._org(args)
        return await self._request(
            "DELETE",
            f"/v2/organizations/{org_id}/memberships/{args['membershipId']}",
            summary=f"Membership '{args['membershipId']}' deleted",
        )

    @operation
    async def get_audit_logs(self, args: dict[str, Any]) -> OperationResult:
        params = {
            "offset": args.get("offset", 0),
            "limit": args.get("limit", 20),
            "projectId": args.get("projectId") or args.get("workspaceId"),
        }
        for key in (
            "environment", "actorType", "secretPath", "secretKey", "eventType",
            "userAgentType", "startDate", "endDate", "actor",
        ):
            params[key] = args.get(key)
        return await self._request("GET", "/v1/organization/audit-logs", params=params, summary="Audit logs")

    # -- parameter resolution -------------------------------------------------

    def resolve_project_id(self, args: dict[str, Any]) -> str:
        """Collapse ``projectId``/``workspaceId`` into one id, or raise."""
        for name in PROJECT_ALIASES:
            if args.get(name):
                return args[name]
        if self._default_project_id:
            return self._default_project_id
        raise ValidationError(
            "Missing required parameter: projectId (or workspaceId), and no default project is configured",
            fields=["projectId"],
        )

    def _environment(self, args: dict[str, Any]) -> str:
        return args.get("environment") or self._default_environment

    def _org(self, args: dict[str, Any]) -> str:
        org_id = args.get("organizationId") or self._default_org_id
        if not org_id:
            raise ValidationError(
                "Missing required parameter: organizationId, and no default organization is configured",
                fields=["organizationId"],
            )
        return org_id


def _copy(source: dict[str, Any], target: dict[str, Any], *keys: str) -> None:
    for key in keys:
        if source.get(key) is not None:
            target[key] = source[key]
