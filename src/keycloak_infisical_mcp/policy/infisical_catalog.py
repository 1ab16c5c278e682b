"""Infisical tools (writes plus secret lookup) and resources (reads)."""

from __future__ import annotations

from keycloak_infisical_mcp.auth.session import INFISICAL
from keycloak_infisical_mcp.policy import params as p
from keycloak_infisical_mcp.policy.descriptors import CapabilityDescriptor, ResourceDescriptor


def _tool(method: str, description: str, params: type[p.Params]) -> CapabilityDescriptor:
    return CapabilityDescriptor(
        name=f"infisical_{method}", description=description, target=INFISICAL, method=method, params=params
    )


def _resource(uri: str, name: str, description: str, method: str, params: type[p.Params]) -> ResourceDescriptor:
    return ResourceDescriptor(
        uri_template=f"infisical://{uri}",
        name=name,
        description=description,
        target=INFISICAL,
        method=method,
        params=params,
    )


TOOLS: tuple[CapabilityDescriptor, ...] = (
    _tool("get_secret", "Read one secret by name", p.GetSecretParams),
    _tool("create_secret", "Create a secret", p.CreateSecretParams),
    _tool("update_secret", "Update a secret's value, comment, name or tags", p.UpdateSecretParams),
    _tool("delete_secret", "Delete a secret", p.SecretParams),
    _tool("create_project", "Create a project", p.CreateProjectParams),
    _tool("update_project", "Update a project", p.UpdateProjectParams),
    _tool("delete_project", "Delete a project", p.ProjectParams),
    _tool("create_environment", "Create an environment in a project", p.CreateEnvironmentParams),
    _tool("update_environment", "Update an environment", p.UpdateEnvironmentParams),
    _tool("delete_environment", "Delete an environment", p.EnvironmentParams),
    _tool("create_folder", "Create a folder", p.CreateFolderParams),
    _tool("update_folder", "Rename a folder", p.UpdateFolderParams),
    _tool("delete_folder", "Delete a folder", p.FolderParams),
    _tool("create_secret_tag", "Create a secret tag", p.CreateSecretTagParams),
    _tool("update_secret_tag", "Update a secret tag", p.UpdateSecretTagParams),
    _tool("delete_secret_tag", "Delete a secret tag", p.SecretTagParams),
    _tool("update_organization_membership", "Change an organization member's role", p.UpdateMembershipParams),
    _tool("delete_organization_membership", "Remove a member from an organization", p.MembershipParams),
)


RESOURCES: tuple[ResourceDescriptor, ...] = (
    _resource(
        "secrets", "Infisical secrets", "Secrets of a project environment (?projectId=&environment=&secretPath=)",
        "list_secrets", p.ListSecretsParams,
    ),
    _resource("secret/{secretName}", "Infisical secret", "One secret", "get_secret", p.GetSecretParams),
    _resource("projects", "Infisical projects", "Projects visible to the identity", "list_projects", p.Params),
    _resource("project/{workspaceId}", "Infisical project", "One project", "get_project", p.ProjectParams),
    _resource(
        "environments/{workspaceId}", "Infisical environments", "Environments of a project",
        "list_environments", p.ProjectParams,
    ),
    _resource("folders", "Infisical folders", "Folders under a path", "list_folders", p.ListFoldersParams),
    _resource("folder/{folderId}", "Infisical folder", "One folder", "get_folder", p.FolderParams),
    _resource(
        "secret-tags/{workspaceId}", "Infisical secret tags", "Secret tags of a project",
        "list_secret_tags", p.ProjectParams,
    ),
    _resource(
        "secret-tag/{workspaceId}/{tagId}", "Infisical secret tag", "One secret tag",
        "get_secret_tag", p.SecretTagParams,
    ),
    _resource(
        "organization/{organizationId}/memberships", "Infisical organization memberships",
        "Members of an organization", "list_organization_memberships", p.OrganizationParams,
    ),
    _resource("audit-logs", "Infisical audit logs", "Organization audit log", "get_audit_logs", p.AuditLogParams),
)
