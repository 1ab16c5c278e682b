"""Static parameter models for every capability.

Each tool and resource validates its arguments against one of these models
before anything is sent to a backend.  Field names are snake_case in
Python and camelCase on the wire (``alias_generator=to_camel``); the MCP
``inputSchema`` is generated from the model once, at registry construction.

Models allow extra fields: the Keycloak admin API accepts many more
representation attributes than are worth declaring, and they are forwarded
to the backend untouched.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Params(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_args(self) -> dict[str, Any]:
        """Wire-named dict for the backend client, omitting unset values."""
        return self.model_dump(by_alias=True, exclude_none=True)


class NoParams(Params):
    pass


# -- Keycloak -----------------------------------------------------------------


class RealmParams(Params):
    realm: str | None = Field(None, description="Keycloak realm name (defaults to the configured realm)")


class PagedParams(RealmParams):
    first: int | None = Field(None, ge=0, description="Offset of the first result")
    max: int | None = Field(None, ge=1, description="Maximum number of results")
    search: str | None = Field(None, description="Search string")


class CreateRealmParams(Params):
    realm: str = Field(description="Name of the new realm")
    display_name: str | None = None
    enabled: bool | None = None


class DeleteRealmParams(Params):
    realm: str = Field(description="Realm to delete")


class ListUsersParams(PagedParams):
    username: str | None = None
    email: str | None = None


class UserParams(RealmParams):
    user_id: str = Field(description="User id (UUID)")


class CreateUserParams(RealmParams):
    username: str
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    enabled: bool | None = None
    email_verified: bool | None = None
    password: str | None = Field(None, description="Initial password; stored in Infisical when the integration is on")
    temporary_password: bool | None = Field(None, description="Require a password change on first login")
    groups: list[str] | None = None
    attributes: dict[str, Any] | None = None


class UpdateUserParams(UserParams):
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    enabled: bool | None = None
    email_verified: bool | None = None
    attributes: dict[str, Any] | None = None


class ListClientsParams(PagedParams):
    client_id: str | None = Field(None, description="Filter by client id")


class ClientParams(RealmParams):
    client_uuid: str = Field(description="Internal client id (UUID)")


class CreateClientParams(RealmParams):
    client_id: str
    name: str | None = None
    description: str | None = None
    enabled: bool | None = None
    public_client: bool | None = Field(None, description="Public clients have no secret")
    bearer_only: bool | None = None
    protocol: str | None = None
    redirect_uris: list[str] | None = None
    web_origins: list[str] | None = None
    standard_flow_enabled: bool | None = None
    direct_access_grants_enabled: bool | None = None
    service_accounts_enabled: bool | None = None


class UpdateClientParams(ClientParams):
    name: str | None = None
    description: str | None = None
    enabled: bool | None = None
    redirect_uris: list[str] | None = None
    web_origins: list[str] | None = None


class CreateClientRoleParams(ClientParams):
    name: str
    description: str | None = None


class RoleParams(RealmParams):
    role_name: str


class CreateRoleParams(RealmParams):
    name: str
    description: str | None = None
    composite: bool | None = None


class UpdateRoleParams(RoleParams):
    name: str | None = None
    description: str | None = None


class AssignRealmRoleParams(RealmParams):
    user_id: str
    role_name: str


class AssignClientRoleParams(AssignRealmRoleParams):
    client_uuid: str


class AssignRoleParams(AssignRealmRoleParams):
    client_id: str | None = Field(None, description="Client UUID for a client role; realm role when omitted")


class GroupParams(RealmParams):
    group_id: str


class CreateGroupParams(RealmParams):
    name: str
    path: str | None = None
    attributes: dict[str, Any] | None = None


class UpdateGroupParams(GroupParams):
    name: str | None = None
    attributes: dict[str, Any] | None = None


class IdentityProviderParams(RealmParams):
    alias: str


class CreateIdentityProviderParams(IdentityProviderParams):
    provider_id: str = Field(description="Provider type, e.g. oidc, saml, google")
    display_name: str | None = None
    enabled: bool | None = None
    trust_email: bool | None = None
    store_token: bool | None = None
    first_broker_login_flow_alias: str | None = None
    config: dict[str, Any] | None = Field(None, description="Provider config; a clientSecret here is stored in Infisical")


class UpdateIdentityProviderParams(IdentityProviderParams):
    display_name: str | None = None
    enabled: bool | None = None
    config: dict[str, Any] | None = None


class CreateClientScopeParams(RealmParams):
    name: str
    description: str | None = None
    protocol: str | None = None
    attributes: dict[str, Any] | None = None


class CreateAuthenticationFlowParams(RealmParams):
    alias: str
    description: str | None = None
    provider_id: str | None = None
    top_level: bool | None = None


class CreateOrganizationParams(RealmParams):
    name: str
    alias: str | None = None
    description: str | None = None
    enabled: bool | None = None
    domains: list[str | dict[str, Any]] | None = None


class EventsParams(RealmParams):
    first: int | None = Field(None, ge=0)
    max: int | None = Field(None, ge=1)
    type: list[str] | str | None = None
    client: str | None = None
    user: str | None = None
    date_from: str | None = Field(None, description="yyyy-MM-dd")
    date_to: str | None = Field(None, description="yyyy-MM-dd")


class AdminEventsParams(RealmParams):
    first: int | None = Field(None, ge=0)
    max: int | None = Field(None, ge=1)
    operation_types: list[str] | str | None = None
    resource_types: list[str] | str | None = None
    date_from: str | None = None
    date_to: str | None = None


# -- Infisical ----------------------------------------------------------------


class ProjectParams(Params):
    project_id: str | None = Field(None, description="Project id (defaults to the configured project)")
    workspace_id: str | None = Field(None, description="Alias of projectId")


class ScopedParams(ProjectParams):
    environment: str | None = Field(None, description="Environment slug (defaults to the configured environment)")


class ListSecretsParams(ScopedParams):
    secret_path: str | None = None
    view_secret_value: bool | None = None
    expand_secret_references: bool | None = None
    recursive: bool | None = None
    include_imports: bool | None = None
    tag_slugs: str | None = None


class SecretParams(ScopedParams):
    secret_name: str
    secret_path: str | None = None
    type: Literal["shared", "personal"] | None = None


class GetSecretParams(SecretParams):
    version: int | None = None
    expand_secret_references: bool | None = None


class CreateSecretParams(SecretParams):
    secret_value: str
    secret_comment: str | None = None
    skip_multiline_encoding: bool | None = None
    secret_metadata: list[dict[str, str]] | None = None
    tag_ids: list[str] | None = None
    secret_reminder_repeat_days: int | None = None
    secret_reminder_note: str | None = None


class UpdateSecretParams(SecretParams):
    secret_value: str | None = None
    secret_comment: str | None = None
    new_secret_name: str | None = None
    skip_multiline_encoding: bool | None = None
    secret_metadata: list[dict[str, str]] | None = None
    tag_ids: list[str] | None = None


class CreateProjectParams(Params):
    project_name: str
    project_description: str | None = None
    slug: str | None = None
    type: str | None = None
    kms_key_id: str | None = None
    template: str | None = None
    should_create_default_envs: bool | None = None


class UpdateProjectParams(ProjectParams):
    name: str | None = None
    description: str | None = None
    auto_capitalization: bool | None = None


class CreateEnvironmentParams(ProjectParams):
    name: str
    slug: str
    position: int | None = None


class EnvironmentParams(ProjectParams):
    environment_id: str


class UpdateEnvironmentParams(EnvironmentParams):
    name: str | None = None
    slug: str | None = None
    position: int | None = None


class ListFoldersParams(ScopedParams):
    path: str | None = None
    recursive: bool | None = None
    last_secret_modified: str | None = None


class FolderParams(ScopedParams):
    folder_id: str
    path: str | None = None


class CreateFolderParams(ScopedParams):
    name: str
    path: str | None = None
    description: str | None = None


class UpdateFolderParams(FolderParams):
    name: str


class SecretTagParams(ProjectParams):
    tag_id: str


class CreateSecretTagParams(ProjectParams):
    slug: str
    name: str | None = None
    color: str | None = None


class UpdateSecretTagParams(SecretTagParams):
    name: str | None = None
    slug: str | None = None
    color: str | None = None


class OrganizationParams(Params):
    organization_id: str | None = Field(None, description="Organization id (defaults to the configured organization)")


class MembershipParams(OrganizationParams):
    membership_id: str


class UpdateMembershipParams(MembershipParams):
    role: str
    is_active: bool | None = None
    metadata: list[dict[str, str]] | None = None


class AuditLogParams(ProjectParams):
    offset: int | None = Field(None, ge=0)
    limit: int | None = Field(None, ge=1)
    environment: str | None = None
    actor_type: str | None = None
    secret_path: str | None = None
    secret_key: str | None = None
    event_type: list[str] | str | None = None
    user_agent_type: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    actor: str | None = None


# -- integration --------------------------------------------------------------


class ConfigureIntegrationParams(Params):
    enabled: bool = Field(description="Turn automatic secret propagation on or off")
    project_name: str | None = Field(None, description="Infisical project to discover or create")
    project_id: str | None = Field(None, description="Use this project and skip discovery")
    environment: str | None = None
    secret_prefix: str | None = None
    folder_path: str | None = None
    tag_ids: list[str] | None = Field(None, description="Secret tag ids applied to every propagated secret")
    tag_slugs: list[str] | None = Field(
        None, description="Secret tag slugs applied to every propagated secret; missing tags are created"
    )


class StoreExistingSecretParams(Params):
    secret_name: str
    secret_value: str
    context: str = Field(description="Why the secret is being stored")
    realm: str | None = None
    category: Literal["CLIENT", "USER", "IDP", "REALM"] | None = Field(
        None, description="Name the secret with the standard <PREFIX><CATEGORY>_<ID>_<SUFFIX> scheme"
    )
    identifier: str | None = Field(None, description="Identifier used with category (defaults to secretName)")
