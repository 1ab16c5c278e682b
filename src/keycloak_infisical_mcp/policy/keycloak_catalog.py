"""Keycloak tools (writes) and resources (reads)."""

from __future__ import annotations

from keycloak_infisical_mcp.auth.session import KEYCLOAK
from keycloak_infisical_mcp.policy import params as p
from keycloak_infisical_mcp.policy.descriptors import CapabilityDescriptor, ResourceDescriptor


def _tool(method: str, description: str, params: type[p.Params]) -> CapabilityDescriptor:
    return CapabilityDescriptor(
        name=f"keycloak_{method}", description=description, target=KEYCLOAK, method=method, params=params
    )


def _resource(uri: str, name: str, description: str, method: str, params: type[p.Params]) -> ResourceDescriptor:
    return ResourceDescriptor(
        uri_template=f"keycloak://{uri}",
        name=name,
        description=description,
        target=KEYCLOAK,
        method=method,
        params=params,
    )


TOOLS: tuple[CapabilityDescriptor, ...] = (
    # realms
    _tool("create_realm", "Create a new realm in Keycloak", p.CreateRealmParams),
    _tool("update_realm", "Update realm settings (any realm representation attribute)", p.RealmParams),
    _tool("delete_realm", "Delete a realm and everything in it", p.DeleteRealmParams),
    # users
    _tool(
        "create_user",
        "Create a user. An initial password, if given, is also stored in Infisical when the integration is enabled",
        p.CreateUserParams,
    ),
    _tool("update_user", "Update a user", p.UpdateUserParams),
    _tool("delete_user", "Delete a user", p.UserParams),
    # clients
    _tool(
        "create_client",
        "Create a client. The generated secret of a confidential client is returned and stored in Infisical",
        p.CreateClientParams,
    ),
    _tool("update_client", "Update a client", p.UpdateClientParams),
    _tool("delete_client", "Delete a client", p.ClientParams),
    _tool("get_client_secret", "Read the current secret of a confidential client", p.ClientParams),
    _tool("create_client_role", "Create a role scoped to a client", p.CreateClientRoleParams),
    # roles
    _tool("create_role", "Create a realm role", p.CreateRoleParams),
    _tool("update_role", "Update a realm role", p.UpdateRoleParams),
    _tool("delete_role", "Delete a realm role", p.RoleParams),
    _tool("assign_realm_role", "Assign a realm role to a user", p.AssignRealmRoleParams),
    _tool("assign_client_role", "Assign a client role to a user", p.AssignClientRoleParams),
    _tool(
        "assign_role",
        "Assign a role to a user: a client role when clientId is given, a realm role otherwise "
        "(prefer keycloak_assign_realm_role or keycloak_assign_client_role)",
        p.AssignRoleParams,
    ),
    # groups
    _tool("create_group", "Create a group", p.CreateGroupParams),
    _tool("update_group", "Update a group", p.UpdateGroupParams),
    _tool("delete_group", "Delete a group", p.GroupParams),
    # identity providers
    _tool(
        "create_identity_provider",
        "Create an identity provider. A config.clientSecret is also stored in Infisical",
        p.CreateIdentityProviderParams,
    ),
    _tool("update_identity_provider", "Update an identity provider", p.UpdateIdentityProviderParams),
    _tool("delete_identity_provider", "Delete an identity provider", p.IdentityProviderParams),
    # scopes, flows, organizations
    _tool("create_client_scope", "Create a client scope", p.CreateClientScopeParams),
    _tool("create_authentication_flow", "Create a top-level authentication flow", p.CreateAuthenticationFlowParams),
    _tool("create_organization", "Create an organization", p.CreateOrganizationParams),
)


RESOURCES: tuple[ResourceDescriptor, ...] = (
    _resource("realms", "Keycloak realms", "All realms", "list_realms", p.Params),
    _resource("realm/{realm}", "Keycloak realm", "One realm's settings", "get_realm", p.RealmParams),
    _resource("users", "Keycloak users", "Users of a realm (?realm=&search=&first=&max=)", "list_users", p.ListUsersParams),
    _resource("user/{userId}", "Keycloak user", "One user", "get_user", p.UserParams),
    _resource("users/count", "Keycloak user count", "Number of users in a realm", "get_user_count", p.RealmParams),
    _resource("clients", "Keycloak clients", "Clients of a realm", "list_clients", p.ListClientsParams),
    _resource("client/{clientUuid}", "Keycloak client", "One client", "get_client", p.ClientParams),
    _resource("client/{clientUuid}/roles", "Keycloak client roles", "Roles of a client", "list_client_roles", p.ClientParams),
    _resource("roles", "Keycloak realm roles", "Realm roles", "list_roles", p.PagedParams),
    _resource("role/{roleName}", "Keycloak realm role", "One realm role", "get_role", p.RoleParams),
    _resource("groups", "Keycloak groups", "Groups of a realm", "list_groups", p.PagedParams),
    _resource("group/{groupId}", "Keycloak group", "One group", "get_group", p.GroupParams),
    _resource(
        "identity-providers", "Keycloak identity providers", "Identity providers of a realm",
        "list_identity_providers", p.RealmParams,
    ),
    _resource(
        "identity-provider/{alias}", "Keycloak identity provider", "One identity provider",
        "get_identity_provider", p.IdentityProviderParams,
    ),
    _resource("client-scopes", "Keycloak client scopes", "Client scopes of a realm", "list_client_scopes", p.RealmParams),
    _resource("events", "Keycloak events", "User events of a realm", "list_events", p.EventsParams),
    _resource("admin-events", "Keycloak admin events", "Admin events of a realm", "list_admin_events", p.AdminEventsParams),
    _resource(
        "authentication/flows", "Keycloak authentication flows", "Authentication flows of a realm",
        "list_authentication_flows", p.RealmParams,
    ),
    _resource("organizations", "Keycloak organizations", "Organizations of a realm", "list_organizations", p.PagedParams),
)
