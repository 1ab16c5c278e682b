"""Cross-service integration tools; available only when both backends are configured."""

from __future__ import annotations

from keycloak_infisical_mcp.auth.session import INFISICAL, INTEGRATION, KEYCLOAK
from keycloak_infisical_mcp.policy import params as p
from keycloak_infisical_mcp.policy.descriptors import CapabilityDescriptor

_REQUIRES = frozenset({KEYCLOAK, INFISICAL, INTEGRATION})

TOOLS: tuple[CapabilityDescriptor, ...] = (
    CapabilityDescriptor(
        name="keycloak_infisical_configure_integration",
        description=(
            "Enable or disable automatic storage of Keycloak-generated secrets in Infisical, "
            "and choose the target project, environment, folder and key prefix"
        ),
        target=INTEGRATION,
        method="configure",
        params=p.ConfigureIntegrationParams,
        requires=_REQUIRES,
    ),
    CapabilityDescriptor(
        name="keycloak_infisical_get_integration_status",
        description="Integration settings, provisioning state and the most recent propagation results",
        target=INTEGRATION,
        method="get_status",
        params=p.NoParams,
        requires=_REQUIRES,
    ),
    CapabilityDescriptor(
        name="keycloak_infisical_store_existing_secret",
        description="Store an existing Keycloak secret in Infisical under the integration's naming scheme",
        target=INTEGRATION,
        method="store_existing_secret",
        params=p.StoreExistingSecretParams,
        requires=_REQUIRES,
    ),
)
