"""Immutable descriptors for tools and resources.

A descriptor binds a public name (tool name or resource URI template) to a
``target`` component of the session (``keycloak``, ``infisical`` or
``integration``) and the ``method`` on it that handles the call.  The set of
backends a descriptor requires defaults to its target.
"""

from __future__ import annotations

import dataclasses

from keycloak_infisical_mcp.policy.params import Params


@dataclasses.dataclass(frozen=True)
class CapabilityDescriptor:
    name: str
    description: str
    target: str
    method: str
    params: type[Params] = Params
    requires: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if not self.requires:
            object.__setattr__(self, "requires", frozenset({self.target}))


@dataclasses.dataclass(frozen=True)
class ResourceDescriptor:
    uri_template: str
    name: str
    description: str
    target: str
    method: str
    params: type[Params] = Params
    requires: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if not self.requires:
            object.__setattr__(self, "requires", frozenset({self.target}))

    @property
    def is_template(self) -> bool:
        return "{" in self.uri_template
