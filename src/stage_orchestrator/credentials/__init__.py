"""Credential scoping: resolve named secrets into scope-local handles."""

from stage_orchestrator.credentials.scope import (
    CredentialBindings,
    CredentialProvider,
    CredentialScopeManager,
    EnvCredentialProvider,
    InvalidatedCredentialError,
    MappingCredentialProvider,
    SecretHandle,
    default_env_name,
)

__all__ = [
    "CredentialBindings",
    "CredentialProvider",
    "CredentialScopeManager",
    "EnvCredentialProvider",
    "InvalidatedCredentialError",
    "MappingCredentialProvider",
    "SecretHandle",
    "default_env_name",
]
