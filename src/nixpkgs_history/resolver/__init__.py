"""Resolver adapters: turn one commit into the package records available at it."""

from nixpkgs_history.resolver.nix_env import (
    NixEnvResolver,
    Resolver,
    ResolverCancelledError,
    ResolverError,
    ResolverInvocationError,
    ResolverOutputError,
    archive_url,
    parse_package_listing,
)

__all__ = [
    "NixEnvResolver",
    "Resolver",
    "ResolverCancelledError",
    "ResolverError",
    "ResolverInvocationError",
    "ResolverOutputError",
    "archive_url",
    "parse_package_listing",
]
