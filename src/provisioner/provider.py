"""Provider capability interface.

Every resource kind is reconciled through a provider implementing
fetch / create / update / delete against the remote API. The reconciler and
cleanup engine only ever talk to providers through this interface, which
lets tests substitute an in-memory cloud.

Providers raise TransientProviderError for conditions worth retrying
(rate limiting, eventual consistency right after a dependency was created)
and PermanentProviderError for everything else.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar

from .config import ConfigError
from .descriptors import ResourceKind
from .diff_normalizer import DiffNormalizer

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Base class for errors raised by providers."""

    pass


class TransientProviderError(ProviderError):
    """Retryable failure: rate limiting, backend unavailable, propagation lag."""

    pass


class PermanentProviderError(ProviderError):
    """Non-retryable failure: invalid configuration, permission denied."""

    pass


class ProtectedResourceError(PermanentProviderError):
    """Raised when a change would replace or destroy a protected resource."""

    pass


@dataclass(frozen=True)
class ResourceRequest:
    """What a provider is asked to act on: one descriptor with resolved config."""

    id: str
    kind: ResourceKind
    config: Mapping[str, Any]


@dataclass
class Observed:
    """Current remote state of a resource.

    Attributes:
        raw: Resource as returned by the remote API.
        attributes: Values dependents may reference (recorded once Ready).
    """

    raw: dict[str, Any] = field(default_factory=dict)
    attributes: dict[str, Any] = field(default_factory=dict)


class ResourceProvider(ABC):
    """Create-or-update capability for one resource kind."""

    kind: ClassVar[ResourceKind]

    # Changing these on a protected resource requires an explicit override
    destructive_fields: ClassVar[frozenset[str]] = frozenset()

    _normalizer = DiffNormalizer()

    @abstractmethod
    def fetch(self, request: ResourceRequest) -> Observed | None:
        """Return the current remote state, or None when absent."""

    @abstractmethod
    def create(self, request: ResourceRequest) -> Observed:
        """Create the remote resource and return its state."""

    @abstractmethod
    def update(self, request: ResourceRequest, observed: Observed) -> Observed:
        """Update the remote resource in place and return its state."""

    @abstractmethod
    def delete(self, request: ResourceRequest) -> bool:
        """Delete the remote resource.

        Returns:
            True if deleted, False if it was already absent.
        """

    def render(self, config: Mapping[str, Any]) -> dict[str, Any]:
        """Render config as the body compared against observed.raw.

        Providers whose API shape differs from the descriptor config override
        this; the default compares config keys directly.
        """
        return dict(config)

    def diff(self, config: Mapping[str, Any], observed: Observed) -> list[str]:
        """Return the paths where the remote resource diverges from config."""
        return self._normalizer.diff(self.kind, self.render(config), observed.raw)

    def destructive_changes(self, changed_paths: Iterable[str]) -> list[str]:
        return [
            path
            for path in changed_paths
            if path.split(".")[0] in self.destructive_fields
        ]


class SecretVersionProvider(ResourceProvider):
    """Secret store versions: append-only, readable only by the binding engine."""

    kind = ResourceKind.SECRET_VERSION

    @abstractmethod
    def access(self, version_name: str) -> str:
        """Return the plaintext payload of one explicit version."""

    def update(self, request: ResourceRequest, observed: Observed) -> Observed:
        raise PermanentProviderError(
            f"Secret versions are immutable; '{request.id}' cannot be updated in place"
        )


class ProviderRegistry:
    """Maps each resource kind to the provider that reconciles it."""

    def __init__(self, providers: Iterable[ResourceProvider] = ()) -> None:
        self._providers: dict[ResourceKind, ResourceProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: ResourceProvider, kind: ResourceKind | None = None) -> None:
        self._providers[kind or provider.kind] = provider

    def __contains__(self, kind: object) -> bool:
        return kind in self._providers

    def get(self, kind: ResourceKind) -> ResourceProvider:
        try:
            return self._providers[kind]
        except KeyError as e:
            raise ConfigError(f"No provider registered for kind {kind.value}") from e

    def require(self, kinds: Iterable[ResourceKind]) -> None:
        """Fail pre-flight if any kind has no provider.

        Raises:
            ConfigError: Naming every missing kind.
        """
        missing = sorted({k.value for k in kinds if k not in self._providers})
        if missing:
            raise ConfigError(f"No provider registered for kinds: {missing}")
