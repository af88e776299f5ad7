"""Secret generation and identity binding.

This module owns every piece of plaintext secret material the provisioner
handles:
1. Generating passwords and keys that satisfy a per-purpose policy
2. Validating externally supplied values against the same policy
3. Writing material to the secret store as a new, explicit version
4. Revealing material to the one remote call that needs it
5. Granting the runtime service account access to what it reads

SECURITY INVARIANTS:
1. Plaintext never leaves this module except as the argument of a write call
2. SecretMaterial masks itself in repr/str, so it cannot leak into logs
3. Only version identifiers are recorded in the resolved-attributes table
4. Versions are only ever added; an existing version is never overwritten
"""

from __future__ import annotations

import hashlib
import logging
import os
import secrets
import string
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

from .descriptors import DeploymentPlan, ResourceKind, SecretRef
from .provider import (
    Observed,
    PermanentProviderError,
    ProviderRegistry,
    ResourceRequest,
    SecretVersionProvider,
)

if TYPE_CHECKING:
    from .attributes import AttributeTable

logger = logging.getLogger(__name__)

DATABASE_PASSWORD_SYMBOLS = "!#$%&*()-_=+[]{}<>:?"


class PolicyViolation(Exception):
    """Raised when a secret value does not satisfy its policy."""

    pass


class SecretPurpose(str, Enum):
    """What a piece of secret material is used for."""

    DATABASE_PASSWORD = "database_password"
    ENCRYPTION_KEY = "encryption_key"


@dataclass(frozen=True)
class SecretPolicy:
    """Length and character-class requirements for one purpose.

    Attributes:
        length: Generated length, and the minimum accepted for supplied values
        alphabet: Every character must come from this set
        required_classes: (name, characters) pairs that must each appear
    """

    length: int
    alphabet: str
    required_classes: tuple[tuple[str, str], ...] = ()

    def check(self, value: str) -> list[str]:
        """Return a list of policy problems, empty when the value complies."""
        problems: list[str] = []
        if len(value) < self.length:
            problems.append(f"must be at least {self.length} characters")
        invalid = sorted(set(value) - set(self.alphabet))
        if invalid:
            problems.append(f"contains {len(invalid)} disallowed character(s)")
        for name, chars in self.required_classes:
            if not any(c in chars for c in value):
                problems.append(f"must contain at least one {name}")
        return problems


POLICIES: dict[SecretPurpose, SecretPolicy] = {
    SecretPurpose.DATABASE_PASSWORD: SecretPolicy(
        length=16,
        alphabet=string.ascii_letters + string.digits + DATABASE_PASSWORD_SYMBOLS,
        required_classes=(
            ("lowercase letter", string.ascii_lowercase),
            ("uppercase letter", string.ascii_uppercase),
            ("digit", string.digits),
            ("symbol", DATABASE_PASSWORD_SYMBOLS),
        ),
    ),
    SecretPurpose.ENCRYPTION_KEY: SecretPolicy(
        length=32,
        alphabet=string.ascii_letters + string.digits,
    ),
}


@dataclass(frozen=True)
class SecretSpec:
    """Declaration of one piece of secret material in a plan.

    Attributes:
        name: Material name referenced by SecretRef placeholders
        purpose: Selects the generation/validation policy
        length: Overrides the policy length (never below it)
        value_from_env: Take a supplied value from this environment variable
    """

    name: str
    purpose: SecretPurpose
    length: int | None = None
    value_from_env: str | None = None

    @property
    def policy(self) -> SecretPolicy:
        base = POLICIES[self.purpose]
        if self.length is not None and self.length > base.length:
            return replace(base, length=self.length)
        return base


class SecretMaterial:
    """Generated or supplied sensitive value. Never printable."""

    __slots__ = ("name", "_value")

    def __init__(self, name: str, value: str) -> None:
        self.name = name
        self._value = value

    def reveal(self) -> str:
        return self._value

    @property
    def fingerprint(self) -> str:
        """Short digest, safe to log, for correlating versions."""
        return hashlib.sha256(self._value.encode()).hexdigest()[:12]

    def __repr__(self) -> str:
        return f"SecretMaterial(name={self.name!r}, value=***)"

    __str__ = __repr__

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SecretMaterial):
            return NotImplemented
        return secrets.compare_digest(self._value, other._value)

    def __hash__(self) -> int:
        return hash((self.name, self.fingerprint))


@dataclass(frozen=True)
class SecretVersionRef:
    """Explicit pointer to one stored version (never an alias like 'latest')."""

    secret: str
    version_name: str
    version_id: str


_random = secrets.SystemRandom()


def generate_secret(spec: SecretSpec) -> SecretMaterial:
    """Generate a random value satisfying the secret's policy.

    One character is drawn from each required class and the remainder from
    the full alphabet, then the result is shuffled.
    """
    policy = spec.policy
    chars = [_random.choice(chars) for _, chars in policy.required_classes]
    chars.extend(_random.choice(policy.alphabet) for _ in range(policy.length - len(chars)))
    _random.shuffle(chars)
    return SecretMaterial(spec.name, "".join(chars))


def validate_supplied(spec: SecretSpec, value: str) -> SecretMaterial:
    """Wrap an externally supplied value after checking it against policy.

    Raises:
        PolicyViolation: If the value does not comply.
    """
    problems = spec.policy.check(value)
    if problems:
        raise PolicyViolation(
            f"Supplied value for secret '{spec.name}' ({spec.purpose.value}) "
            + "; ".join(problems)
        )
    return SecretMaterial(spec.name, value)


@dataclass
class BindingStats:
    """Counters surfaced in the apply summary."""

    generated: list[str] = field(default_factory=list)
    supplied: list[str] = field(default_factory=list)
    accessed: list[str] = field(default_factory=list)
    versions_stored: list[str] = field(default_factory=list)
    grants_created: list[str] = field(default_factory=list)


class SecretBindingEngine:
    """Generates, stores and reveals secret material; grants access bindings.

    Material is resolved lazily and at most once per run. When a plan is
    re-applied, material is only needed if something consuming it has to
    be created; in that case the value is read back from the explicit
    version already recorded for it instead of generating a new one.
    """

    def __init__(self, plan: DeploymentPlan, registry: ProviderRegistry) -> None:
        self._plan = plan
        self._registry = registry
        self._materials: dict[str, SecretMaterial] = {}
        self._stored: set[str] = set()
        self._lock = threading.Lock()
        self.stats = BindingStats()

    def validate_supplied(self) -> None:
        """Check every externally supplied value before any mutation.

        Raises:
            PolicyViolation: If a supplied value does not comply.
        """
        for spec in self._plan.secrets:
            if spec.value_from_env and os.environ.get(spec.value_from_env):
                validate_supplied(spec, os.environ[spec.value_from_env])

    def generate_secret(self, spec: SecretSpec) -> SecretMaterial:
        return generate_secret(spec)

    def was_stored(self, name: str) -> bool:
        """True if a new version of the material was written during this run."""
        return name in self._stored

    def supplied_changed(self, request: ResourceRequest, observed: Observed) -> bool:
        """True if a supplied value no longer matches the pinned version's payload.

        Generated material is read back from that same version, so only
        supplied material is compared.
        """
        payload = request.config.get("payload")
        if not isinstance(payload, SecretRef):
            return False
        spec = self._plan.secret_spec(payload.material)
        if not (spec.value_from_env and os.environ.get(spec.value_from_env)):
            return False

        material = self.material(payload.material)
        version_name = observed.attributes["version_name"]
        pinned = SecretMaterial(payload.material, self._version_provider().access(version_name))
        if pinned == material:
            return False
        logger.info(
            "Supplied secret material differs from pinned version",
            extra={
                "material": payload.material,
                "version": version_name,
                "fingerprint": material.fingerprint,
                "pinned_fingerprint": pinned.fingerprint,
            },
        )
        return True

    def material(self, name: str, table: AttributeTable | None = None) -> SecretMaterial:
        """Return the material for name: cached, supplied, stored or freshly generated."""
        with self._lock:
            cached = self._materials.get(name)
            if cached is not None:
                return cached

            spec = self._plan.secret_spec(name)
            material: SecretMaterial | None = None

            if spec.value_from_env and os.environ.get(spec.value_from_env):
                material = validate_supplied(spec, os.environ[spec.value_from_env])
                self.stats.supplied.append(name)
            elif table is not None:
                material = self._access_stored(name, table)

            if material is None:
                material = self.generate_secret(spec)
                self.stats.generated.append(name)
                logger.info(
                    "Generated secret material",
                    extra={
                        "material": name,
                        "purpose": spec.purpose.value,
                        "fingerprint": material.fingerprint,
                    },
                )

            self._materials[name] = material
            return material

    def _access_stored(self, name: str, table: AttributeTable) -> SecretMaterial | None:
        for descriptor in self._plan.descriptors:
            if descriptor.kind != ResourceKind.SECRET_VERSION:
                continue
            payload = descriptor.desired_config.get("payload")
            if not isinstance(payload, SecretRef) or payload.material != name:
                continue
            if descriptor.id not in table:
                continue
            version_name = table.get(descriptor.id, "version_name")
            value = self._version_provider().access(version_name)
            self.stats.accessed.append(name)
            logger.info(
                "Read secret material from pinned version",
                extra={"material": name, "version": version_name},
            )
            return SecretMaterial(name, value)
        return None

    def _version_provider(self) -> SecretVersionProvider:
        provider = self._registry.get(ResourceKind.SECRET_VERSION)
        if not isinstance(provider, SecretVersionProvider):
            raise PermanentProviderError("SecretVersion provider cannot access payloads")
        return provider

    def reveal(self, config: Any, table: AttributeTable | None = None) -> Any:
        """Return config with every SecretRef replaced by plaintext.

        The result must only be passed straight to a provider write call.
        """
        if isinstance(config, SecretRef):
            return self.material(config.material, table).reveal()
        if isinstance(config, Mapping):
            return {k: self.reveal(v, table) for k, v in config.items()}
        if isinstance(config, list):
            return [self.reveal(v, table) for v in config]
        if isinstance(config, tuple):
            return tuple(self.reveal(v, table) for v in config)
        return config

    def store_secret(
        self,
        request: ResourceRequest,
        table: AttributeTable | None = None,
    ) -> tuple[SecretVersionRef, Observed]:
        """Write the request's material as a new secret version.

        Never overwrites: every call adds a version, and the returned
        reference names it explicitly.
        """
        payload = request.config.get("payload")
        if not isinstance(payload, SecretRef):
            raise PermanentProviderError(
                f"'{request.id}' payload must reference secret material"
            )
        material = self.material(payload.material, table)

        provider = self._version_provider()
        write = ResourceRequest(
            id=request.id,
            kind=request.kind,
            config={**request.config, "payload": material.reveal()},
        )
        observed = provider.create(write)

        ref = SecretVersionRef(
            secret=str(request.config["secret"]),
            version_name=observed.attributes["version_name"],
            version_id=str(observed.attributes["version_id"]),
        )
        self.stats.versions_stored.append(ref.version_name)
        self._stored.add(payload.material)
        logger.info(
            "Stored secret version",
            extra={
                "descriptor": request.id,
                "version": ref.version_name,
                "fingerprint": material.fingerprint,
            },
        )
        return ref, observed

    def bind_access(self, request: ResourceRequest) -> tuple[Observed, bool]:
        """Grant request's member its role on the target; no-op if already granted.

        Returns:
            Tuple of (observed binding, created).
        """
        provider = self._registry.get(request.kind)
        observed = provider.fetch(request)
        if observed is not None:
            logger.debug(
                "Access binding already granted",
                extra={"descriptor": request.id, "role": request.config.get("role")},
            )
            return observed, False

        observed = provider.create(request)
        self.stats.grants_created.append(request.id)
        logger.info(
            "Granted access binding",
            extra={
                "descriptor": request.id,
                "member": request.config.get("member"),
                "role": request.config.get("role"),
            },
        )
        return observed, True
