"""Credential precedence: explicit per-caller credentials > system defaults.

``resolve_credentials`` returns a tagged result so the rule can be
audited and tested on its own; the registry only acts on the tag.
"""

from __future__ import annotations

import enum
import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass, field

from src.engines.definitions import EngineDefinition


class CredentialSource(enum.StrEnum):
    EXPLICIT = "explicit"
    DEFAULT = "default"
    MISSING = "missing"


@dataclass(frozen=True, slots=True)
class CredentialResolution:
    source: CredentialSource
    credentials: dict[str, str] = field(default_factory=dict)

    @property
    def fingerprint(self) -> str:
        """Stable identifier of the credential set (never the values themselves)."""
        if not self.credentials:
            return "none"
        canonical = json.dumps(self.credentials, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()[:16]


def _non_empty(values: Mapping[str, str] | None) -> dict[str, str]:
    return {str(k): str(v) for k, v in (values or {}).items() if v}


def resolve_credentials(
    definition: EngineDefinition,
    explicit: Mapping[str, str] | None,
    defaults: Mapping[str, str] | None,
) -> CredentialResolution:
    """Pick the credential set an adapter is built with.

    EXPLICIT: any non-empty explicit value was supplied.
    DEFAULT : system defaults contain every required field (and at least one field).
    MISSING : neither; the registry rejects this for engines requiring credentials.
    """
    provided = _non_empty(explicit)
    if provided:
        return CredentialResolution(CredentialSource.EXPLICIT, provided)

    available = _non_empty(defaults)
    relevant = {name: available[name] for name in definition.credential_names if name in available}
    required = [f.name for f in definition.credential_fields if f.required]
    if relevant and all(name in relevant for name in required):
        return CredentialResolution(CredentialSource.DEFAULT, relevant)

    return CredentialResolution(CredentialSource.MISSING)
