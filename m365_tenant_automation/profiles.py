"""
Saved tenant profiles: app registration, certificate and Exchange organization
for each tenant an admin manages, kept in ~/.m365_tenant_automation/profiles.json.

Exchange cmdlets are addressed to an organization, so a profile without one
cannot run provision-room or organize-mailboxes and is rejected on creation.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger("m365_tenant_automation.profiles")

_CONFIG_DIR = Path.home() / ".m365_tenant_automation"
_PROFILES_FILE = _CONFIG_DIR / "profiles.json"


def validate_organization(organization: Optional[str]) -> str:
    """Return the organization domain stripped, or raise ValueError."""
    value = (organization or "").strip()
    if not value or "." not in value or any(c.isspace() for c in value):
        raise ValueError(
            f"Invalid Exchange organization {organization!r}; "
            f"expected a domain such as contoso.onmicrosoft.com"
        )
    return value


@dataclass
class TenantProfile:
    name: str
    tenant_id: str
    client_id: str
    organization: str                  # e.g. contoso.onmicrosoft.com
    cert_path: str = "./base64.txt"
    tenant_display_name: str = ""
    notes: str = ""

    def __post_init__(self):
        if not self.tenant_id or not self.client_id:
            raise ValueError(f"Profile '{self.name}' needs both a tenant ID and a client ID")
        self.organization = validate_organization(self.organization)

    def resolve_cert_path(self) -> str:
        p = Path(self.cert_path).expanduser()
        if not p.is_absolute():
            p = Path.cwd() / p
        return str(p)


@dataclass
class ProfileStore:
    profiles: dict[str, TenantProfile] = field(default_factory=dict)
    default_profile: str = ""

    @classmethod
    def load(cls) -> "ProfileStore":
        if not _PROFILES_FILE.exists():
            return cls()
        try:
            data = json.loads(_PROFILES_FILE.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable profile file {_PROFILES_FILE}: {e}")
            return cls()

        store = cls(default_profile=data.get("default_profile", ""))
        for name, entry in data.get("profiles", {}).items():
            try:
                store.profiles[name] = TenantProfile(name=name, **entry)
            except (TypeError, ValueError) as e:
                # One broken entry should not hide the others
                logger.warning(f"Skipping profile '{name}': {e}")
        if store.default_profile not in store.profiles:
            store.default_profile = next(iter(store.profiles), "")
        return store

    def save(self) -> None:
        _CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        entries = {}
        for name, profile in self.profiles.items():
            entry = asdict(profile)
            del entry["name"]
            entries[name] = entry
        payload = {"default_profile": self.default_profile, "profiles": entries}
        _PROFILES_FILE.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")

    def add(self, profile: TenantProfile, set_default: bool = False) -> None:
        self.profiles[profile.name] = profile
        if set_default or not self.default_profile:
            self.default_profile = profile.name
        self.save()

    def remove(self, name: str) -> bool:
        if self.profiles.pop(name, None) is None:
            return False
        if self.default_profile == name:
            self.default_profile = next(iter(self.profiles), "")
        self.save()
        return True

    def get(self, name: str) -> Optional[TenantProfile]:
        """Case-insensitive lookup."""
        return next(
            (p for key, p in self.profiles.items() if key.lower() == name.lower()),
            None,
        )

    def get_default(self) -> Optional[TenantProfile]:
        return self.profiles.get(self.default_profile)

    def set_default(self, name: str) -> bool:
        if name not in self.profiles:
            return False
        self.default_profile = name
        self.save()
        return True

    def list_profiles(self) -> list[TenantProfile]:
        return sorted(self.profiles.values(), key=lambda p: p.name)


def resolve_profile(profile_name: Optional[str] = None) -> Optional[TenantProfile]:
    """
    The named profile, or the default one when no name is given. Profiles
    only load when their organization is a valid domain, so a returned
    profile can be handed straight to the Exchange commands.
    """
    store = ProfileStore.load()
    if profile_name:
        return store.get(profile_name)
    return store.get_default()
