"""
Run profiles and fan-out channels for reconciliation.

Provides configuration dataclasses for what a reconciliation run does:
which source it is authoritative for, which records it covers, and which
compliance flags are pushed to which downstream lists.

Configuration file format (sync_config.json):

    {
        "version": "1.0",
        "channels": {
            "dnc_seller": {
                "flag": "seller_outreach_suppressed",
                "list_id_env": "CRM_RECONCILE_LIST_DNC_SELLER"
            },
            "cold_buyer": {"flag": "buyer_cold_lead", "list_id": "cold_buyer"}
        },
        "profiles": [
            {
                "name": "default",
                "source": "external_crm",
                "channels": ["dnc_seller", "cold_buyer"]
            },
            {
                "name": "leads",
                "source": "external_crm",
                "filter": {"lifecycle_stage": ["lead", "prospect"]},
                "channels": []
            }
        ]
    }

Notes:
    - A missing file means the built-in channels and a single "default"
      profile covering every channel
    - A channel whose list id cannot be resolved is disabled, not an error
    - A profile with a filter never soft-deletes: records outside the
      filter are simply not fetched by it
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from crm_reconcile.sync.contact import CanonicalContact, ContactSource
from crm_reconcile.sync.normalizer import COMPLIANCE_FLAGS
from crm_reconcile.utils import resolve_config_dir

logger = logging.getLogger(__name__)

# Current configuration schema version
CONFIG_VERSION = "1.0"

# Default sync config file name
DEFAULT_SYNC_CONFIG_FILE = "sync_config.json"

DEFAULT_PROFILE_NAME = "default"

# Built-in channels: one list per compliance flag
DEFAULT_CHANNEL_FLAGS = {
    "dnc_seller": "seller_outreach_suppressed",
    "dnc_buyer": "buyer_outreach_suppressed",
    "dnc_cre": "cre_outreach_suppressed",
    "dnc_exf": "exf_outreach_suppressed",
    "cold_seller": "seller_cold_lead",
    "cold_buyer": "buyer_cold_lead",
    "cold_cre": "cre_cold_lead",
    "cold_exf": "exf_cold_lead",
}

# Fields a profile filter can test besides raw attributes
FILTER_LIFECYCLE = "lifecycle_stage"
FILTER_CAMPAIGN_TYPE = "campaign_type"


class SyncConfigError(Exception):
    """Raised when sync configuration loading or validation fails."""

    pass


def _default_list_env(channel_name: str) -> str:
    return f"CRM_RECONCILE_LIST_{channel_name.upper()}"


@dataclass
class ChannelConfig:
    """
    One downstream list fed by one compliance flag.

    Attributes:
        name: Channel name used in profiles, reports and outcomes
        flag: Canonical compliance flag that puts a contact on the list
        list_id: Downstream list identifier, if configured inline
        list_id_env: Environment variable holding the list identifier
        description: Free text for humans
    """

    name: str
    flag: str
    list_id: str | None = None
    list_id_env: str | None = None
    description: str = ""

    def resolve_list_id(self) -> str | None:
        """The inline list id, else the value of list_id_env, else None."""
        if self.list_id:
            return self.list_id
        if self.list_id_env:
            value = os.environ.get(self.list_id_env, "").strip()
            return value or None
        return None

    @property
    def enabled(self) -> bool:
        return self.resolve_list_id() is not None

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any] | None) -> ChannelConfig:
        """
        Create a ChannelConfig from its JSON object.

        Raises:
            SyncConfigError: If the channel is malformed
        """
        if not isinstance(data, dict):
            raise SyncConfigError(
                f"channel '{name}' must be a dictionary, got {type(data).__name__}"
            )

        flag = data.get("flag")
        if flag not in COMPLIANCE_FLAGS:
            raise SyncConfigError(
                f"channel '{name}' has unknown flag {flag!r}. "
                f"Must be one of: {', '.join(COMPLIANCE_FLAGS)}"
            )

        for key in ("list_id", "list_id_env", "description"):
            value = data.get(key)
            if value is not None and not isinstance(value, str):
                raise SyncConfigError(
                    f"channel '{name}'.{key} must be a string, "
                    f"got {type(value).__name__}"
                )

        list_id_env = data.get("list_id_env")
        if not data.get("list_id") and not list_id_env:
            list_id_env = _default_list_env(name)

        return cls(
            name=name,
            flag=flag,
            list_id=data.get("list_id") or None,
            list_id_env=list_id_env,
            description=data.get("description", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"flag": self.flag}
        if self.list_id:
            result["list_id"] = self.list_id
        if self.list_id_env:
            result["list_id_env"] = self.list_id_env
        if self.description:
            result["description"] = self.description
        return result


def default_channels() -> dict[str, ChannelConfig]:
    """Built-in channels, list ids read from CRM_RECONCILE_LIST_<NAME>."""
    return {
        name: ChannelConfig(name=name, flag=flag, list_id_env=_default_list_env(name))
        for name, flag in DEFAULT_CHANNEL_FLAGS.items()
    }


@dataclass
class ProfileConfig:
    """
    Parameters of one reconciliation run.

    Attributes:
        name: Profile name, recorded with each run in the history
        source: Source namespace the run is authoritative for
        filter: Field name -> accepted values; empty means every record
        channels: Channel names to fan out; None means every channel
        soft_delete: Whether absent records may be soft-deleted
        properties: Extra source properties to request into attributes
    """

    name: str = DEFAULT_PROFILE_NAME
    source: ContactSource = ContactSource.EXTERNAL_CRM
    filter: dict[str, list[str]] = field(default_factory=dict)
    channels: list[str] | None = None
    soft_delete: bool = True
    properties: list[str] = field(default_factory=list)

    def has_filter(self) -> bool:
        return bool(self.filter)

    @property
    def deletes_allowed(self) -> bool:
        """Filtered profiles see a subset of the source and never delete."""
        return self.soft_delete and not self.has_filter()

    def matches(self, contact: CanonicalContact) -> bool:
        """
        Check whether a contact is covered by this profile's filter.

        Every filter field must match one of its accepted values
        (case-insensitive). Fields are looked up as the lifecycle stage,
        a campaign type, a compliance flag, then a raw attribute.
        """
        for field_name, accepted in self.filter.items():
            wanted = {str(v).strip().lower() for v in accepted}
            if field_name == FILTER_LIFECYCLE:
                values = [contact.lifecycle_stage]
            elif field_name == FILTER_CAMPAIGN_TYPE:
                values = list(contact.campaign_types or [])
            elif field_name in COMPLIANCE_FLAGS:
                values = [contact.compliance.flags.get(field_name)]
            else:
                values = [contact.attributes.get(field_name)]
            if not any(
                v is not None and str(v).strip().lower() in wanted for v in values
            ):
                return False
        return True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ProfileConfig:
        """
        Create a ProfileConfig from its JSON object.

        Raises:
            SyncConfigError: If the profile is malformed
        """
        if not isinstance(data, dict):
            raise SyncConfigError(
                f"profile must be a dictionary, got {type(data).__name__}"
            )

        name = data.get("name", DEFAULT_PROFILE_NAME)
        if not isinstance(name, str) or not name.strip():
            raise SyncConfigError("profile name must be a non-empty string")

        try:
            source = ContactSource.parse(data.get("source", "external_crm"))
        except ValueError as e:
            raise SyncConfigError(f"profile '{name}': {e}") from e

        raw_filter = data.get("filter") or {}
        if not isinstance(raw_filter, dict):
            raise SyncConfigError(f"profile '{name}'.filter must be a dictionary")
        profile_filter: dict[str, list[str]] = {}
        for key, value in raw_filter.items():
            values = value if isinstance(value, list) else [value]
            profile_filter[str(key)] = [str(v) for v in values]

        channels = data.get("channels")
        if channels is not None and (
            not isinstance(channels, list)
            or not all(isinstance(c, str) for c in channels)
        ):
            raise SyncConfigError(
                f"profile '{name}'.channels must be a list of channel names"
            )

        soft_delete = data.get("soft_delete", True)
        if not isinstance(soft_delete, bool):
            raise SyncConfigError(f"profile '{name}'.soft_delete must be a boolean")

        properties = data.get("properties") or []
        if not isinstance(properties, list):
            raise SyncConfigError(f"profile '{name}'.properties must be a list")

        return cls(
            name=name.strip(),
            source=source,
            filter=profile_filter,
            channels=list(channels) if channels is not None else None,
            soft_delete=soft_delete,
            properties=[str(p) for p in properties],
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"name": self.name, "source": self.source.value}
        if self.filter:
            result["filter"] = self.filter
        if self.channels is not None:
            result["channels"] = self.channels
        if not self.soft_delete:
            result["soft_delete"] = self.soft_delete
        if self.properties:
            result["properties"] = self.properties
        return result


@dataclass
class SyncConfig:
    """
    Channels and run profiles.

    Attributes:
        version: Configuration schema version (currently "1.0")
        channels: Channel name -> ChannelConfig
        profiles: Run profiles, the first one is the default

    Usage:
        config = SyncConfig.load_from_file("~/.crm-reconcile/sync_config.json")
        profile = config.get_profile("leads")
        for channel in config.channels_for(profile):
            print(channel.name, channel.resolve_list_id())
    """

    version: str = CONFIG_VERSION
    channels: dict[str, ChannelConfig] = field(default_factory=default_channels)
    profiles: list[ProfileConfig] = field(
        default_factory=lambda: [ProfileConfig()]
    )

    def get_profile(self, name: str | None = None) -> ProfileConfig:
        """
        Look up a profile by name (the first profile when name is None).

        Raises:
            SyncConfigError: If no profile has that name
        """
        if name is None:
            return self.profiles[0]
        for profile in self.profiles:
            if profile.name == name:
                return profile
        known = ", ".join(p.name for p in self.profiles)
        raise SyncConfigError(f"Unknown profile '{name}'. Known profiles: {known}")

    def channels_for(self, profile: ProfileConfig) -> list[ChannelConfig]:
        """Enabled channels a profile fans out to."""
        names = profile.channels if profile.channels is not None else self.channels
        selected = []
        for name in names:
            channel = self.channels[name]
            if channel.enabled:
                selected.append(channel)
            else:
                logger.debug(f"Channel '{name}' has no list id configured, skipping")
        return selected

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncConfig:
        """
        Create SyncConfig from a dictionary.

        Raises:
            SyncConfigError: If configuration structure is invalid
        """
        if not isinstance(data, dict):
            raise SyncConfigError(
                f"Configuration must be a dictionary, got {type(data).__name__}"
            )

        version = data.get("version", CONFIG_VERSION)
        if not isinstance(version, str):
            raise SyncConfigError(
                f"version must be a string, got {type(version).__name__}"
            )

        raw_channels = data.get("channels")
        if raw_channels is None:
            channels = default_channels()
        elif isinstance(raw_channels, dict):
            channels = {
                name: ChannelConfig.from_dict(name, value)
                for name, value in raw_channels.items()
            }
        else:
            raise SyncConfigError("channels must be a dictionary")

        raw_profiles = data.get("profiles")
        if raw_profiles is None:
            profiles = [ProfileConfig()]
        elif isinstance(raw_profiles, list) and raw_profiles:
            profiles = [ProfileConfig.from_dict(p) for p in raw_profiles]
        else:
            raise SyncConfigError("profiles must be a non-empty list")

        names = [p.name for p in profiles]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise SyncConfigError(f"Duplicate profile names: {', '.join(duplicates)}")

        for profile in profiles:
            unknown = [c for c in profile.channels or [] if c not in channels]
            if unknown:
                raise SyncConfigError(
                    f"profile '{profile.name}' references unknown channels: "
                    f"{', '.join(unknown)}"
                )

        return cls(version=version, channels=channels, profiles=profiles)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "channels": {name: c.to_dict() for name, c in self.channels.items()},
            "profiles": [p.to_dict() for p in self.profiles],
        }

    @classmethod
    def load_from_file(cls, path: Path | str) -> SyncConfig:
        """
        Load sync configuration from a JSON file.

        Returns the default configuration if the file doesn't exist.

        Raises:
            SyncConfigError: If file exists but cannot be parsed or is invalid
        """
        path = Path(path).expanduser().resolve()

        if not path.exists():
            logger.debug(f"Sync config file not found: {path}, using defaults")
            return cls()

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)

            logger.debug(f"Loaded sync config from {path}")
            return cls.from_dict(data)

        except json.JSONDecodeError as e:
            raise SyncConfigError(
                f"Failed to parse sync config JSON at {path}: {e}"
            ) from e
        except OSError as e:
            raise SyncConfigError(f"Failed to read sync config file: {e}") from e

    def save_to_file(self, path: Path | str) -> None:
        """
        Save sync configuration to a JSON file with owner-only permissions.

        Raises:
            SyncConfigError: If file cannot be written
        """
        path = Path(path).expanduser().resolve()

        try:
            path.parent.mkdir(parents=True, mode=0o700, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2)
                f.write("\n")
            path.chmod(0o600)
            logger.info(f"Saved sync config to {path}")
        except OSError as e:
            raise SyncConfigError(f"Failed to write sync config file: {e}") from e

    def __repr__(self) -> str:
        return (
            f"SyncConfig(version={self.version!r}, "
            f"channels={sorted(self.channels)!r}, "
            f"profiles={[p.name for p in self.profiles]!r})"
        )


def load_config(config_dir: Path | str | None = None) -> SyncConfig:
    """
    Load sync configuration from a config directory.

    Resolution order for config directory:
    1. Explicit config_dir parameter (if provided)
    2. CRM_RECONCILE_CONFIG_DIR environment variable (if set)
    3. Default: ~/.crm-reconcile

    Returns:
        SyncConfig instance (defaults if the file doesn't exist)

    Raises:
        SyncConfigError: If config file exists but is invalid
    """
    resolved_dir = resolve_config_dir(config_dir)
    config_file_path = resolved_dir / DEFAULT_SYNC_CONFIG_FILE

    logger.debug(f"Loading sync config from directory: {resolved_dir}")

    return SyncConfig.load_from_file(config_file_path)
