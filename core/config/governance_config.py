"""
Governance configuration.

Loads the founder roster, quorum thresholds and storage settings from an
explicit YAML file:
- The configuration file must be explicitly provided
- A missing file or missing 'governance' section is rejected
- At least one founder must be configured
- No implicit roster: an empty or malformed roster fails at load time
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


logger = logging.getLogger(__name__)


DEFAULT_ADMIN_CAP = 3
DEFAULT_USER_QUORUM = 3
DEFAULT_REQUIRED_VOTES = 3
DEFAULT_INVITATION_EXPIRY_DAYS = 7
DEFAULT_MAX_TRANSACTION_RETRIES = 5


class GovernanceConfig:
    """
    Validated governance settings.

    Invariants:
    - Founder ids are unique
    - Every configured admin is a known founder
    - Configured admins never exceed the admin cap
    - Thresholds are positive integers
    """

    def __init__(self, config_file: Optional[Path] = None):
        """
        Load governance configuration.

        Args:
            config_file: Path to governance YAML file (required)
        """
        if config_file is None:
            raise ValueError("Governance requires explicit configuration file")

        if not config_file.exists():
            raise ValueError(f"Governance config file not found: {config_file}")

        self.config_file = config_file
        self._load_config()

    def _load_config(self) -> None:
        """Load governance configuration from YAML file."""
        try:
            with open(self.config_file, "r") as f:
                config = yaml.safe_load(f)

            if not config or "governance" not in config:
                raise ValueError("Config must contain 'governance' section")

            section = config["governance"] or {}

            self.founders = self._parse_founders(section.get("founders"))
            self.admins: List[str] = list(section.get("admins") or [])

            self.admin_cap = self._positive_int(section, "admin_cap", DEFAULT_ADMIN_CAP)
            self.user_quorum = self._positive_int(section, "user_quorum", DEFAULT_USER_QUORUM)
            self.default_required_votes = self._positive_int(
                section, "default_required_votes", DEFAULT_REQUIRED_VOTES
            )
            self.invitation_expiry_days = self._positive_int(
                section, "invitation_expiry_days", DEFAULT_INVITATION_EXPIRY_DAYS
            )
            self.max_transaction_retries = self._positive_int(
                section, "max_transaction_retries", DEFAULT_MAX_TRANSACTION_RETRIES
            )
            self.require_signed_votes = bool(section.get("require_signed_votes", False))

            redis_section = section.get("redis") or {}
            self.key_prefix = redis_section.get("key_prefix", "aether")
            self.stream_prefix = redis_section.get("stream_prefix", "aether")
            self.max_stream_length = int(redis_section.get("max_stream_length", 10000))

            founder_ids = {f["id"] for f in self.founders}
            unknown = [a for a in self.admins if a not in founder_ids]
            if unknown:
                raise ValueError(f"Admins must be configured founders, unknown: {unknown}")
            if len(set(self.admins)) > self.admin_cap:
                raise ValueError(
                    f"{len(set(self.admins))} admins configured, admin_cap is {self.admin_cap}"
                )

            if self.require_signed_votes:
                unsigned = [f["id"] for f in self.founders if not f.get("signing_key")]
                if unsigned:
                    raise ValueError(
                        f"require_signed_votes is set but founders lack signing_key: {unsigned}"
                    )

            logger.info(
                f"Governance config loaded: "
                f"founders={len(self.founders)}, admins={len(self.admins)}, "
                f"admin_cap={self.admin_cap}, user_quorum={self.user_quorum}, "
                f"signed_votes={self.require_signed_votes}"
            )

        except Exception as e:
            logger.error(f"Failed to load governance config: {e}")
            raise

    @staticmethod
    def _parse_founders(raw: Any) -> List[Dict[str, str]]:
        if not raw:
            raise ValueError("At least one founder must be configured")

        founders = []
        seen = set()
        for entry in raw:
            if not isinstance(entry, dict) or not entry.get("id"):
                raise ValueError(f"Founder entry must have an 'id': {entry!r}")
            if entry["id"] in seen:
                raise ValueError(f"Duplicate founder id: {entry['id']}")
            if not entry.get("email"):
                raise ValueError(f"Founder {entry['id']} must have an 'email'")
            seen.add(entry["id"])
            founders.append({
                "id": str(entry["id"]),
                "display_name": str(entry.get("display_name") or entry["id"]),
                "email": str(entry["email"]),
                "signing_key": entry.get("signing_key"),
            })
        return founders

    @staticmethod
    def _positive_int(section: Dict[str, Any], key: str, default: int) -> int:
        value = section.get(key, default)
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ValueError(f"'{key}' must be a positive integer, got {value!r}")
        return value

    def signing_keys(self) -> Dict[str, str]:
        """Founder id -> HMAC signing key, for founders that have one."""
        return {f["id"]: f["signing_key"] for f in self.founders if f.get("signing_key")}
