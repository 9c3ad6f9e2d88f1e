"""
Principal Registry - the founder roster and admin role holders.

Founders are the fixed set of trusted principals whose approvals count
toward quorum. The registry also tracks which principals hold the admin
role and enforces the ceiling on concurrent admins.

Every quorum check elsewhere reads the roster through ``snapshot(pipe)``
while the roster keys are WATCHed, so a removal committed mid-operation
aborts and retries that operation instead of letting one check see the
old roster and another the new one.
"""

import json
import logging
import re
import uuid
from typing import Any, Dict, List, Optional, Set

import redis

from bus.python.aether_bus import ContractValidator
from core.audit import AuditEmitter
from core.clock import Clock, utc_now
from core.errors import AdminCapReached, Conflict, GovernanceError, InvalidArgument, NotFound
from core.transactions import DEFAULT_MAX_RETRIES, decode, run_transaction


logger = logging.getLogger(__name__)


DEFAULT_ADMIN_CAP = 3
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class RosterSnapshot:
    """Founders and admins as read in one consistent view."""

    def __init__(self, founders: Dict[str, Dict[str, Any]], admins: Set[str]):
        self.founders = founders
        self.admins = admins

    @property
    def founder_ids(self) -> Set[str]:
        return set(self.founders)

    @property
    def founder_count(self) -> int:
        return len(self.founders)

    @property
    def admin_count(self) -> int:
        return len(self.admins)

    def is_founder(self, principal_id: str) -> bool:
        return principal_id in self.founders


class PrincipalRegistry:
    """
    Redis-backed founder roster and admin role set.

    Invariants:
    - Principals are immutable once created, except by explicit removal
    - Admin role holders never exceed admin_cap
    - Roster reads used for quorum come from a single snapshot
    - Every roster mutation is audited
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        audit: AuditEmitter,
        validator: Optional[ContractValidator] = None,
        admin_cap: int = DEFAULT_ADMIN_CAP,
        key_prefix: str = "aether",
        max_retries: int = DEFAULT_MAX_RETRIES,
        source_name: str = "aether-registry",
        clock: Optional[Clock] = None,
    ):
        """
        Initialize principal registry.

        Args:
            redis_client: Redis client instance
            audit: Audit emitter for roster changes
            validator: Contract validator for principal records
            admin_cap: Maximum concurrent admin role holders
            key_prefix: Prefix for Redis keys
            max_retries: Optimistic transaction attempts
            source_name: Source identifier for audit records
            clock: Timestamp source (UTC)
        """
        self.redis = redis_client
        self.audit = audit
        self.validator = validator
        self.admin_cap = admin_cap
        self.key_prefix = key_prefix
        self.max_retries = max_retries
        self.source_name = source_name
        self._clock = clock or utc_now

    @property
    def founders_key(self) -> str:
        return f"{self.key_prefix}:founders"

    @property
    def admins_key(self) -> str:
        return f"{self.key_prefix}:admins"

    @property
    def roster_keys(self) -> List[str]:
        """Keys to WATCH whenever a decision depends on the roster."""
        return [self.founders_key, self.admins_key]

    def _create_principal(self, founder_id: str, display_name: str, email: str) -> Dict[str, Any]:
        if not founder_id or not str(founder_id).strip():
            raise InvalidArgument("Founder id is required", rule="founder_id_required")
        if not display_name or not str(display_name).strip():
            raise InvalidArgument(
                "Founder name is required", entity_id=founder_id, rule="display_name_required"
            )
        if not email or not EMAIL_PATTERN.match(email):
            raise InvalidArgument(
                f"Invalid email format: {email!r}", entity_id=founder_id, rule="email_format"
            )

        principal = {
            "version": "1.0",
            "id": founder_id,
            "display_name": display_name.strip(),
            "email": email,
            "created_at": self._clock().isoformat(),
        }
        if self.validator is not None:
            self.validator.validate(principal, "principal.schema")
        return principal

    def snapshot(self, pipe: Optional[redis.client.Pipeline] = None) -> RosterSnapshot:
        """
        Read founders and admins together.

        Args:
            pipe: Watching pipeline (immediate mode) when called inside a
                transaction; the roster keys should be among its watches.
        """
        reader = pipe if pipe is not None else self.redis
        raw_founders = reader.hgetall(self.founders_key)
        raw_admins = reader.smembers(self.admins_key)

        founders = {decode(k): json.loads(v) for k, v in raw_founders.items()}
        admins = {decode(a) for a in raw_admins}
        return RosterSnapshot(founders, admins)

    def seed(self, founders: List[Dict[str, Any]], admins: Optional[List[str]] = None) -> bool:
        """
        Populate the roster from configuration if it is empty.

        Args:
            founders: Founder entries ({id, display_name, email})
            admins: Founder ids holding the admin role

        Returns:
            True if the roster was seeded, False if one already existed
        """
        admins = list(dict.fromkeys(admins or []))
        if len(admins) > self.admin_cap:
            raise AdminCapReached(
                f"{len(admins)} configured admins exceed cap {self.admin_cap}",
                rule="admin_cap",
                admin_cap=self.admin_cap,
            )

        principals = [
            self._create_principal(f["id"], f.get("display_name") or f["id"], f["email"])
            for f in founders
        ]

        def body(pipe):
            existing = pipe.hlen(self.founders_key)
            pipe.multi()
            if existing > 0:
                return False
            for principal in principals:
                pipe.hset(self.founders_key, principal["id"], json.dumps(principal))
                self.audit.emit(
                    "founder_added", "principal", principal["id"], "config",
                    details={"email": principal["email"], "seeded": True},
                    source=self.source_name, pipe=pipe,
                )
            for admin_id in admins:
                pipe.sadd(self.admins_key, admin_id)
                self.audit.emit(
                    "admin_granted", "principal", admin_id, "config",
                    source=self.source_name, pipe=pipe,
                )
            return True

        seeded = run_transaction(
            self.redis, self.roster_keys, body, self.max_retries, entity_id=self.founders_key
        )
        if seeded:
            logger.info(f"Roster seeded: {len(principals)} founders, {len(admins)} admins")
        else:
            logger.info("Roster already present, configuration seed skipped")
        return seeded

    def list_founders(self) -> List[Dict[str, Any]]:
        founders = self.snapshot().founders.values()
        return sorted(founders, key=lambda f: (f["created_at"], f["id"]))

    def get_founder(self, founder_id: str) -> Dict[str, Any]:
        raw = self.redis.hget(self.founders_key, founder_id)
        if raw is None:
            raise NotFound(f"Founder not found: {founder_id}", entity_id=founder_id, rule="founder_exists")
        return json.loads(raw)

    def is_founder(self, founder_id: str) -> bool:
        return bool(self.redis.hexists(self.founders_key, founder_id))

    def founder_count(self) -> int:
        return self.redis.hlen(self.founders_key)

    def admin_count(self) -> int:
        return self.redis.scard(self.admins_key)

    def list_admins(self) -> List[str]:
        return sorted(decode(a) for a in self.redis.smembers(self.admins_key))

    def is_admin(self, principal_id: str) -> bool:
        return bool(self.redis.sismember(self.admins_key, principal_id))

    def bootstrap_status(self) -> Dict[str, Any]:
        count = self.founder_count()
        return {"founders_exist": count > 0, "founders_count": count}

    def add_founder(
        self, founder_id: str, display_name: str, email: str, actor: str = "system"
    ) -> Dict[str, Any]:
        """
        Add a founder to the roster.

        Raises:
            InvalidArgument: If id, name or email is malformed
            Conflict: If the founder id already exists
        """
        try:
            principal = self._create_principal(founder_id, display_name, email)

            def body(pipe):
                if pipe.hexists(self.founders_key, founder_id):
                    raise Conflict(
                        f"Founder already exists: {founder_id}",
                        entity_id=founder_id, rule="founder_unique",
                    )
                pipe.multi()
                pipe.hset(self.founders_key, founder_id, json.dumps(principal))
                self.audit.emit(
                    "founder_added", "principal", founder_id, actor,
                    details={"email": email}, source=self.source_name, pipe=pipe,
                )
                return principal

            principal = run_transaction(
                self.redis, self.roster_keys, body, self.max_retries, entity_id=founder_id
            )
        except GovernanceError as e:
            self.audit.refused("registry_refused", "principal", founder_id or "unknown", actor, e,
                               source=self.source_name)
            raise

        logger.info(f"Founder added: {founder_id} by {actor}")
        return principal

    def bootstrap_founder(self, display_name: str, email: str) -> Dict[str, Any]:
        """
        Create the first founder of an empty system.

        The founder is granted the admin role. Only allowed while no founder
        exists.

        Raises:
            Conflict: If founders already exist
            InvalidArgument: If name or email is malformed
        """
        founder_id = f"founder_{uuid.uuid4().hex[:12]}"
        try:
            principal = self._create_principal(founder_id, display_name, email)

            def body(pipe):
                count = pipe.hlen(self.founders_key)
                if count > 0:
                    raise Conflict(
                        "Founders already exist. Bootstrap is not allowed.",
                        entity_id=founder_id, rule="bootstrap_once", founders_count=count,
                    )
                pipe.multi()
                pipe.hset(self.founders_key, founder_id, json.dumps(principal))
                pipe.sadd(self.admins_key, founder_id)
                self.audit.emit(
                    "founder_added", "principal", founder_id, "bootstrap",
                    details={"email": email, "bootstrap": True},
                    source=self.source_name, pipe=pipe,
                )
                self.audit.emit(
                    "admin_granted", "principal", founder_id, "bootstrap",
                    source=self.source_name, pipe=pipe,
                )
                return principal

            principal = run_transaction(
                self.redis, self.roster_keys, body, self.max_retries, entity_id=founder_id
            )
        except GovernanceError as e:
            self.audit.refused("registry_refused", "principal", founder_id, "bootstrap", e,
                               source=self.source_name)
            raise

        logger.info(f"Bootstrap founder created: {founder_id} ({email})")
        return principal

    def remove_founder(self, founder_id: str, actor: str = "system") -> Dict[str, Any]:
        """
        Remove a founder from the roster.

        A removed founder's admin role is revoked with it. Approvals the
        founder already recorded stop counting toward quorum from the next
        check on.

        Raises:
            NotFound: If the founder does not exist
        """
        def body(pipe):
            raw = pipe.hget(self.founders_key, founder_id)
            if raw is None:
                raise NotFound(
                    f"Founder not found: {founder_id}",
                    entity_id=founder_id, rule="founder_exists",
                )
            was_admin = bool(pipe.sismember(self.admins_key, founder_id))
            pipe.multi()
            pipe.hdel(self.founders_key, founder_id)
            pipe.srem(self.admins_key, founder_id)
            self.audit.emit(
                "founder_removed", "principal", founder_id, actor,
                details={"admin_revoked": was_admin}, source=self.source_name, pipe=pipe,
            )
            return json.loads(raw)

        try:
            removed = run_transaction(
                self.redis, self.roster_keys, body, self.max_retries, entity_id=founder_id
            )
        except GovernanceError as e:
            self.audit.refused("registry_refused", "principal", founder_id, actor, e,
                               source=self.source_name)
            raise

        logger.warning(f"Founder removed: {founder_id} by {actor}")
        return removed

    def would_exceed_cap(self, admin_count: int, additional: int = 1) -> bool:
        return admin_count + additional > self.admin_cap

    def grant_admin(self, principal_id: str, actor: str = "system") -> bool:
        """
        Give a principal the admin role.

        Returns:
            True if granted, False if the principal already held it

        Raises:
            AdminCapReached: If the grant would exceed admin_cap
        """
        if not principal_id:
            raise InvalidArgument("Principal id is required", rule="principal_id_required")

        def body(pipe):
            if pipe.sismember(self.admins_key, principal_id):
                pipe.multi()
                return False
            count = pipe.scard(self.admins_key)
            if self.would_exceed_cap(count):
                raise AdminCapReached(
                    f"Admin cap reached ({count}/{self.admin_cap})",
                    entity_id=principal_id, rule="admin_cap",
                    admin_count=count, admin_cap=self.admin_cap,
                )
            pipe.multi()
            pipe.sadd(self.admins_key, principal_id)
            self.audit.emit(
                "admin_granted", "principal", principal_id, actor,
                details={"admin_count": count + 1, "admin_cap": self.admin_cap},
                source=self.source_name, pipe=pipe,
            )
            return True

        try:
            granted = run_transaction(
                self.redis, [self.admins_key], body, self.max_retries, entity_id=principal_id
            )
        except GovernanceError as e:
            self.audit.refused("registry_refused", "principal", principal_id, actor, e,
                               source=self.source_name)
            raise

        if granted:
            logger.info(f"Admin role granted to {principal_id} by {actor}")
        return granted

    def revoke_admin(self, principal_id: str, actor: str = "system") -> None:
        """
        Take the admin role away from a principal.

        Raises:
            NotFound: If the principal does not hold the admin role
        """
        def body(pipe):
            if not pipe.sismember(self.admins_key, principal_id):
                raise NotFound(
                    f"{principal_id} does not hold the admin role",
                    entity_id=principal_id, rule="admin_exists",
                )
            pipe.multi()
            pipe.srem(self.admins_key, principal_id)
            self.audit.emit(
                "admin_revoked", "principal", principal_id, actor,
                source=self.source_name, pipe=pipe,
            )

        try:
            run_transaction(
                self.redis, [self.admins_key], body, self.max_retries, entity_id=principal_id
            )
        except GovernanceError as e:
            self.audit.refused("registry_refused", "principal", principal_id, actor, e,
                               source=self.source_name)
            raise

        logger.info(f"Admin role revoked from {principal_id} by {actor}")
