"""
Aether Admission Workflow - founder-quorum approval of invitations.

Manages the invitation lifecycle:
1. Creates pending invitations (submitted approvals are re-validated evidence)
2. Records individual founder approvals
3. Checks expiry at approval time, never at creation time only
4. Re-evaluates quorum for the role actually being assigned, against the
   live roster
5. Enforces the admin cap at the moment of activation
6. Activates the account, consumes the invitation and audits it in one
   transaction
"""

import json
import logging
import uuid
from datetime import timedelta
from numbers import Real
from typing import Any, Dict, List, Optional

import redis

from bus.python.aether_bus import ContractValidator
from core.audit import AuditEmitter
from core.clock import Clock, parse_timestamp, utc_now
from core.errors import (
    AdminCapReached,
    Conflict,
    DuplicateVote,
    Expired,
    GovernanceError,
    InvalidArgument,
    InvalidPrincipal,
    NotFound,
    QuorumNotMet,
)
from core.quorum import QuorumEvaluator
from core.quorum.quorum_evaluator import ROLE_ADMIN, ROLES
from core.registry import PrincipalRegistry, RosterSnapshot, VoteSigner
from core.registry.principal_registry import EMAIL_PATTERN
from core.transactions import DEFAULT_MAX_RETRIES, decode, run_transaction


logger = logging.getLogger(__name__)


DEFAULT_INVITATION_EXPIRY_DAYS = 7


class AdmissionWorkflow:
    """
    Decides whether a pending invitee may be activated with a role.

    Invariants:
    - Silence is never approval: quorum must be met by recorded approvals
    - Expired invitation = non-activatable invitation
    - Only current founders' approvals count
    - Admin activation never pushes admins above the cap
    - Account creation and invitation removal are one atomic write
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        registry: PrincipalRegistry,
        evaluator: QuorumEvaluator,
        audit: AuditEmitter,
        validator: Optional[ContractValidator] = None,
        vote_signer: Optional[VoteSigner] = None,
        require_signed_votes: bool = False,
        default_expiry_days: int = DEFAULT_INVITATION_EXPIRY_DAYS,
        key_prefix: str = "aether",
        max_retries: int = DEFAULT_MAX_RETRIES,
        source_name: str = "aether-admission",
        clock: Optional[Clock] = None,
    ):
        """
        Initialize admission workflow.

        Args:
            redis_client: Redis client instance
            registry: Principal registry (live roster and admin cap)
            evaluator: Quorum evaluator
            audit: Audit emitter
            validator: Contract validator for invitation and account records
            vote_signer: Verifies HMAC approval tokens
            require_signed_votes: Refuse approvals without a valid token
            default_expiry_days: Invitation lifetime when none is given
            key_prefix: Prefix for Redis keys
            max_retries: Optimistic transaction attempts
            source_name: Source identifier for audit records
            clock: Timestamp source (UTC)
        """
        if require_signed_votes and vote_signer is None:
            raise ValueError("require_signed_votes needs a vote_signer")

        self.redis = redis_client
        self.registry = registry
        self.evaluator = evaluator
        self.audit = audit
        self.validator = validator
        self.vote_signer = vote_signer or VoteSigner()
        self.require_signed_votes = require_signed_votes
        self.default_expiry_days = default_expiry_days
        self.key_prefix = key_prefix
        self.max_retries = max_retries
        self.source_name = source_name
        self._clock = clock or utc_now

    def _invitation_key(self, invitation_id: str) -> str:
        return f"{self.key_prefix}:invitation:{invitation_id}"

    def _pending_email_key(self, email: str) -> str:
        return f"{self.key_prefix}:invitation-email:{email.lower()}"

    def _account_key(self, account_id: str) -> str:
        return f"{self.key_prefix}:account:{account_id}"

    def _account_email_key(self, email: str) -> str:
        return f"{self.key_prefix}:account-email:{email.lower()}"

    @property
    def invitations_index(self) -> str:
        return f"{self.key_prefix}:invitations"

    @property
    def accounts_index(self) -> str:
        return f"{self.key_prefix}:accounts"

    def _load_invitation(self, reader, invitation_id: str) -> Dict[str, Any]:
        raw = reader.get(self._invitation_key(invitation_id))
        if raw is None:
            raise NotFound(
                f"Pending invitation not found: {invitation_id}",
                entity_id=invitation_id, rule="invitation_exists",
            )
        return json.loads(raw)

    def _is_expired(self, invitation: Dict[str, Any]) -> bool:
        return self._clock() >= parse_timestamp(invitation["expires_at"])

    def _check_not_expired(self, invitation: Dict[str, Any]) -> None:
        if self._is_expired(invitation):
            raise Expired(
                "Invitation has expired",
                entity_id=invitation["id"], rule="invitation_not_expired",
                expires_at=invitation["expires_at"],
            )

    def _lapsed_invitation(
        self, pipe: redis.client.Pipeline, pending_key: str, invitation_id: str
    ) -> Optional[Dict[str, Any]]:
        """
        Return the expired invitation still holding this email, if any.

        A live pending invitation is a Conflict. The holder's record is
        watched so a concurrent approval or rejection forces a retry.
        """
        holder_id = pipe.get(pending_key)
        if holder_id is None:
            return None

        holder_key = self._invitation_key(decode(holder_id))
        pipe.watch(holder_key)
        raw = pipe.get(holder_key)
        if raw is None:
            return None

        holder = json.loads(raw)
        if not self._is_expired(holder):
            raise Conflict(
                "User with this email already has a pending invitation",
                entity_id=invitation_id, rule="email_unique_pending",
                pending_invitation_id=holder["id"],
            )
        return holder

    def _quorum_view(self, invitation: Dict[str, Any], role: str, roster: RosterSnapshot) -> Dict[str, Any]:
        """Approvals that count for a role against the given roster."""
        counted = [a for a in invitation["founder_approvals"] if roster.is_founder(a)]
        return {
            "role": role,
            "approvals_received": len(counted),
            "approvals_needed": self.evaluator.required_approvals(role, roster.founder_count),
            "quorum_met": self.evaluator.invitation_quorum_met(
                role, counted, roster.founder_count, roster.founder_ids
            ),
        }

    def _validate(self, record: Dict[str, Any], schema_name: str) -> None:
        if self.validator is not None:
            self.validator.validate(record, schema_name)

    def create_invitation(
        self,
        email: str,
        role: str,
        founder_approvals: Optional[List[str]] = None,
        expiry_days: Optional[float] = None,
        invited_by: str = "system",
        approval_signatures: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Create a pending invitation.

        Submitted approvals are evidence, not trusted input: each id must be
        a current founder, duplicates collapse to one, and tokens are checked
        when signed votes are enforced. Tokens sign the invitee email.

        Args:
            email: Invitee email (unique among pending invitations and accounts)
            role: Requested role ("user" or "admin")
            founder_approvals: Founder ids approving up front
            expiry_days: Lifetime in days (default from config)
            invited_by: Actor creating the invitation
            approval_signatures: Founder id -> HMAC token

        Returns:
            The pending invitation

        Raises:
            InvalidArgument: Malformed email, unknown role, non-positive expiry
            Conflict: Email already pending or already an account
            InvalidPrincipal: An approval id is not a current founder
            InvalidSignature: A required or supplied token does not verify
        """
        invitation_id = f"inv_{uuid.uuid4().hex[:12]}"
        if expiry_days is None:
            expiry_days = self.default_expiry_days

        try:
            if not isinstance(email, str) or not EMAIL_PATTERN.match(email):
                raise InvalidArgument(
                    "Valid email address is required",
                    entity_id=invitation_id, rule="email_format",
                )
            if role not in ROLES:
                raise InvalidArgument(
                    "Role must be either user or admin",
                    entity_id=invitation_id, rule="role_known", role=role,
                )
            if isinstance(expiry_days, bool) or not isinstance(expiry_days, Real) or expiry_days <= 0:
                raise InvalidArgument(
                    f"expiry_days must be positive, got {expiry_days!r}",
                    entity_id=invitation_id, rule="expiry_positive",
                )

            submitted = [a for a in (founder_approvals or []) if a]
            approvals = list(dict.fromkeys(submitted))
            if len(approvals) != len(submitted):
                logger.warning(
                    f"Invitation for {email}: collapsed {len(submitted) - len(approvals)} "
                    f"duplicate founder approvals"
                )
            signatures = {
                a: s for a, s in (approval_signatures or {}).items() if a in approvals
            }

            pending_key = self._pending_email_key(email)
            account_email_key = self._account_email_key(email)

            def body(pipe):
                lapsed = self._lapsed_invitation(pipe, pending_key, invitation_id)
                if pipe.exists(account_email_key):
                    raise Conflict(
                        "User with this email already has an account",
                        entity_id=invitation_id, rule="email_unique_account",
                    )

                roster = self.registry.snapshot(pipe)
                unknown = [a for a in approvals if not roster.is_founder(a)]
                if unknown:
                    raise InvalidPrincipal(
                        f"Approvals from unregistered principals: {unknown}",
                        entity_id=invitation_id, rule="approver_is_founder", unknown=unknown,
                    )
                for founder_id in approvals:
                    self.vote_signer.check(
                        founder_id, email.lower(), True,
                        signatures.get(founder_id), self.require_signed_votes,
                    )

                now = self._clock()
                invitation = {
                    "version": "1.0",
                    "id": invitation_id,
                    "email": email,
                    "requested_role": role,
                    "founder_approvals": approvals,
                    "invited_at": now.isoformat(),
                    "expires_at": (now + timedelta(days=expiry_days)).isoformat(),
                    "invited_by": invited_by,
                }
                if signatures:
                    invitation["approval_signatures"] = signatures
                self._validate(invitation, "invitation.schema")
                view = self._quorum_view(invitation, role, roster)

                pipe.multi()
                if lapsed is not None:
                    pipe.delete(self._invitation_key(lapsed["id"]))
                    pipe.zrem(self.invitations_index, lapsed["id"])
                    self.audit.emit(
                        "invitation_expired", "invitation", lapsed["id"], invited_by,
                        details={
                            "email": lapsed["email"],
                            "expires_at": lapsed["expires_at"],
                            "replaced_by": invitation_id,
                        },
                        source=self.source_name, pipe=pipe,
                    )
                pipe.set(self._invitation_key(invitation_id), json.dumps(invitation))
                pipe.set(pending_key, invitation_id)
                pipe.zadd(self.invitations_index, {invitation_id: now.timestamp()})
                self.audit.emit(
                    "invitation_created", "invitation", invitation_id, invited_by,
                    details={
                        "email": email,
                        "requested_role": role,
                        "approvals_received": view["approvals_received"],
                        "approvals_needed": view["approvals_needed"],
                    },
                    source=self.source_name, pipe=pipe,
                )
                return invitation

            invitation = run_transaction(
                self.redis,
                [pending_key, account_email_key, *self.registry.roster_keys],
                body, self.max_retries, entity_id=invitation_id,
            )
        except GovernanceError as e:
            self.audit.refused(
                "invitation_refused", "invitation", invitation_id, invited_by, e,
                details={"email": email if isinstance(email, str) else None},
                source=self.source_name,
            )
            raise

        logger.info(
            f"Invitation {invitation_id} created for {email} "
            f"(role={role}, approvals={len(invitation['founder_approvals'])})"
        )
        return invitation

    def get_invitation(self, invitation_id: str) -> Dict[str, Any]:
        """
        Raises:
            NotFound: If no pending invitation has this id
        """
        return self._load_invitation(self.redis, invitation_id)

    def record_approval(
        self, invitation_id: str, founder_id: str, signature: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Record one founder's approval of a pending invitation.

        Returns:
            The updated invitation

        Raises:
            NotFound: If the invitation does not exist
            Expired: If the invitation has expired
            InvalidPrincipal: If founder_id is not a current founder
            InvalidSignature: If a required or supplied token does not verify
            DuplicateVote: If the founder already approved
        """
        key = self._invitation_key(invitation_id)

        def body(pipe):
            invitation = self._load_invitation(pipe, invitation_id)
            self._check_not_expired(invitation)

            roster = self.registry.snapshot(pipe)
            if not roster.is_founder(founder_id):
                raise InvalidPrincipal(
                    f"{founder_id} is not a registered founder",
                    entity_id=invitation_id, rule="approver_is_founder", founder_id=founder_id,
                )
            self.vote_signer.check(
                founder_id, invitation["email"].lower(), True, signature, self.require_signed_votes
            )
            if founder_id in invitation["founder_approvals"]:
                raise DuplicateVote(
                    f"{founder_id} has already approved {invitation_id}",
                    entity_id=invitation_id, rule="one_approval_per_founder",
                    founder_id=founder_id,
                )

            invitation["founder_approvals"].append(founder_id)
            if signature is not None:
                invitation.setdefault("approval_signatures", {})[founder_id] = signature
            self._validate(invitation, "invitation.schema")
            view = self._quorum_view(invitation, invitation["requested_role"], roster)

            pipe.multi()
            pipe.set(key, json.dumps(invitation))
            self.audit.emit(
                "invitation_approval_recorded", "invitation", invitation_id, founder_id,
                details={
                    "approvals_received": view["approvals_received"],
                    "approvals_needed": view["approvals_needed"],
                },
                source=self.source_name, pipe=pipe,
            )
            return invitation

        try:
            invitation = run_transaction(
                self.redis, [key, *self.registry.roster_keys], body,
                self.max_retries, entity_id=invitation_id,
            )
        except GovernanceError as e:
            self.audit.refused(
                "invitation_refused", "invitation", invitation_id, founder_id or "unknown", e,
                source=self.source_name,
            )
            raise

        logger.info(f"Founder {founder_id} approved invitation {invitation_id}")
        return invitation

    def list_pending(self, search: str = "", limit: int = 10, offset: int = 0) -> Dict[str, Any]:
        """
        Paginated pending invitations, oldest first.

        Args:
            search: Case-insensitive email substring filter
            limit: Page size (>= 1)
            offset: Entries to skip (>= 0)

        Returns:
            Dict with invitations, total, limit, offset and has_more. Each
            invitation carries approvals_received, approvals_needed and
            expired, computed against the live roster.
        """
        if limit < 1 or offset < 0:
            raise InvalidArgument(
                f"Invalid pagination limit={limit} offset={offset}", rule="pagination_range"
            )

        ids = [decode(i) for i in self.redis.zrange(self.invitations_index, 0, -1)]
        raws = self.redis.mget([self._invitation_key(i) for i in ids]) if ids else []
        invitations = [json.loads(raw) for raw in raws if raw is not None]

        if search:
            term = search.lower()
            invitations = [i for i in invitations if term in i["email"].lower()]

        roster = self.registry.snapshot()
        page = []
        for invitation in invitations[offset:offset + limit]:
            view = self._quorum_view(invitation, invitation["requested_role"], roster)
            entry = {k: v for k, v in invitation.items() if k != "approval_signatures"}
            entry.update(
                approvals_received=view["approvals_received"],
                approvals_needed=view["approvals_needed"],
                expired=self._is_expired(invitation),
            )
            page.append(entry)

        return {
            "invitations": page,
            "total": len(invitations),
            "limit": limit,
            "offset": offset,
            "has_more": offset + limit < len(invitations),
        }

    def approve_invitation(
        self,
        invitation_id: str,
        assigned_role: Optional[str] = None,
        actor: str = "system",
    ) -> Dict[str, Any]:
        """
        Activate the invitee with a role.

        Args:
            invitation_id: Pending invitation
            assigned_role: Role to assign; defaults to the requested role.
                Quorum is evaluated for this role, not the requested one.
            actor: Operator approving the invitation

        Returns:
            The activated account

        Raises:
            NotFound: If the invitation does not exist
            Expired: If the invitation is past expires_at
            InvalidArgument: If assigned_role is unknown
            QuorumNotMet: If current founders' approvals miss the role's quorum
            AdminCapReached: If assigning admin would exceed the admin cap
            Conflict: If an account with the email appeared meanwhile
        """
        key = self._invitation_key(invitation_id)

        def body(pipe):
            invitation = self._load_invitation(pipe, invitation_id)
            self._check_not_expired(invitation)

            role = assigned_role or invitation["requested_role"]
            if role not in ROLES:
                raise InvalidArgument(
                    "Role must be either user or admin",
                    entity_id=invitation_id, rule="role_known", role=role,
                )

            roster = self.registry.snapshot(pipe)
            view = self._quorum_view(invitation, role, roster)
            if not view["quorum_met"]:
                raise QuorumNotMet(
                    "User does not have sufficient founder approvals",
                    entity_id=invitation_id, rule=f"{role}_quorum",
                    role=role,
                    approvals_received=view["approvals_received"],
                    approvals_needed=view["approvals_needed"],
                    founders_count=roster.founder_count,
                )
            if role == ROLE_ADMIN and self.registry.would_exceed_cap(roster.admin_count):
                raise AdminCapReached(
                    f"Admin cap reached ({roster.admin_count}/{self.registry.admin_cap})",
                    entity_id=invitation_id, rule="admin_cap",
                    admin_count=roster.admin_count, admin_cap=self.registry.admin_cap,
                )

            account_email_key = self._account_email_key(invitation["email"])
            pipe.watch(account_email_key)
            if pipe.exists(account_email_key):
                raise Conflict(
                    "User with this email already has an account",
                    entity_id=invitation_id, rule="email_unique_account",
                )

            now = self._clock()
            counted = [a for a in invitation["founder_approvals"] if roster.is_founder(a)]
            account = {
                "version": "1.0",
                "id": f"acct_{uuid.uuid4().hex[:12]}",
                "email": invitation["email"],
                "assigned_role": role,
                "requested_role": invitation["requested_role"],
                "founder_approvals": counted,
                "invitation_id": invitation_id,
                "activated_at": now.isoformat(),
                "activated_by": actor,
            }
            self._validate(account, "account.schema")

            pipe.multi()
            pipe.set(self._account_key(account["id"]), json.dumps(account))
            pipe.set(account_email_key, account["id"])
            pipe.zadd(self.accounts_index, {account["id"]: now.timestamp()})
            pipe.delete(key, self._pending_email_key(invitation["email"]))
            pipe.zrem(self.invitations_index, invitation_id)
            self.audit.emit(
                "invitation_approved", "invitation", invitation_id, actor,
                details={
                    "account_id": account["id"],
                    "assigned_role": role,
                    "requested_role": invitation["requested_role"],
                    "approvals_received": view["approvals_received"],
                    "approvals_needed": view["approvals_needed"],
                },
                source=self.source_name, pipe=pipe,
            )
            if role == ROLE_ADMIN:
                pipe.sadd(self.registry.admins_key, account["id"])
                self.audit.emit(
                    "admin_granted", "account", account["id"], actor,
                    details={
                        "admin_count": roster.admin_count + 1,
                        "admin_cap": self.registry.admin_cap,
                    },
                    source=self.source_name, pipe=pipe,
                )
            return account

        try:
            account = run_transaction(
                self.redis, [key, *self.registry.roster_keys], body,
                self.max_retries, entity_id=invitation_id,
            )
        except GovernanceError as e:
            self.audit.refused(
                "admission_refused", "invitation", invitation_id, actor, e,
                details={"assigned_role": assigned_role}, source=self.source_name,
            )
            raise

        logger.info(
            f"Invitation {invitation_id} approved: account {account['id']} "
            f"({account['email']}) role={account['assigned_role']} by {actor}"
        )
        return account

    def reject_invitation(self, invitation_id: str, actor: str = "system") -> None:
        """
        Delete a pending invitation.

        Raises:
            NotFound: If the invitation does not exist (already rejected or approved)
        """
        key = self._invitation_key(invitation_id)

        def body(pipe):
            invitation = self._load_invitation(pipe, invitation_id)
            pipe.multi()
            pipe.delete(key, self._pending_email_key(invitation["email"]))
            pipe.zrem(self.invitations_index, invitation_id)
            self.audit.emit(
                "invitation_rejected", "invitation", invitation_id, actor,
                details={"email": invitation["email"]},
                source=self.source_name, pipe=pipe,
            )

        try:
            run_transaction(self.redis, [key], body, self.max_retries, entity_id=invitation_id)
        except GovernanceError as e:
            self.audit.refused(
                "invitation_refused", "invitation", invitation_id, actor, e,
                source=self.source_name,
            )
            raise

        logger.info(f"Invitation {invitation_id} rejected by {actor}")

    def get_account(self, account_id: str) -> Dict[str, Any]:
        """
        Raises:
            NotFound: If no account has this id
        """
        raw = self.redis.get(self._account_key(account_id))
        if raw is None:
            raise NotFound(
                f"Account not found: {account_id}", entity_id=account_id, rule="account_exists"
            )
        return json.loads(raw)

    def list_accounts(self) -> List[Dict[str, Any]]:
        ids = [decode(i) for i in self.redis.zrange(self.accounts_index, 0, -1)]
        if not ids:
            return []
        raws = self.redis.mget([self._account_key(i) for i in ids])
        return [json.loads(raw) for raw in raws if raw is not None]

    def stats(self) -> Dict[str, Any]:
        """Pending, ready-to-approve and expired invitation counts."""
        ids = [decode(i) for i in self.redis.zrange(self.invitations_index, 0, -1)]
        raws = self.redis.mget([self._invitation_key(i) for i in ids]) if ids else []
        invitations = [json.loads(raw) for raw in raws if raw is not None]
        roster = self.registry.snapshot()

        expired = [i for i in invitations if self._is_expired(i)]
        ready = [
            i for i in invitations
            if not self._is_expired(i)
            and self._quorum_view(i, i["requested_role"], roster)["quorum_met"]
        ]

        return {
            "total_pending": len(invitations),
            "ready_for_approval": len(ready),
            "expired": len(expired),
            "total_accounts": self.redis.zcard(self.accounts_index),
            "admin_count": roster.admin_count,
            "admin_cap": self.registry.admin_cap,
        }
