"""
Admission workflow tests.

Tests invitation creation, per-founder approvals, role-dependent quorum,
expiry at approval time and the admin cap.
"""

import pytest

from core.admission import AdmissionWorkflow
from core.errors import (
    AdminCapReached,
    Conflict,
    DuplicateVote,
    Expired,
    InvalidArgument,
    InvalidPrincipal,
    InvalidSignature,
    NotFound,
    QuorumNotMet,
)

from conftest import FOUNDER_IDS


@pytest.mark.unit
class TestCreateInvitation:
    """Test invitation creation."""

    def test_create_invitation(self, admission, clock):
        """Pending invitation records approvals and expiry."""
        invitation = admission.create_invitation(
            "new.user@example.com", "user", ["founder1", "founder2"], invited_by="founder1"
        )

        assert invitation["id"].startswith("inv_")
        assert invitation["requested_role"] == "user"
        assert invitation["founder_approvals"] == ["founder1", "founder2"]
        assert invitation["invited_at"] == clock.now.isoformat()
        assert invitation["expires_at"] > invitation["invited_at"]
        assert admission.get_invitation(invitation["id"]) == invitation

    def test_duplicate_approvals_collapsed(self, admission):
        invitation = admission.create_invitation(
            "new.user@example.com", "user", ["founder1", "founder1", "founder2"]
        )

        assert invitation["founder_approvals"] == ["founder1", "founder2"]

    def test_unknown_approver_refused(self, admission):
        """Submitted approvals are re-validated against the roster."""
        with pytest.raises(InvalidPrincipal) as exc_info:
            admission.create_invitation("new.user@example.com", "user", ["founder1", "mallory"])

        assert exc_info.value.details["unknown"] == ["mallory"]
        assert admission.list_pending()["total"] == 0

    @pytest.mark.parametrize("email,role,expiry_days", [
        ("not-an-email", "user", 7),
        ("a b@example.com", "user", 7),
        ("new.user@example.com", "owner", 7),
        ("new.user@example.com", "user", 0),
        ("new.user@example.com", "user", -1),
    ])
    def test_invalid_arguments(self, admission, email, role, expiry_days):
        with pytest.raises(InvalidArgument):
            admission.create_invitation(email, role, expiry_days=expiry_days)

    def test_email_unique_among_pending(self, admission):
        admission.create_invitation("new.user@example.com", "user")

        with pytest.raises(Conflict, match="pending invitation"):
            admission.create_invitation("New.User@example.com", "admin")

    def test_reinvite_after_expiry(self, admission, audit, clock):
        """An expired invitation releases its email to a new invitation."""
        lapsed = admission.create_invitation(
            "late@example.com", "user", ["founder1"], expiry_days=1
        )
        clock.advance(days=2)

        invitation = admission.create_invitation(
            "Late@example.com", "user", ["founder2"], invited_by="founder2"
        )

        with pytest.raises(NotFound):
            admission.get_invitation(lapsed["id"])
        pending = admission.list_pending()
        assert pending["total"] == 1
        assert pending["invitations"][0]["id"] == invitation["id"]
        assert invitation["founder_approvals"] == ["founder2"]

        expired = audit.read(event_type="invitation_expired")
        assert len(expired) == 1
        assert expired[0]["entity_id"] == lapsed["id"]
        assert expired[0]["details"]["replaced_by"] == invitation["id"]

    def test_unexpired_invitation_keeps_email(self, admission, clock):
        """Just before expiry the email is still reserved."""
        admission.create_invitation("late@example.com", "user", expiry_days=1)
        clock.advance(hours=23)

        with pytest.raises(Conflict) as exc_info:
            admission.create_invitation("late@example.com", "user")

        assert exc_info.value.rule == "email_unique_pending"

    def test_email_unique_among_accounts(self, admission):
        invitation = admission.create_invitation(
            "new.user@example.com", "user", FOUNDER_IDS[:3]
        )
        admission.approve_invitation(invitation["id"])

        with pytest.raises(Conflict, match="already has an account"):
            admission.create_invitation("new.user@example.com", "user")

    def test_refusal_audited(self, admission, audit):
        with pytest.raises(InvalidArgument):
            admission.create_invitation("bad", "user")

        refused = audit.read(event_type="invitation_refused")
        assert refused[-1]["error"]["rule"] == "email_format"


@pytest.mark.unit
class TestRecordApproval:
    """Test individually recorded founder approvals."""

    def test_record_approval(self, admission, audit):
        invitation = admission.create_invitation("new.user@example.com", "user")

        updated = admission.record_approval(invitation["id"], "founder2")

        assert updated["founder_approvals"] == ["founder2"]
        record = audit.read(event_type="invitation_approval_recorded")[-1]
        assert record["details"] == {"approvals_received": 1, "approvals_needed": 3}

    def test_duplicate_approval(self, admission):
        invitation = admission.create_invitation("new.user@example.com", "user", ["founder1"])

        with pytest.raises(DuplicateVote):
            admission.record_approval(invitation["id"], "founder1")

    def test_non_founder(self, admission):
        invitation = admission.create_invitation("new.user@example.com", "user")

        with pytest.raises(InvalidPrincipal):
            admission.record_approval(invitation["id"], "stranger")

    def test_unknown_invitation(self, admission):
        with pytest.raises(NotFound):
            admission.record_approval("inv_missing", "founder1")

    def test_expired_invitation(self, admission, clock):
        invitation = admission.create_invitation("new.user@example.com", "user", expiry_days=1)
        clock.advance(days=1)

        with pytest.raises(Expired):
            admission.record_approval(invitation["id"], "founder1")


@pytest.mark.integration
class TestApproveInvitation:
    """Test activation under quorum, expiry and cap rules."""

    def test_user_two_then_three_scenario(self, admission, registry):
        """Two approvals miss the user quorum; a third lets approval succeed."""
        invitation = admission.create_invitation(
            "new.user@example.com", "user", ["founder1", "founder2"]
        )

        with pytest.raises(QuorumNotMet) as exc_info:
            admission.approve_invitation(invitation["id"], actor="founder1")

        assert exc_info.value.details["approvals_received"] == 2
        assert exc_info.value.details["approvals_needed"] == 3

        admission.record_approval(invitation["id"], "founder3")
        account = admission.approve_invitation(invitation["id"], actor="founder1")

        assert account["assigned_role"] == "user"
        assert account["email"] == "new.user@example.com"
        assert account["founder_approvals"] == ["founder1", "founder2", "founder3"]
        assert account["invitation_id"] == invitation["id"]
        assert admission.get_account(account["id"]) == account
        assert registry.is_admin(account["id"]) is False

        with pytest.raises(NotFound):
            admission.get_invitation(invitation["id"])

    def test_admin_four_of_five_scenario(self, admission, registry):
        """Four of five approvals miss the admin quorum; the fifth succeeds."""
        invitation = admission.create_invitation(
            "new.admin@example.com", "admin", FOUNDER_IDS[:4]
        )

        with pytest.raises(QuorumNotMet):
            admission.approve_invitation(invitation["id"])

        admission.record_approval(invitation["id"], "founder5")
        account = admission.approve_invitation(invitation["id"])

        assert account["assigned_role"] == "admin"
        assert registry.is_admin(account["id"]) is True
        assert registry.admin_count() == 2

    def test_admin_cap_blocks_unanimous_activation(self, admission, registry, audit):
        """At the cap, unanimous approval still cannot add an admin."""
        registry.grant_admin("founder2")
        registry.grant_admin("founder3")
        assert registry.admin_count() == 3

        invitation = admission.create_invitation(
            "new.admin@example.com", "admin", FOUNDER_IDS
        )

        with pytest.raises(AdminCapReached):
            admission.approve_invitation(invitation["id"])

        assert registry.admin_count() == 3
        assert admission.get_invitation(invitation["id"])["id"] == invitation["id"]
        assert admission.list_accounts() == []

        refused = audit.read(event_type="admission_refused")[-1]
        assert refused["error"]["code"] == "ADMIN_CAP_REACHED"

    def test_expired_never_approved(self, admission, clock):
        """Full quorum does not rescue an expired invitation."""
        invitation = admission.create_invitation(
            "new.user@example.com", "user", FOUNDER_IDS, expiry_days=7
        )
        clock.advance(days=7, seconds=1)

        with pytest.raises(Expired):
            admission.approve_invitation(invitation["id"])

        assert admission.list_accounts() == []

    def test_assigned_role_requalifies_quorum(self, admission):
        """Assigning admin to a user invitation needs the admin quorum."""
        invitation = admission.create_invitation(
            "new.user@example.com", "user", FOUNDER_IDS[:3]
        )

        with pytest.raises(QuorumNotMet) as exc_info:
            admission.approve_invitation(invitation["id"], assigned_role="admin")

        assert exc_info.value.rule == "admin_quorum"

        account = admission.approve_invitation(invitation["id"], assigned_role="user")
        assert account["requested_role"] == "user"

    def test_downgrade_to_user(self, admission, registry):
        """An admin request can be activated as a user with user quorum."""
        invitation = admission.create_invitation(
            "new.admin@example.com", "admin", FOUNDER_IDS[:3]
        )

        account = admission.approve_invitation(invitation["id"], assigned_role="user")

        assert account["assigned_role"] == "user"
        assert account["requested_role"] == "admin"
        assert registry.admin_count() == 1

    def test_removed_founder_approval_stops_counting(self, admission, registry):
        """Quorum is recomputed against the live roster at approval time."""
        invitation = admission.create_invitation(
            "new.user@example.com", "user", FOUNDER_IDS[:3]
        )
        registry.remove_founder("founder3")

        with pytest.raises(QuorumNotMet):
            admission.approve_invitation(invitation["id"])

    def test_admin_quorum_follows_roster_size(self, admission, registry):
        """Removing a founder lowers the unanimity bar for admins."""
        invitation = admission.create_invitation(
            "new.admin@example.com", "admin", FOUNDER_IDS[:4]
        )
        registry.remove_founder("founder5")

        account = admission.approve_invitation(invitation["id"])

        assert account["assigned_role"] == "admin"

    def test_unknown_invitation(self, admission):
        with pytest.raises(NotFound):
            admission.approve_invitation("inv_missing")

    def test_approval_audited_atomically(self, admission, audit):
        invitation = admission.create_invitation(
            "new.user@example.com", "user", FOUNDER_IDS[:3]
        )
        account = admission.approve_invitation(invitation["id"], actor="founder2")

        record = audit.read(event_type="invitation_approved")[-1]
        assert record["entity_id"] == invitation["id"]
        assert record["actor"] == "founder2"
        assert record["details"]["account_id"] == account["id"]


@pytest.mark.unit
class TestRejectInvitation:
    """Test invitation rejection."""

    def test_reject(self, admission):
        invitation = admission.create_invitation("new.user@example.com", "user")

        admission.reject_invitation(invitation["id"], actor="founder1")

        assert admission.list_pending()["total"] == 0
        # The email is free for a fresh invitation
        admission.create_invitation("new.user@example.com", "user")

    def test_reject_twice(self, admission):
        invitation = admission.create_invitation("new.user@example.com", "user")
        admission.reject_invitation(invitation["id"])

        with pytest.raises(NotFound):
            admission.reject_invitation(invitation["id"])


@pytest.mark.unit
class TestPendingListing:
    """Test paginated pending listing and stats."""

    def test_list_pending_pagination(self, admission, clock):
        for i in range(3):
            admission.create_invitation(f"user{i}@example.com", "user")
            clock.advance(minutes=1)

        page = admission.list_pending(limit=2, offset=0)

        assert page["total"] == 3
        assert page["has_more"] is True
        assert [i["email"] for i in page["invitations"]] == [
            "user0@example.com", "user1@example.com"
        ]

        page = admission.list_pending(limit=2, offset=2)
        assert page["has_more"] is False
        assert [i["email"] for i in page["invitations"]] == ["user2@example.com"]

    def test_list_pending_search(self, admission):
        admission.create_invitation("alice@example.com", "user")
        admission.create_invitation("bob@example.com", "user")

        page = admission.list_pending(search="ALICE")

        assert page["total"] == 1
        assert page["invitations"][0]["email"] == "alice@example.com"

    def test_list_pending_progress_fields(self, admission, clock):
        admission.create_invitation("admin@example.com", "admin", ["founder1"], expiry_days=1)
        clock.advance(days=2)

        entry = admission.list_pending()["invitations"][0]

        assert entry["approvals_received"] == 1
        assert entry["approvals_needed"] == 5
        assert entry["expired"] is True

    def test_invalid_pagination(self, admission):
        with pytest.raises(InvalidArgument):
            admission.list_pending(limit=0)

    def test_stats(self, admission, clock):
        admission.create_invitation("ready@example.com", "user", FOUNDER_IDS[:3])
        admission.create_invitation("waiting@example.com", "user", ["founder1"])
        admission.create_invitation("stale@example.com", "user", FOUNDER_IDS, expiry_days=1)
        clock.advance(days=2)

        stats = admission.stats()

        assert stats["total_pending"] == 3
        assert stats["ready_for_approval"] == 1
        assert stats["expired"] == 1
        assert stats["total_accounts"] == 0
        assert stats["admin_cap"] == 3


@pytest.mark.unit
class TestSignedApprovals:
    """Test approvals under require_signed_votes."""

    @pytest.fixture
    def signed_admission(self, redis_client, registry, evaluator, audit, validator, signer, clock):
        return AdmissionWorkflow(
            redis_client, registry, evaluator, audit, validator=validator,
            vote_signer=signer, require_signed_votes=True, clock=clock,
        )

    def test_signed_submitted_approvals(self, signed_admission, signer):
        """Approvals submitted at creation carry tokens over the invitee email."""
        email = "new.user@example.com"
        tokens = {f: signer.sign(f, email) for f in FOUNDER_IDS[:3]}

        invitation = signed_admission.create_invitation(
            email, "user", FOUNDER_IDS[:3], approval_signatures=tokens
        )

        assert invitation["approval_signatures"] == tokens

    def test_unsigned_submitted_approval_refused(self, signed_admission):
        with pytest.raises(InvalidSignature):
            signed_admission.create_invitation("new.user@example.com", "user", ["founder1"])

    def test_signed_record_approval(self, signed_admission, signer):
        invitation = signed_admission.create_invitation("new.user@example.com", "user")
        token = signer.sign("founder4", "new.user@example.com")

        updated = signed_admission.record_approval(invitation["id"], "founder4", signature=token)

        assert updated["approval_signatures"] == {"founder4": token}

    def test_forged_record_approval_refused(self, signed_admission, signer):
        invitation = signed_admission.create_invitation("new.user@example.com", "user")
        token = signer.sign("founder4", "other@example.com")

        with pytest.raises(InvalidSignature):
            signed_admission.record_approval(invitation["id"], "founder4", signature=token)
