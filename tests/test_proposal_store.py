"""
Proposal store tests.

Tests proposal creation, founder voting, status derivation and the
audit trail of accepted and refused votes.
"""

import pytest

from core.errors import (
    Conflict,
    DuplicateVote,
    InvalidArgument,
    InvalidPrincipal,
    InvalidSignature,
    NotFound,
    VotingClosed,
)
from core.proposals import ProposalStore


@pytest.mark.unit
class TestCreateProposal:
    """Test proposal creation."""

    def test_create_proposal(self, proposal_store, clock):
        """New proposal starts pending with no votes."""
        proposal = proposal_store.create_proposal(
            "PROP-001", "Enable new trading strategy", required_votes=3, created_by="founder1"
        )

        assert proposal["status"] == "pending"
        assert proposal["votes"] == []
        assert proposal["required_votes"] == 3
        assert proposal["kind"] == "governance"
        assert proposal["created_by"] == "founder1"
        assert proposal["created_at"] == clock.now.isoformat()
        assert proposal["revision"] == 1
        assert proposal_store.get_proposal("PROP-001") == proposal

    def test_default_required_votes(self, proposal_store):
        """required_votes defaults to the configured value."""
        proposal = proposal_store.create_proposal("PROP-001", "Default threshold")

        assert proposal["required_votes"] == 3

    def test_duplicate_id_conflict(self, proposal_store):
        """Proposal ids are unique."""
        proposal_store.create_proposal("PROP-001", "First")

        with pytest.raises(Conflict, match="already exists"):
            proposal_store.create_proposal("PROP-001", "Second")

        assert proposal_store.get_proposal("PROP-001")["description"] == "First"

    @pytest.mark.parametrize("proposal_id,description,required_votes", [
        ("", "Description", 3),
        ("   ", "Description", 3),
        ("PROP-001", "", 3),
        ("PROP-001", "Description", 0),
        ("PROP-001", "Description", -2),
        ("PROP-001", "Description", "3"),
        ("PROP-001", "Description", True),
    ])
    def test_invalid_arguments(self, proposal_store, proposal_id, description, required_votes):
        with pytest.raises(InvalidArgument):
            proposal_store.create_proposal(proposal_id, description, required_votes=required_votes)

    def test_required_votes_above_roster(self, proposal_store):
        """A threshold the roster can never reach is refused."""
        with pytest.raises(InvalidArgument) as exc_info:
            proposal_store.create_proposal("PROP-001", "Impossible", required_votes=6)

        assert exc_info.value.rule == "required_votes_within_roster"

    def test_unknown_kind(self, proposal_store):
        with pytest.raises(InvalidArgument):
            proposal_store.create_proposal("PROP-001", "Description", kind="budget")

    def test_refusal_audited(self, proposal_store, audit):
        """Refused creation is audited with the rule."""
        proposal_store.create_proposal("PROP-001", "First")
        with pytest.raises(Conflict):
            proposal_store.create_proposal("PROP-001", "Second")

        refused = audit.read(event_type="proposal_refused")
        assert len(refused) == 1
        assert refused[0]["error"]["rule"] == "proposal_id_unique"

    def test_get_unknown(self, proposal_store):
        with pytest.raises(NotFound):
            proposal_store.get_proposal("PROP-404")

    def test_ensure_proposal(self, proposal_store):
        """ensure_proposal creates once, then returns the existing record."""
        created = proposal_store.ensure_proposal(
            "MODEL-DEPLOY-m1", "Deploy model m1", kind="model_promotion", target="m1"
        )
        again = proposal_store.ensure_proposal("MODEL-DEPLOY-m1", "Other description")

        assert created == again
        assert again["target"] == "m1"
        assert again["kind"] == "model_promotion"


@pytest.mark.unit
class TestListProposals:
    """Test read-only listing."""

    def test_newest_first(self, proposal_store, clock):
        proposal_store.create_proposal("PROP-001", "First")
        clock.advance(minutes=1)
        proposal_store.create_proposal("PROP-002", "Second")

        assert [p["id"] for p in proposal_store.list_proposals()] == ["PROP-002", "PROP-001"]

    def test_filter_by_status(self, proposal_store, approved_proposal):
        proposal_store.create_proposal("PROP-002", "Still pending")

        assert [p["id"] for p in proposal_store.list_proposals(status="approved")] == [
            "PROP-APPROVED"
        ]
        assert [p["id"] for p in proposal_store.list_proposals(status="pending")] == ["PROP-002"]

    def test_empty(self, proposal_store):
        assert proposal_store.list_proposals() == []


@pytest.mark.unit
class TestCastVote:
    """Test founder voting."""

    def test_prop_004_scenario_votes(self, proposal_store):
        """Two approvals leave PROP-004 open; the third approves it."""
        proposal_store.create_proposal("PROP-004", "Enable new trading strategy", required_votes=3)

        proposal = proposal_store.cast_vote("PROP-004", "founder1", True)
        assert proposal["status"] == "voting"
        proposal = proposal_store.cast_vote("PROP-004", "founder2", True)
        assert proposal["status"] == "voting"

        proposal = proposal_store.cast_vote("PROP-004", "founder3", True)
        assert proposal["status"] == "approved"
        assert [v["founder_id"] for v in proposal["votes"]] == ["founder1", "founder2", "founder3"]

    def test_duplicate_vote_refused(self, proposal_store):
        """A founder cannot vote twice, even with a different decision."""
        proposal_store.create_proposal("PROP-001", "Description")
        proposal_store.cast_vote("PROP-001", "founder1", True)

        with pytest.raises(DuplicateVote):
            proposal_store.cast_vote("PROP-001", "founder1", False)

        proposal = proposal_store.get_proposal("PROP-001")
        assert len(proposal["votes"]) == 1
        assert proposal["votes"][0]["approve"] is True

    def test_non_founder_refused(self, proposal_store):
        proposal_store.create_proposal("PROP-001", "Description")

        with pytest.raises(InvalidPrincipal):
            proposal_store.cast_vote("PROP-001", "stranger", True)

    def test_removed_founder_refused(self, proposal_store, registry):
        """Votes are checked against the live roster."""
        proposal_store.create_proposal("PROP-001", "Description")
        registry.remove_founder("founder5")

        with pytest.raises(InvalidPrincipal):
            proposal_store.cast_vote("PROP-001", "founder5", True)

    def test_unknown_proposal(self, proposal_store):
        with pytest.raises(NotFound):
            proposal_store.cast_vote("PROP-404", "founder1", True)

    @pytest.mark.parametrize("approve", ["true", 1, None])
    def test_approve_must_be_bool(self, proposal_store, approve):
        proposal_store.create_proposal("PROP-001", "Description")

        with pytest.raises(InvalidArgument):
            proposal_store.cast_vote("PROP-001", "founder1", approve)

    def test_rejection_policy(self, proposal_store):
        """Three rejections out of five founders close a 3-vote proposal."""
        proposal_store.create_proposal("PROP-001", "Description", required_votes=3)
        proposal_store.cast_vote("PROP-001", "founder1", False)
        proposal = proposal_store.cast_vote("PROP-001", "founder2", False)
        assert proposal["status"] == "voting"

        proposal = proposal_store.cast_vote("PROP-001", "founder3", False)
        assert proposal["status"] == "rejected"

    def test_voting_closed_after_rejection(self, proposal_store):
        proposal_store.create_proposal("PROP-001", "Description", required_votes=5)
        proposal_store.cast_vote("PROP-001", "founder1", False)

        with pytest.raises(VotingClosed):
            proposal_store.cast_vote("PROP-001", "founder2", True)

    def test_voting_closed_after_approval(self, proposal_store, approved_proposal):
        """Late votes on an approved proposal are refused."""
        with pytest.raises(VotingClosed):
            proposal_store.cast_vote("PROP-APPROVED", "founder4", True)

    def test_revision_increments(self, proposal_store):
        proposal_store.create_proposal("PROP-001", "Description")
        proposal = proposal_store.cast_vote("PROP-001", "founder1", True)

        assert proposal["revision"] == 2

    def test_votes_audited(self, proposal_store, audit):
        """Accepted and refused votes both land in the audit stream."""
        proposal_store.create_proposal("PROP-001", "Description", required_votes=1)
        proposal_store.cast_vote("PROP-001", "founder1", True)
        with pytest.raises(VotingClosed):
            proposal_store.cast_vote("PROP-001", "founder2", True)

        trail = audit.read(entity_id="PROP-001")
        assert [r["event_type"] for r in trail] == [
            "proposal_created", "vote_cast", "proposal_approved", "vote_refused",
        ]
        assert trail[-1]["outcome"] == "refused"
        assert trail[-1]["error"]["code"] == "VOTING_CLOSED"


@pytest.mark.unit
class TestSignedVotes:
    """Test votes under require_signed_votes."""

    @pytest.fixture
    def signed_store(self, redis_client, registry, evaluator, audit, validator, signer, clock):
        return ProposalStore(
            redis_client, registry, evaluator, audit, validator=validator,
            vote_signer=signer, require_signed_votes=True, clock=clock,
        )

    def test_signed_vote_accepted(self, signed_store, signer):
        signed_store.create_proposal("PROP-001", "Description")
        token = signer.sign("founder1", "PROP-001", approve=True)

        proposal = signed_store.cast_vote("PROP-001", "founder1", True, signature=token)

        assert proposal["votes"][0]["signature"] == token

    def test_unsigned_vote_refused(self, signed_store):
        signed_store.create_proposal("PROP-001", "Description")

        with pytest.raises(InvalidSignature):
            signed_store.cast_vote("PROP-001", "founder1", True)

    def test_token_of_other_founder_refused(self, signed_store, signer):
        """A caller cannot present one founder's token for another."""
        signed_store.create_proposal("PROP-001", "Description")
        token = signer.sign("founder1", "PROP-001", approve=True)

        with pytest.raises(InvalidSignature):
            signed_store.cast_vote("PROP-001", "founder2", True, signature=token)

        assert signed_store.get_proposal("PROP-001")["votes"] == []

    def test_requires_signer(self, redis_client, registry, evaluator, audit):
        with pytest.raises(ValueError, match="needs a vote_signer"):
            ProposalStore(redis_client, registry, evaluator, audit, require_signed_votes=True)
