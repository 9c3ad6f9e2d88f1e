"""
Pytest configuration for Aether governance test suite.

Fixtures and configuration shared across all tests.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import fakeredis
import pytest

from bus.python.aether_bus import ContractValidator, EventBus
from core.admission import AdmissionWorkflow
from core.audit import AuditEmitter
from core.deployment import DeploymentExecutor, DeploymentWorkflow
from core.proposals import ProposalStore
from core.quorum import QuorumEvaluator
from core.registry import PrincipalRegistry, VoteSigner


CONTRACTS_DIR = Path(__file__).parent.parent / "bus" / "contracts"

FOUNDER_IDS = ["founder1", "founder2", "founder3", "founder4", "founder5"]
FOUNDERS = [
    {"id": f, "display_name": f"Founder {i}", "email": f"{f}@projectaether.com"}
    for i, f in enumerate(FOUNDER_IDS, start=1)
]
SIGNING_KEYS = {f: f"secret-{f}" for f in FOUNDER_IDS}


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    """Clock fixed at 2026-01-15 12:00 UTC, advanced explicitly by tests."""
    return FakeClock(datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def redis_client():
    """Provide fake Redis client for testing."""
    return fakeredis.FakeRedis(decode_responses=False)


@pytest.fixture
def validator():
    return ContractValidator(CONTRACTS_DIR)


@pytest.fixture
def event_bus(redis_client):
    """Provide event bus instance with fake Redis."""
    return EventBus(redis_client=redis_client, contracts_dir=CONTRACTS_DIR)


@pytest.fixture
def audit(event_bus, clock):
    return AuditEmitter(event_bus, clock=clock)


@pytest.fixture
def evaluator():
    return QuorumEvaluator(user_quorum=3)


@pytest.fixture
def signer():
    return VoteSigner(SIGNING_KEYS)


@pytest.fixture
def registry(redis_client, audit, validator, clock):
    """Registry seeded with founder1..founder5, founder1 holding admin."""
    registry = PrincipalRegistry(
        redis_client, audit, validator=validator, admin_cap=3, clock=clock
    )
    registry.seed(FOUNDERS, ["founder1"])
    return registry


@pytest.fixture
def proposal_store(redis_client, registry, evaluator, audit, validator, signer, clock):
    return ProposalStore(
        redis_client, registry, evaluator, audit,
        validator=validator, vote_signer=signer, clock=clock,
    )


@pytest.fixture
def admission(redis_client, registry, evaluator, audit, validator, signer, clock):
    return AdmissionWorkflow(
        redis_client, registry, evaluator, audit,
        validator=validator, vote_signer=signer, clock=clock,
    )


@pytest.fixture
def executor(redis_client):
    return DeploymentExecutor(redis_client)


@pytest.fixture
def deployment(proposal_store, executor, audit):
    return DeploymentWorkflow(proposal_store, executor, audit)


@pytest.fixture
def approved_proposal(proposal_store):
    """Proposal PROP-APPROVED approved by founder1..founder3."""
    proposal_store.create_proposal("PROP-APPROVED", "Raise rate limits", required_votes=3)
    for founder_id in FOUNDER_IDS[:3]:
        proposal_store.cast_vote("PROP-APPROVED", founder_id, True)
    return proposal_store.get_proposal("PROP-APPROVED")


@pytest.fixture
def valid_audit_v1():
    """Returns a valid audit record matching audit.schema.json v1.0."""
    return {
        "version": "1.0",
        "audit_id": "550e8400-e29b-41d4-a716-446655440000",
        "timestamp": "2026-01-15T12:00:00+00:00",
        "source": "aether-proposals",
        "event_type": "vote_cast",
        "entity_type": "proposal",
        "entity_id": "PROP-004",
        "actor": "founder1",
        "outcome": "success",
        "details": {"approve": True, "approval_count": 1},
    }


@pytest.fixture
def valid_proposal_v1():
    """Returns a valid proposal matching proposal.schema.json v1.0."""
    return {
        "version": "1.0",
        "id": "PROP-004",
        "kind": "governance",
        "description": "Enable new trading strategy",
        "status": "voting",
        "votes": [
            {"founder_id": "founder1", "approve": True, "voted_at": "2026-01-15T12:00:00+00:00"}
        ],
        "required_votes": 3,
        "created_at": "2026-01-15T11:00:00+00:00",
        "created_by": "founder1",
        "revision": 2,
    }


@pytest.fixture
def valid_invitation_v1():
    """Returns a valid invitation matching invitation.schema.json v1.0."""
    return {
        "version": "1.0",
        "id": "inv_0123456789ab",
        "email": "new.user@example.com",
        "requested_role": "user",
        "founder_approvals": ["founder1", "founder2"],
        "invited_at": "2026-01-15T12:00:00+00:00",
        "expires_at": "2026-01-22T12:00:00+00:00",
        "invited_by": "founder1",
    }


@pytest.fixture
def valid_account_v1():
    """Returns a valid account matching account.schema.json v1.0."""
    return {
        "version": "1.0",
        "id": "acct_0123456789ab",
        "email": "new.user@example.com",
        "assigned_role": "user",
        "requested_role": "user",
        "founder_approvals": ["founder1", "founder2", "founder3"],
        "invitation_id": "inv_0123456789ab",
        "activated_at": "2026-01-16T12:00:00+00:00",
        "activated_by": "founder1",
    }


@pytest.fixture
def valid_principal_v1():
    """Returns a valid principal matching principal.schema.json v1.0."""
    return {
        "version": "1.0",
        "id": "founder1",
        "display_name": "Founder One",
        "email": "founder1@projectaether.com",
        "created_at": "2026-01-15T12:00:00+00:00",
    }
