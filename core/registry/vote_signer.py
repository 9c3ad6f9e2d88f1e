"""
HMAC-signed founder votes.

A signature binds one founder to one decision on one entity, so an
approval list assembled by a caller cannot claim a founder who never
approved. Tokens are HMAC-SHA256 over "founder:entity:decision".
"""

import hashlib
import hmac
import logging
from typing import Dict, Optional

from core.errors import InvalidSignature


logger = logging.getLogger(__name__)


def _vote_message(founder_id: str, entity_id: str, approve: bool) -> bytes:
    decision = "approve" if approve else "reject"
    return f"{founder_id}:{entity_id}:{decision}".encode()


class VoteSigner:
    """
    Signs and verifies founder vote tokens.

    Invariants:
    - A token verifies only for the founder, entity and decision it was made for
    - Comparison is constant-time
    - A founder without a key can never produce a valid token
    """

    def __init__(self, signing_keys: Optional[Dict[str, str]] = None):
        """
        Args:
            signing_keys: Founder id -> shared secret
        """
        self._keys = dict(signing_keys or {})

    def has_key(self, founder_id: str) -> bool:
        return founder_id in self._keys

    def sign(self, founder_id: str, entity_id: str, approve: bool = True) -> str:
        """
        Produce the vote token for a founder's decision.

        Raises:
            InvalidSignature: If the founder has no signing key
        """
        key = self._keys.get(founder_id)
        if key is None:
            raise InvalidSignature(
                f"No signing key for founder {founder_id}",
                entity_id=entity_id,
                rule="signing_key_required",
                founder_id=founder_id,
            )
        return hmac.new(
            key.encode(), _vote_message(founder_id, entity_id, approve), hashlib.sha256
        ).hexdigest()

    def verify(
        self, founder_id: str, entity_id: str, approve: bool, signature: Optional[str]
    ) -> bool:
        key = self._keys.get(founder_id)
        if key is None or not signature:
            return False
        expected = hmac.new(
            key.encode(), _vote_message(founder_id, entity_id, approve), hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected, signature)

    def check(
        self,
        founder_id: str,
        entity_id: str,
        approve: bool,
        signature: Optional[str],
        required: bool,
    ) -> None:
        """
        Enforce the signature policy for one vote.

        A supplied signature is always verified. A missing one is refused
        only when signatures are required.

        Raises:
            InvalidSignature: If the signature is required but missing, or invalid
        """
        if signature is None and not required:
            return

        if not self.verify(founder_id, entity_id, approve, signature):
            rule = "signature_required" if signature is None else "signature_mismatch"
            raise InvalidSignature(
                f"Vote by {founder_id} on {entity_id} is not validly signed",
                entity_id=entity_id,
                rule=rule,
                founder_id=founder_id,
            )
