"""
PKCE Flow Coordinator

Owns the pending authorization records for in-flight sign-in attempts. A record maps an
unguessable `state` to its PKCE verifier and is consumed exactly once. A separate
processed-state flag is claimed before any token exchange so that duplicated callback
deliveries stop before touching the network.
"""

import base64
from datetime import datetime, timezone
import hashlib
import logging
import secrets
from typing import Optional, Tuple

from pydantic import ValidationError

from social.graze.notify.model.account import PendingAuthorization
from social.graze.notify.store.secure import OnceStore, SecureStorage

logger = logging.getLogger(__name__)

PENDING_NAMESPACE = "pkce_pending"
PROCESSED_NAMESPACE = "pkce_processed"


def generate_pkce_verifier() -> Tuple[str, str]:
    """
    Generate a PKCE verifier and its S256 challenge.

    The verifier carries 80 bytes of entropy in the URL-safe alphabet. The challenge is
    the unpadded base64url encoded SHA-256 digest of the verifier.
    """
    pkce_token = secrets.token_urlsafe(80)

    hashed = hashlib.sha256(pkce_token.encode("ascii")).digest()
    encoded = base64.urlsafe_b64encode(hashed)
    pkce_challenge = encoded.decode("ascii").rstrip("=")
    return (pkce_token, pkce_challenge)


def generate_state() -> str:
    return secrets.token_urlsafe(32)


class PkceCoordinator:
    def __init__(
        self,
        storage: SecureStorage,
        pending_ttl: Optional[int] = None,
        processed_ttl: Optional[int] = None,
    ) -> None:
        self.pending = OnceStore(storage, PENDING_NAMESPACE, ttl=pending_ttl)
        self.processed = OnceStore(storage, PROCESSED_NAMESPACE, ttl=processed_ttl)

    async def begin_authorization(self) -> Tuple[str, str]:
        """Start an attempt. Returns (state, challenge) for the authorization URL."""
        state = generate_state()
        (verifier, challenge) = generate_pkce_verifier()

        pending = PendingAuthorization(
            state=state, verifier=verifier, created_at=datetime.now(timezone.utc)
        )
        await self.pending.put(state, pending.model_dump_json())

        logger.debug("Started authorization %s...", state[:8])
        return state, challenge

    async def consume_authorization(self, state: str) -> Optional[str]:
        """Read and delete the verifier for `state`. Only the first call gets it."""
        value = await self.pending.consume(state)
        if value is None:
            return None
        try:
            return PendingAuthorization.model_validate_json(value).verifier
        except ValidationError:
            logger.warning("Pending authorization %s... is unreadable", state[:8])
            return None

    async def discard_authorization(self, state: str) -> None:
        await self.pending.discard(state)

    async def mark_processed(self, state: str) -> bool:
        """Claim the processed flag. False means another delivery already claimed it."""
        return await self.processed.claim(state)

    async def is_processed(self, state: str) -> bool:
        return await self.processed.exists(state)
