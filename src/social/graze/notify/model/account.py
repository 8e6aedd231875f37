"""Account and pending authorization models.

An Account is the canonical record for one signed-in identity. It is built by the token
manager after a successful code exchange and replaced as a whole when tokens rotate, so
readers always see a consistent access/refresh token pair.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List

from jwcrypto import jwk
from pydantic import BaseModel, ConfigDict, Field


REQUIRED_ACCOUNT_FIELDS = (
    "id",
    "display_name",
    "access_token",
    "refresh_token",
    "dpop_jwk",
    "api_base_url",
)


class Account(BaseModel):
    """Credentials and profile for one authorized identity.

    `id` is the account DID and the primary key for every other structure. `dpop_jwk`
    holds the private EC P-256 key the tokens are bound to.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    access_token: str
    refresh_token: str
    dpop_jwk: Dict[str, Any]
    api_base_url: str
    issuer: str = ""
    token_issued_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    access_token_expires_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def missing_fields(self) -> List[str]:
        """Names of required fields that are empty."""
        return [name for name in REQUIRED_ACCOUNT_FIELDS if not getattr(self, name)]

    def dpop_key(self) -> jwk.JWK:
        return jwk.JWK(**self.dpop_jwk)

    def needs_refresh(self, now: datetime, ratio: float) -> bool:
        """Whether `ratio` of the access token lifetime has elapsed at `now`."""
        lifetime = self.access_token_expires_at - self.token_issued_at
        return now >= self.token_issued_at + lifetime * ratio

    def with_tokens(
        self,
        access_token: str,
        refresh_token: str,
        issued_at: datetime,
        expires_at: datetime,
    ) -> "Account":
        """Copy with both tokens replaced. Identity fields never change."""
        return self.model_copy(
            update={
                "access_token": access_token,
                "refresh_token": refresh_token,
                "token_issued_at": issued_at,
                "access_token_expires_at": expires_at,
            }
        )

    def public_view(self) -> Dict[str, Any]:
        """Account fields that are safe to hand to the UI."""
        return {
            "id": self.id,
            "display_name": self.display_name,
            "api_base_url": self.api_base_url,
        }


class PendingAuthorization(BaseModel):
    """A started authorization attempt, stored under its state until consumed."""

    state: str
    verifier: str
    created_at: datetime
