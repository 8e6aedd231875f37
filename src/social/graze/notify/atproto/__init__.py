"""
AT Protocol Integration

This package provides the OAuth client side of the AT Protocol and the XRPC calls
used for polling.

Key Components:
- pkce.py: PKCE state/verifier/challenge generation and exactly-once consumption
- oauth.py: Authorization URL construction, code exchange and token refresh
- jwt.py: DPoP key generation and proof construction
- chain.py: Middleware chain for outbound requests (DPoP nonce retry, metrics)
- feeds.py: Notification and conversation listing against the account's PDS
- errors.py: The error taxonomy shared by the flows above

Key Features:
- OAuth 2.0 authorization code flow with PKCE (S256)
- DPoP (Demonstrating Proof-of-Possession) bound access and refresh tokens
- Serialized, rotating refresh with revocation detection
"""
