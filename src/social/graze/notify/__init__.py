"""
Notify - multi-account AT Protocol activity watcher

This package keeps one or more Bluesky / AT Protocol accounts authenticated and polls each
of them for new activity (notifications and direct message conversations), surfacing
per-account and aggregate unread counts to a presentation layer.

Key Components:
- app: Web application layer, configuration, polling orchestration and count aggregation
- atproto: OAuth (PKCE + DPoP) flows, token lifecycle and feed fetching
- model: Pydantic models for accounts, feed items and poll state
- resolve: DID resolution to handle and PDS endpoint
- store: Encrypted key/value storage and the account registry

Architecture Overview:
1. Authorization Flow:
   - The UI asks for an authorization URL, the PKCE coordinator stores a verifier keyed by state
   - The redirect page relays the code and state back, exactly one token exchange happens
   - The resulting account is persisted in the registry

2. Polling:
   - Registry changes trigger reconciliation of one recurring task per (account, feed kind)
   - Each tick fetches the feed with a DPoP bound access token, refreshing it when needed

3. Aggregation:
   - Unread deltas are computed against the last known count for the task
   - Newly arrived items and aggregate counts are pushed to subscribers
"""
