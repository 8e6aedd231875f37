"""
Storage Layer

- secure.py: Namespaced, encrypted async key/value storage backed by Redis, plus the
  consume-once token abstraction used for PKCE verifiers and callback idempotency
- accounts.py: The durable account registry and its change notifications
"""
