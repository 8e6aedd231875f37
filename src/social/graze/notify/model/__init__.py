"""
Data Models

This package defines the data structures shared by the notify service. Unlike a database
backed service these are plain pydantic models serialized into the encrypted key/value store.

Key Models:
- account.py: The canonical Account and the PendingAuthorization record
- feed.py: Feed kinds, notification and conversation items, fetch results
- poll.py: Per (account, feed kind) poll state and aggregate counts
- health.py: Health monitoring gauge

Accounts are immutable once built. Token rotation produces a new Account value through
`Account.with_tokens`, and only the token manager creates accounts.
"""
