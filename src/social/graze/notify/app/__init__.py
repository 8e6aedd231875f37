"""
Notify Application Layer

This package implements the long running process: configuration, the aiohttp server that
exposes the inter-process message surface, and the background machinery that polls
accounts and aggregates unread counts.

Key Components:
- cli.py: Entry point and logging configuration
- server.py: Web server construction, middleware and component wiring
- config.py: Configuration management using Pydantic settings
- tasks.py: Polling orchestrator and the health tick task
- counts.py: Diff and aggregation engine
- events.py: Fan-out of UI events to subscribers
- metrics.py: Metrics client abstraction
- handlers/: Request handlers for the OAuth and internal endpoints
"""
