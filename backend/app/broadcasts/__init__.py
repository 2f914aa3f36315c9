"""
broadcasts — Tourist-safety broadcast delivery system.

Sub-modules:
    models      — Data structures shared across the system
    store       — Broadcast / delivery-record persistence with version check-and-set
    sql_store   — SQLAlchemy-backed store
    audience    — Recipient directory and audience resolution
    channels/   — Per-channel delivery adapters (push, email, SMS, in-app)
    lifecycle   — Broadcast status machine
    tracker     — Delivery-record state machine, receipts, acknowledgments, stats
    dispatcher  — Concurrent fan-out with per-channel limits and retry
    scheduler   — Releases scheduled broadcasts, expires stale ones, re-notifies
    templates   — Reusable message templates
    service     — Facade used by the HTTP layer
"""
