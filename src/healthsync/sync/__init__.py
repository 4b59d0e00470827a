"""Sync infrastructure for the health-data collector.

Modules:
    store      — Persisted key-value settings (getSetting / setSetting)
    checkpoint — Per-stream watermark persistence (monotonic)
    dedup      — Upload ledger: content fingerprints per upload path
    engine     — Incremental sync pass: query → normalize → bucket → batch
    backfill   — Resumable year/month/day backfill progress grid
    scheduler  — SyncManager: throttle, upload with retry, commit-after-confirm
"""
