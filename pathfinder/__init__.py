"""
Pathfinder — Scheduling & Session Engine for a Community Habit Tracker
========================================================================
Computes when recurring practice events happen, drives the live phase
machine of an occurrence, splits participants into capacity-bounded
batches, and meters a daily browsing budget per device.

Package layout::

    pathfinder/
    ├── __main__.py        # `python -m pathfinder` → uvicorn
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Deployment-wide constants + formatting helpers
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # Events, batches, participants, kv store
    ├── engine/
    │   ├── timeutils.py   # "now" and local reset-boundary helpers
    │   ├── recurrence.py  # Recurrence rules + next-occurrence evaluator
    │   ├── phases.py      # Arrival / practice / close phase clock
    │   ├── batching.py    # Batch assignment with overflow rule
    │   ├── storage.py     # Key-value store protocol + in-memory store
    │   ├── budget.py      # Daily session budget clock
    │   ├── scheduler.py   # Cancellable periodic asyncio tasks
    │   └── views.py       # Live event / browsing view sessions
    ├── services/
    │   ├── event_service.py      # Event CRUD + status snapshots
    │   ├── batch_service.py      # Atomic joins + reassignment job
    │   ├── kv_store.py           # Persisted budget store + NOTIFY
    │   └── retention_service.py  # Finished-event cleanup
    └── api/
        ├── main.py        # FastAPI app + background jobs
        ├── deps.py        # Engine, config and caller identity
        └── routes/        # Event + batch endpoints
"""

__version__ = "0.1.0"
