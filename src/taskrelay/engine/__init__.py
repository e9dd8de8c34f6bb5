"""Task graph engine with file-backed state and cross-process locking.

Why not a workflow engine (Airflow / Prefect / Luigi)?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The engine never runs task work. It only decides which subtasks a caller
may dispatch next and records what happened to them, so that an external
dispatcher (an agent or a human) can hand out one batch at a time, report
back, crash, and pick up again later.  The whole persistent state is one
human-readable Markdown document plus a few sidecar files under
``.taskrelay/``; every mutation is a lock-guarded read-modify-write of that
document.  A scheduler with its own executor, database and daemon would
bring far more machinery than this single-machine, CLI-first control plane
needs.
"""
