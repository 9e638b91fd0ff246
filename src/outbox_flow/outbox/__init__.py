"""Outbox-driven orchestration of AI coding agents.

Why a local outbox instead of a hosted issue tracker?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Agents and the lead coordinate only through issues, labels and an
append-only event timeline. Keeping that state in one SQLite file means:

- Every state transition, verdict and blocked reason is a replayable event.
- The lead loop reads an incremental event cursor instead of polling an API.
- Quality signals (reviews, CI) are deduplicated by idempotency key in the
  same transaction that writes the timeline comment.

Workers never touch the database. The lead writes a context pack
(`work_order.json`, spec snapshot, `read_up_to` cursor) into a per-run
directory, runs the worker process, and turns the work result files back
into one Structured Comment. Stale results are detected by comparing the
run id against the active run recorded before the spawn.
"""
