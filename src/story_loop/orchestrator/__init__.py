"""Story orchestrator driving an external coding agent over a task file.

Why not a task queue?
~~~~~~~~~~~~~~~~~~~~~
The work items live in a single ``prd.json`` that the user edits by hand and
the agent reads back, and every attempt mutates a git checkout. What matters
is not queuing but the boundary between the loop and the agent process:

- Batch selection by priority, bounded concurrency or dependency analysis.
- One git worktree per concurrent attempt, merged back serially.
- Attempt accounting that survives restarts via persisted run records.
- Live fan-out of agent events to any number of slow or fast observers.

All of this runs on one machine with plain threads and JSON files, so a
broker would add an operational dependency without removing any of the above.
"""
