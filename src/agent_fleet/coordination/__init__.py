"""Lease-based coordination of worker agents over a shared backlog.

There is no coordinator process. Every agent runs its own execution loop
against the same claim store on one host, and exclusivity comes from the
store's create-if-absent under an advisory file lock plus atomic replace on
every write. A lease outlives a crashed agent by at most its TTL, so the
store needs no liveness protocol of its own.

Durable agent sessions live in SQLite. That lets operator commands from a
separate CLI process (pause, stop, reassign) reach loops hosted elsewhere:
loops re-read their session on each tick and on each completion poll.
"""
