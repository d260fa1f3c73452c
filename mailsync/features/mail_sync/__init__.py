"""
Mailbox sync feature package.

Keeps every layer of the Gmail mirroring flow co-located: domain models,
repositories, the reconciler/planner services and the queue job processors.
"""
