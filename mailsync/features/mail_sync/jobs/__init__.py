"""
Queue job processors and scheduled jobs for the mailbox sync feature.
"""
