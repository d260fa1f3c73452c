"""
Service layer for the mailbox sync feature.
"""
