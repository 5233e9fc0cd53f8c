"""
Warden - Account Security Workflows

Sessions with rotating refresh tokens, attempt-limited verification
tokens, password resets, administrative suspensions with appeals, and a
hash-chained audit log, all on one relational store.
"""

__version__ = "0.1.0"
