"""Integration tests for the ballot store backends.

Covers the PostgreSQL ballot store (casting transaction, schema constraints,
aggregation) and the Redis verification code store. Tests skip themselves
when the backing service is unreachable.
"""
