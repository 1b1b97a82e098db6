"""
Rule Store package: PostgreSQL (JSONB configuration) and in-memory backends.
"""
