"""
Decision cache package.

Stores access decisions per (user, resource) with a bounded TTL.
Invalidation stamps make sure a decision computed before an invalidation
is never served or stored afterwards.
"""
