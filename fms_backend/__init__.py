"""
FMS backend: filesystem and tag indexing with a queryable full-text store.
"""
