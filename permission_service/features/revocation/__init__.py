"""
Cascading revocation on soft-delete.
"""
