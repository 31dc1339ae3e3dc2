"""
Authorization engine for the budget analyzer.

Time-scoped roles, permissions, resource grants and delegations with
governance-constrained mutation, cascading revocation, point-in-time queries
and an append-only audit log.
"""
__version__ = "0.1.0"
