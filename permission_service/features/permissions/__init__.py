"""
Permission engine feature module.

Temporal role, permission and resource grants, the effective-permission
engine and point-in-time queries.
"""
