"""
Governance: who may grant, revoke and define roles and permissions.
"""
