"""
Directory Identity Sync - Reconcile local identities with Active Directory accounts.

This package synchronizes the members of Active Directory security groups into a
local identity store, creating, updating, enabling and disabling local accounts
so they agree with the directory.
"""

__version__ = "1.0.0"
__author__ = "Directory Identity Sync Team"
