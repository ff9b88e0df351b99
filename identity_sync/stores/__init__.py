"""
Identity store modules.

Each module in this package provides one IdentityStoreBase subclass and is
selected with the ``store.module`` configuration key.
"""
