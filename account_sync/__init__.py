"""
Account Sync - Bulk create, update and delete user accounts against an identity provider.

This package provides a resilient batch engine that walks a dataset or the
provider's own account listing, applies one mutation per account, and keeps
an auditable record of what succeeded, what already existed and what failed.
"""

__version__ = "1.0.0"
__author__ = "Account Sync Team"
