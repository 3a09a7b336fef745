"""
M365 Admin Toolkit
==================
Parameterized administration commands for Microsoft 365 tenants and
on-premises Active Directory: mailbox conversion and permissions, group
membership, guest and site reports, NTFS ACLs and stale account clean-up.

Mutating commands run in DRY-RUN mode unless --apply is given.
"""

__version__ = "1.0.0"
__author__ = "M365 Admin Toolkit"
