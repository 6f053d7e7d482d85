"""
M365 Tenant Automation
======================
Administrative procedures for a Microsoft 365 tenant:
  - room resource account provisioning
  - mailbox-category group reconciliation
  - sign-in inactivity reporting

Writes are restricted to an allow-list and recorded in a change audit;
--dry-run records them without sending.
"""

__version__ = "1.0.0"
__author__ = "M365 Tenant Automation"
