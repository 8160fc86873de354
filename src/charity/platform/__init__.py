"""
Charity Platform Services.

Recurring donation engine for charity operations:
- Recurring donation plans with pause/resume/cancel lifecycle
- Scheduled payment processing with retries and reconciliation
- Campaign rollups and recurring revenue dashboards
- Donor change requests with approval
"""

__version__ = "1.0.0"


def get_version() -> str:
    """Get platform services version."""
    return __version__
