"""Schema package exports."""

from .credits import CreditAccount, CreditLedgerEntry, LedgerReason
from .notifications import RenderNotification
from .render_jobs import RenderJob

__all__ = ["CreditAccount", "CreditLedgerEntry", "LedgerReason", "RenderJob", "RenderNotification"]
