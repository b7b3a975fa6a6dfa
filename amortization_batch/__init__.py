"""
Batch layer: the daily posting run and the token refresh sweep.

Imports from amortization_kernel; nothing in the kernel imports from here.
"""

from amortization_batch.orchestrator import PostingOrchestrator
from amortization_batch.token_refresh import TokenRefreshSweep

__all__ = ["PostingOrchestrator", "TokenRefreshSweep"]
