"""Human Coordination Protocol (HCP) coordinator.

Agents submit requests that need a human decision; this package tracks each
request through its lifecycle:
- configuration loaded from `.env`
- structured logging
- an audited, compare-and-swap state machine over SQLite
- routing, timeout fallbacks and escalation
- real-time fanout of state changes
"""

__version__ = "0.1.0"

from hcp_coordinator.coordinator.config import CoordinatorSettings

__all__ = ["__version__", "CoordinatorSettings"]
