"""Copy Trader - follows a leader account on a prediction market.

This service is responsible for:
- Polling the leader's public activity with adaptive backoff
- Sizing proportional copies within risk limits
- Recording copies in an append-only ledger
- Settling copies when the leader's positions close
- Serving state and an incremental feed to the local web UI
"""

__version__ = "0.1.0"
