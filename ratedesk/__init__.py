"""
RateDesk Exchange-Rate Engine

Pricing and deal-execution core for a partner exchange-rate desk: fixed
spread pricing over spot rates, volatility analysis of P2P deltas, and an
auditable deal lifecycle executed against P2P counterparties.
"""

__version__ = "0.1.0"
__author__ = "ratedesk"
