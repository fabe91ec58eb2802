"""
Payments subsystem package.

Provides:
- Configuration & provider endpoints for the stablecoin POS flow
- Core domain enums, models & the order/payment state machine
- Signal sources (chain log scanner, transfer-provider client, webhook decoding)
- Reconciliation engine converging each order to a terminal state exactly once
- Application-level HTTP surface for the POS terminal
"""
