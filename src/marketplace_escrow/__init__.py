"""Marketplace escrow core.

Order lifecycle, payment processing and escrow holds for a player-to-player
marketplace:
- Payment provider adapters (mock simulator, Stripe)
- Transaction journal (append-only record of provider interactions)
- Escrow ledger (holds, release, dispute, refund, auto-release sweep)
- Order state machine (permissions and status transitions)
"""

__version__ = "0.1.0"
