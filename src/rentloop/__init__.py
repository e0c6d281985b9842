"""rentloop — rental transaction and escrow ledger engine.

Peer-to-peer rentals with escrowed payments: owners list items, renters
request time-boxed rentals and pay through a gateway, and funds stay in
escrow until both parties confirm the handover and the return.
"""

__version__ = "0.1.0"
