"""
DelayClaw Runtime - wiring of settings, clients and signer.
"""

from delayclaw.runtime.context import SettlementContext

__all__ = ["SettlementContext"]
