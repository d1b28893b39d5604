"""
Ledger anchoring for MedRelay
Tamper-evident consent anchors on an EVM smart contract
"""

from .abi import CONSENT_CONTRACT_ABI
from .client import LedgerClient, LedgerReceipt

__all__ = [
    "CONSENT_CONTRACT_ABI",
    "LedgerClient",
    "LedgerReceipt",
]
