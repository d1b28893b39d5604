"""
ABI for the ConsentContract
"""

from typing import Any, Dict, List

CONSENT_CONTRACT_ABI: List[Dict[str, Any]] = [
    {
        "inputs": [
            {"internalType": "string", "name": "_patientId", "type": "string"},
            {"internalType": "string", "name": "_procedureType", "type": "string"},
            {"internalType": "string", "name": "_description", "type": "string"},
        ],
        "name": "createConsent",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "_consentId", "type": "uint256"}],
        "name": "signConsent",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "_consentId", "type": "uint256"}],
        "name": "rejectConsent",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "_consentId", "type": "uint256"}],
        "name": "getConsentStatus",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "uint256", "name": "consentId", "type": "uint256"},
            {"indexed": False, "internalType": "string", "name": "patientId", "type": "string"},
        ],
        "name": "ConsentCreated",
        "type": "event",
    },
]
