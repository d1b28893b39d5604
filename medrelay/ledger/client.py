"""
Ledger client for MedRelay
Creates, signs and queries consent anchors on the ConsentContract via web3.py

Every public call makes at most one attempt. Blind retries against a
contract that mutates global state on each call could double-anchor a
record, so retry decisions belong to reconciliation in the coordinator.
"""

from dataclasses import dataclass
from typing import Any, Optional, Tuple
import structlog
from eth_account import Account
from requests.exceptions import RequestException
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception
from web3.logs import DISCARD

from .abi import CONSENT_CONTRACT_ABI
from ..config import MedRelayConfig
from ..constants import LedgerDefaults
from ..exceptions import (
    LedgerRejected,
    LedgerUnavailable,
    LedgerUnconfigured,
    ValidationError,
)
from ..utils.validators import validate_tx_hash

logger = structlog.get_logger(__name__)

# Anything the provider or RPC node can throw at us once the call has left
TRANSPORT_ERRORS = (Web3Exception, RequestException, OSError, ValueError)


@dataclass(frozen=True)
class LedgerReceipt:
    """Outcome of a ledger write, applied to the record by the coordinator"""
    tx_hash: str
    consent_id: Optional[int] = None
    confirmed: bool = False
    block_number: Optional[int] = None


class LedgerClient:
    """Explicitly constructed binding to one ConsentContract deployment"""

    def __init__(
        self,
        contract_address: Optional[str] = None,
        rpc_url: str = LedgerDefaults.RPC_URL,
        operator_private_key: Optional[str] = None,
        sender_address: Optional[str] = None,
        request_timeout: float = LedgerDefaults.REQUEST_TIMEOUT_SECONDS,
        wait_for_receipt: bool = True,
        receipt_timeout: float = LedgerDefaults.RECEIPT_TIMEOUT_SECONDS,
        web3: Optional[Web3] = None,
    ):
        if contract_address and not Web3.is_address(contract_address):
            raise ValidationError("Invalid contract address", field="ledger_contract_address")
        if sender_address and not Web3.is_address(sender_address):
            raise ValidationError("Invalid sender address", field="ledger_sender_address")

        self.contract_address = (
            Web3.to_checksum_address(contract_address) if contract_address else None
        )
        self.sender_address = (
            Web3.to_checksum_address(sender_address) if sender_address else None
        )
        self.rpc_url = rpc_url
        self.request_timeout = request_timeout
        self.wait_for_receipt = wait_for_receipt
        self.receipt_timeout = receipt_timeout

        self._account = None
        if operator_private_key:
            try:
                self._account = Account.from_key(operator_private_key)
            except ValueError as e:
                raise ValidationError(
                    f"Invalid operator private key: {e}", field="ledger_operator_private_key"
                )

        self._w3 = web3
        self._contract: Any = None

    @classmethod
    def from_config(cls, config: MedRelayConfig) -> "LedgerClient":
        """Build a client from deployment configuration"""
        return cls(
            contract_address=config.ledger_contract_address,
            rpc_url=config.ledger_rpc_url,
            operator_private_key=config.ledger_operator_private_key,
            sender_address=config.ledger_sender_address,
            request_timeout=config.ledger_request_timeout_seconds,
            wait_for_receipt=config.ledger_wait_for_receipt,
            receipt_timeout=config.ledger_receipt_timeout_seconds,
        )

    @property
    def enabled(self) -> bool:
        return self.contract_address is not None

    # ==================== Binding ====================

    def _get_w3(self) -> Web3:
        if self._w3 is None:
            self._w3 = Web3(Web3.HTTPProvider(
                self.rpc_url, request_kwargs={"timeout": self.request_timeout}
            ))
        return self._w3

    def _get_contract(self, operation: str) -> Any:
        """Return the contract binding, short-circuiting when anchoring is disabled"""
        if not self.enabled:
            logger.debug("Ledger disabled, skipping call", operation=operation)
            raise LedgerUnconfigured(operation)
        if self._contract is None:
            self._contract = self._get_w3().eth.contract(
                address=self.contract_address, abi=CONSENT_CONTRACT_ABI
            )
        return self._contract

    def _sender(self, w3: Web3, operation: str) -> str:
        if self._account is not None:
            return self._account.address
        if self.sender_address:
            return self.sender_address
        default = w3.eth.default_account
        if isinstance(default, str) and default:
            return default
        # Node-managed signer, as with a local development chain
        accounts = w3.eth.accounts
        if not accounts:
            logger.warning("No ledger sender account available", operation=operation)
            raise LedgerUnavailable(operation, reason="no sender account available")
        return accounts[0]

    # ==================== Writes ====================

    def _execute(self, operation: str, fn: Any) -> Tuple[LedgerReceipt, Any]:
        """
        Preflight, submit and (optionally) await one contract write.

        Returns:
            The receipt summary and the raw receipt (None if unconfirmed)
        """
        w3 = self._get_w3()

        try:
            sender = self._sender(w3, operation)
            fn.call({"from": sender})
            if self._account is not None:
                tx = fn.build_transaction({
                    "from": sender,
                    "nonce": w3.eth.get_transaction_count(sender),
                })
                signed = self._account.sign_transaction(tx)
                raw_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            else:
                raw_hash = fn.transact({"from": sender})
        except ContractLogicError as e:
            logger.warning("Ledger call reverted", operation=operation, error=str(e))
            raise LedgerRejected(operation, reason=str(e))
        except TRANSPORT_ERRORS as e:
            logger.warning("Ledger call failed", operation=operation, error=str(e))
            raise LedgerUnavailable(operation, reason=str(e))

        tx_hash = Web3.to_hex(raw_hash)
        raw_receipt = self._await_receipt(w3, raw_hash, tx_hash, operation)

        receipt = LedgerReceipt(
            tx_hash=tx_hash,
            confirmed=raw_receipt is not None,
            block_number=raw_receipt["blockNumber"] if raw_receipt is not None else None,
        )
        logger.info("Ledger transaction submitted", operation=operation,
                    tx_hash=tx_hash, confirmed=receipt.confirmed)
        return receipt, raw_receipt

    def _await_receipt(self, w3: Web3, raw_hash: Any, tx_hash: str, operation: str) -> Any:
        """Wait for the receipt; a broadcast transaction is never reported as failed"""
        if not self.wait_for_receipt:
            return None

        try:
            raw_receipt = w3.eth.wait_for_transaction_receipt(
                raw_hash, timeout=self.receipt_timeout
            )
        except TimeExhausted:
            logger.warning("Ledger receipt not yet available", operation=operation, tx_hash=tx_hash)
            return None
        except TRANSPORT_ERRORS as e:
            logger.warning("Lost ledger connection awaiting receipt", operation=operation,
                           tx_hash=tx_hash, error=str(e))
            return None

        if raw_receipt["status"] != LedgerDefaults.RECEIPT_SUCCESS:
            logger.warning("Ledger transaction reverted", operation=operation, tx_hash=tx_hash)
            raise LedgerRejected(operation, reason=f"transaction {tx_hash} reverted")
        return raw_receipt

    def create_on_chain(self, patient_id: str, procedure_type: str,
                        description: str) -> LedgerReceipt:
        """
        Create the on-chain consent.

        The on-chain id is only known from the ConsentCreated event of a
        confirmed receipt; otherwise it is left unset and resolved later
        from the creation transaction.
        """
        operation = "createConsent"
        contract = self._get_contract(operation)
        fn = contract.functions.createConsent(patient_id, procedure_type, description)

        receipt, raw_receipt = self._execute(operation, fn)

        consent_id = None
        if raw_receipt is not None:
            consent_id = self._created_consent_id(contract, raw_receipt)
            if consent_id is None:
                logger.warning("Creation receipt carries no ConsentCreated event",
                               tx_hash=receipt.tx_hash)

        return LedgerReceipt(
            tx_hash=receipt.tx_hash,
            consent_id=consent_id,
            confirmed=receipt.confirmed,
            block_number=receipt.block_number,
        )

    def _created_consent_id(self, contract: Any, raw_receipt: Any) -> Optional[int]:
        try:
            events = contract.events.ConsentCreated().process_receipt(raw_receipt, errors=DISCARD)
        except TRANSPORT_ERRORS as e:
            logger.debug("Could not decode ConsentCreated event", error=str(e))
            return None
        if not events:
            return None
        return int(events[0]["args"]["consentId"])

    def sign_on_chain(self, consent_id: int) -> LedgerReceipt:
        """Record the signature against an existing on-chain consent"""
        operation = "signConsent"
        contract = self._get_contract(operation)
        receipt, _ = self._execute(operation, contract.functions.signConsent(int(consent_id)))
        return LedgerReceipt(
            tx_hash=receipt.tx_hash,
            consent_id=int(consent_id),
            confirmed=receipt.confirmed,
            block_number=receipt.block_number,
        )

    def reject_on_chain(self, consent_id: int) -> LedgerReceipt:
        """Record a rejection; only used when rejection anchoring is enabled"""
        operation = "rejectConsent"
        contract = self._get_contract(operation)
        receipt, _ = self._execute(operation, contract.functions.rejectConsent(int(consent_id)))
        return LedgerReceipt(
            tx_hash=receipt.tx_hash,
            consent_id=int(consent_id),
            confirmed=receipt.confirmed,
            block_number=receipt.block_number,
        )

    # ==================== Reads ====================

    def get_consent_status(self, consent_id: int) -> bool:
        """Whether the contract shows the consent as signed"""
        operation = "getConsentStatus"
        contract = self._get_contract(operation)
        try:
            return bool(contract.functions.getConsentStatus(int(consent_id)).call())
        except ContractLogicError as e:
            raise LedgerRejected(operation, reason=str(e))
        except TRANSPORT_ERRORS as e:
            logger.warning("Ledger read failed", operation=operation, error=str(e))
            raise LedgerUnavailable(operation, reason=str(e))

    def resolve_consent_id(self, tx_hash: str) -> Optional[int]:
        """
        On-chain id assigned by a createConsent transaction.

        Returns None while the transaction is not mined. A reverted
        transaction, or one without a ConsentCreated event, is rejected.
        """
        operation = "resolveConsentId"
        contract = self._get_contract(operation)
        tx_hash = validate_tx_hash(tx_hash)
        try:
            raw_receipt = self._get_w3().eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except TRANSPORT_ERRORS as e:
            logger.warning("Ledger read failed", operation=operation, error=str(e))
            raise LedgerUnavailable(operation, reason=str(e))

        if raw_receipt["status"] != LedgerDefaults.RECEIPT_SUCCESS:
            raise LedgerRejected(operation, reason=f"transaction {tx_hash} reverted")
        consent_id = self._created_consent_id(contract, raw_receipt)
        if consent_id is None:
            raise LedgerRejected(operation, reason=f"transaction {tx_hash} carries no ConsentCreated event")
        return consent_id

    def verify_transaction(self, tx_hash: str) -> bool:
        """
        Check that a transaction is known to the network.

        False means unconfirmed or not yet propagated, not invalid. Used for
        audit display only and never to gate a consent operation.
        """
        operation = "verifyTransaction"
        self._get_contract(operation)
        tx_hash = validate_tx_hash(tx_hash)
        try:
            return self._get_w3().eth.get_transaction(tx_hash) is not None
        except TransactionNotFound:
            return False
        except TRANSPORT_ERRORS as e:
            logger.warning("Ledger read failed", operation=operation, error=str(e))
            raise LedgerUnavailable(operation, reason=str(e))
