"""
Tests for the web3 ledger binding
"""

from unittest.mock import MagicMock

import pytest
from requests.exceptions import ConnectionError as RequestsConnectionError
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound

from medrelay.config import MedRelayConfig
from medrelay.exceptions import LedgerRejected, LedgerUnavailable, LedgerUnconfigured, ValidationError
from medrelay.ledger.client import LedgerClient

CONTRACT_ADDRESS = "0x" + "11" * 20
SENDER_ADDRESS = "0x" + "22" * 20
RAW_HASH = bytes.fromhex("12" * 32)
TX_HASH = "0x" + "12" * 32


class TestLedgerClientConfiguration:
    """Construction and the disabled mode"""

    def test_disabled_without_contract_address(self):
        client = LedgerClient()

        assert not client.enabled
        with pytest.raises(LedgerUnconfigured):
            client.create_on_chain("patient_001", "MRI", "MRI scan")
        with pytest.raises(LedgerUnconfigured):
            client.get_consent_status(1)
        with pytest.raises(LedgerUnconfigured):
            client.verify_transaction(TX_HASH)

    def test_invalid_contract_address(self):
        with pytest.raises(ValidationError):
            LedgerClient(contract_address="not-an-address")

    def test_invalid_private_key(self):
        with pytest.raises(ValidationError):
            LedgerClient(contract_address=CONTRACT_ADDRESS, operator_private_key="not-a-key")

    def test_address_is_checksummed(self):
        client = LedgerClient(contract_address=CONTRACT_ADDRESS)
        assert client.enabled
        assert client.contract_address.lower() == CONTRACT_ADDRESS

    def test_from_config(self):
        config = MedRelayConfig(
            ledger_contract_address=CONTRACT_ADDRESS,
            ledger_rpc_url="http://ledger.internal:8545",
            ledger_wait_for_receipt=False,
        )

        client = LedgerClient.from_config(config)

        assert client.enabled
        assert client.rpc_url == "http://ledger.internal:8545"
        assert client.wait_for_receipt is False


class TestLedgerClientWrites:
    """Contract writes against a mocked web3 binding"""

    def setup_method(self):
        self.w3 = MagicMock()
        self.contract = MagicMock()
        self.w3.eth.contract.return_value = self.contract
        self.w3.eth.wait_for_transaction_receipt.return_value = {"status": 1, "blockNumber": 42}
        self.events = self.contract.events.ConsentCreated.return_value
        self.events.process_receipt.return_value = [{"args": {"consentId": 9}}]

        self.create_fn = MagicMock()
        self.create_fn.call.return_value = 5
        self.create_fn.transact.return_value = RAW_HASH
        self.contract.functions.createConsent.return_value = self.create_fn

        self.sign_fn = MagicMock()
        self.sign_fn.call.return_value = None
        self.sign_fn.transact.return_value = RAW_HASH
        self.contract.functions.signConsent.return_value = self.sign_fn

        self.client = LedgerClient(
            contract_address=CONTRACT_ADDRESS,
            sender_address=SENDER_ADDRESS,
            web3=self.w3,
        )

    def test_create_confirmed_reads_consent_id_from_event(self):
        receipt = self.client.create_on_chain("patient_001", "MRI", "MRI scan")

        assert receipt.tx_hash == TX_HASH
        assert receipt.confirmed
        assert receipt.consent_id == 9
        assert receipt.block_number == 42
        self.contract.functions.createConsent.assert_called_once_with("patient_001", "MRI", "MRI scan")
        self.create_fn.transact.assert_called_once()
        assert self.create_fn.transact.call_args[0][0]["from"].lower() == SENDER_ADDRESS

    def test_create_without_event_leaves_id_unset(self):
        self.events.process_receipt.return_value = []

        receipt = self.client.create_on_chain("patient_001", "MRI", "MRI scan")

        assert receipt.confirmed
        assert receipt.consent_id is None

    def test_create_unconfirmed_on_receipt_timeout(self):
        self.w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted()

        receipt = self.client.create_on_chain("patient_001", "MRI", "MRI scan")

        assert not receipt.confirmed
        assert receipt.tx_hash == TX_HASH
        assert receipt.consent_id is None

    def test_create_without_waiting(self):
        self.client.wait_for_receipt = False

        receipt = self.client.create_on_chain("patient_001", "MRI", "MRI scan")

        assert not receipt.confirmed
        self.w3.eth.wait_for_transaction_receipt.assert_not_called()

    def test_missing_sender_account_is_unavailable(self):
        self.client.sender_address = None
        self.w3.eth.accounts = []

        with pytest.raises(LedgerUnavailable) as exc_info:
            self.client.create_on_chain("patient_001", "MRI", "MRI scan")

        assert exc_info.value.details["operation"] == "createConsent"
        self.create_fn.call.assert_not_called()
        self.create_fn.transact.assert_not_called()

    def test_node_account_used_as_sender(self):
        self.client.sender_address = None
        self.w3.eth.accounts = [SENDER_ADDRESS]

        self.client.sign_on_chain(3)

        assert self.sign_fn.transact.call_args[0][0]["from"] == SENDER_ADDRESS

    def test_reverted_preflight_is_rejected_without_sending(self):
        self.create_fn.call.side_effect = ContractLogicError("execution reverted")

        with pytest.raises(LedgerRejected):
            self.client.create_on_chain("patient_001", "MRI", "MRI scan")

        self.create_fn.transact.assert_not_called()

    def test_transport_failure_is_unavailable(self):
        self.create_fn.transact.side_effect = RequestsConnectionError("connection refused")

        with pytest.raises(LedgerUnavailable) as exc_info:
            self.client.create_on_chain("patient_001", "MRI", "MRI scan")

        assert exc_info.value.details["operation"] == "createConsent"

    def test_reverted_receipt_is_rejected(self):
        self.w3.eth.wait_for_transaction_receipt.return_value = {"status": 0, "blockNumber": 43}

        with pytest.raises(LedgerRejected):
            self.client.sign_on_chain(3)

    def test_sign_on_chain(self):
        receipt = self.client.sign_on_chain(3)

        self.contract.functions.signConsent.assert_called_once_with(3)
        assert receipt.consent_id == 3
        assert receipt.confirmed
        assert self.sign_fn.transact.call_count == 1

    def test_operator_key_signs_locally(self):
        account = MagicMock()
        account.address = SENDER_ADDRESS
        account.sign_transaction.return_value = MagicMock(raw_transaction=b"signed-tx")
        self.client._account = account
        self.sign_fn.build_transaction.return_value = {"to": CONTRACT_ADDRESS}
        self.w3.eth.get_transaction_count.return_value = 4
        self.w3.eth.send_raw_transaction.return_value = RAW_HASH

        receipt = self.client.sign_on_chain(3)

        assert receipt.tx_hash == TX_HASH
        self.sign_fn.build_transaction.assert_called_once_with({"from": SENDER_ADDRESS, "nonce": 4})
        self.w3.eth.send_raw_transaction.assert_called_once_with(b"signed-tx")
        self.sign_fn.transact.assert_not_called()


class TestLedgerClientReads:
    """Read-only contract and network queries"""

    def setup_method(self):
        self.w3 = MagicMock()
        self.contract = MagicMock()
        self.w3.eth.contract.return_value = self.contract
        self.client = LedgerClient(contract_address=CONTRACT_ADDRESS, web3=self.w3)

    def test_get_consent_status(self):
        self.contract.functions.getConsentStatus.return_value.call.return_value = True

        assert self.client.get_consent_status(3) is True
        self.contract.functions.getConsentStatus.assert_called_once_with(3)

    def test_get_consent_status_unavailable(self):
        self.contract.functions.getConsentStatus.return_value.call.side_effect = OSError("network down")

        with pytest.raises(LedgerUnavailable):
            self.client.get_consent_status(3)

    def test_verify_known_transaction(self):
        self.w3.eth.get_transaction.return_value = {"hash": RAW_HASH, "blockNumber": 42}

        assert self.client.verify_transaction(TX_HASH.upper().replace("0X", "0x")) is True
        self.w3.eth.get_transaction.assert_called_once_with(TX_HASH)

    def test_verify_unknown_transaction(self):
        self.w3.eth.get_transaction.side_effect = TransactionNotFound("not found")

        assert self.client.verify_transaction(TX_HASH) is False

    def test_verify_rejects_malformed_hash(self):
        with pytest.raises(ValidationError):
            self.client.verify_transaction("0x1234")
        self.w3.eth.get_transaction.assert_not_called()

    def test_resolve_consent_id_from_mined_creation(self):
        self.w3.eth.get_transaction_receipt.return_value = {"status": 1, "blockNumber": 42}
        events = self.contract.events.ConsentCreated.return_value
        events.process_receipt.return_value = [{"args": {"consentId": 12}}]

        assert self.client.resolve_consent_id(TX_HASH) == 12
        self.w3.eth.get_transaction_receipt.assert_called_once_with(TX_HASH)

    def test_resolve_consent_id_while_unmined(self):
        self.w3.eth.get_transaction_receipt.side_effect = TransactionNotFound("not found")

        assert self.client.resolve_consent_id(TX_HASH) is None

    def test_resolve_consent_id_without_event_is_rejected(self):
        self.w3.eth.get_transaction_receipt.return_value = {"status": 1, "blockNumber": 42}
        self.contract.events.ConsentCreated.return_value.process_receipt.return_value = []

        with pytest.raises(LedgerRejected):
            self.client.resolve_consent_id(TX_HASH)

    def test_resolve_consent_id_of_reverted_creation_is_rejected(self):
        self.w3.eth.get_transaction_receipt.return_value = {"status": 0, "blockNumber": 42}

        with pytest.raises(LedgerRejected):
            self.client.resolve_consent_id(TX_HASH)
