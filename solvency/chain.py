"""web3 adapters: the custody ledger reader and the on-chain proof registry."""

from __future__ import annotations

import logging
from typing import Any

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from solvency.encoding import hash_to_bytes, to_hex
from solvency.errors import (
    PublishFailedError,
    PublishTimeoutError,
    RegistryReadError,
    ReserveReadError,
)
from solvency.models import PublishedRecord, WriteReceipt

logger = logging.getLogger(__name__)

_B32 = "bytes32"
RECEIPT_TIMEOUT_S = 120

SOLVENCY_VERIFIER_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "publishProof",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "epochId", "type": _B32},
            {"name": "merkleRoot", "type": _B32},
            {"name": "timestamp", "type": "uint256"},
            {"name": "isSolvent", "type": "bool"},
            {"name": "commitment", "type": _B32},
            {"name": "witnessHash", "type": _B32},
            {"name": "reservesCommitment", "type": _B32},
            {"name": "liabilitiesCommitment", "type": _B32},
            {"name": "solvencyAssertion", "type": _B32},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "proofExists",
        "stateMutability": "view",
        "inputs": [{"name": "epochId", "type": _B32}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "getDetailedProof",
        "stateMutability": "view",
        "inputs": [{"name": "epochId", "type": _B32}],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "merkleRoot", "type": _B32},
                    {"name": "timestamp", "type": "uint256"},
                    {"name": "isSolvent", "type": "bool"},
                    {"name": "commitment", "type": _B32},
                    {"name": "witnessHash", "type": _B32},
                    {"name": "reservesCommitment", "type": _B32},
                    {"name": "liabilitiesCommitment", "type": _B32},
                    {"name": "solvencyAssertion", "type": _B32},
                    {"name": "publisher", "type": "address"},
                    {"name": "blockNumber", "type": "uint256"},
                    {"name": "verified", "type": "bool"},
                ],
            }
        ],
    },
    {
        "type": "event",
        "name": "ProofPublished",
        "anonymous": False,
        "inputs": [
            {"name": "epochId", "type": _B32, "indexed": True},
            {"name": "merkleRoot", "type": _B32, "indexed": True},
            {"name": "isSolvent", "type": "bool", "indexed": False},
            {"name": "publisher", "type": "address", "indexed": False},
            {"name": "timestamp", "type": "uint256", "indexed": False},
        ],
    },
]


def connect(rpc_url: str, *, timeout_s: float = 30.0) -> Web3:
    return Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout_s}))


class AccountSigner:
    """Signs registry transactions with a local private key."""

    def __init__(self, account: LocalAccount) -> None:
        self.account = account

    @classmethod
    def from_key(cls, private_key: str) -> AccountSigner:
        return cls(Account.from_key(private_key))

    @property
    def identity(self) -> str:
        return self.account.address

    def sign_transaction(self, tx: dict[str, Any]) -> bytes:
        return self.account.sign_transaction(tx).raw_transaction


class Web3LedgerReader:
    def __init__(self, w3: Web3, *, expected_chain_id: int | None = None) -> None:
        self.w3 = w3
        self.expected_chain_id = expected_chain_id
        self._chain_checked = False

    def chain_id(self) -> int:
        return int(self.w3.eth.chain_id)

    def get_balance(self, account: str) -> int:
        try:
            if self.expected_chain_id is not None and not self._chain_checked:
                actual = self.chain_id()
                if actual != self.expected_chain_id:
                    logger.warning("Connected to chain %d, expected %d", actual, self.expected_chain_id)
                self._chain_checked = True
            return int(self.w3.eth.get_balance(Web3.to_checksum_address(account)))
        except Exception as exc:
            raise ReserveReadError(f"get_balance({account}) failed: {exc}") from exc


class Web3Registry:
    """The SolvencyVerifier contract as a write-once proof registry."""

    def __init__(self, w3: Web3, contract_address: str, *, chain_id: int | None = None) -> None:
        self.w3 = w3
        self.chain_id = chain_id
        self.contract = w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=SOLVENCY_VERIFIER_ABI,
        )

    def exists(self, key: str) -> bool:
        try:
            return bool(self.contract.functions.proofExists(hash_to_bytes(key)).call())
        except Exception as exc:
            raise RegistryReadError(f"proofExists({key}) failed: {exc}") from exc

    def read(self, key: str) -> PublishedRecord | None:
        if not self.exists(key):
            return None
        try:
            raw = self.contract.functions.getDetailedProof(hash_to_bytes(key)).call()
        except Exception as exc:
            raise RegistryReadError(f"getDetailedProof({key}) failed: {exc}") from exc
        (
            merkle_root,
            timestamp,
            is_solvent,
            commitment,
            witness_digest,
            reserves_commit,
            liabilities_commit,
            assertion,
            publisher,
            block_number,
            verified,
        ) = raw
        return PublishedRecord(
            epoch_key=key,
            merkle_root=to_hex(bytes(merkle_root)),
            timestamp=int(timestamp),
            is_solvent=bool(is_solvent),
            master_commitment=to_hex(bytes(commitment)),
            witness_hash=to_hex(bytes(witness_digest)),
            reserves_commitment=to_hex(bytes(reserves_commit)),
            liabilities_commitment=to_hex(bytes(liabilities_commit)),
            solvency_assertion=to_hex(bytes(assertion)),
            publisher=str(publisher),
            verified=bool(verified),
            block_number=int(block_number),
        )

    def write(
        self,
        record: PublishedRecord,
        signer: AccountSigner,
        *,
        timeout: float | None = None,
    ) -> WriteReceipt:
        sender = signer.identity
        try:
            tx_params: dict[str, Any] = {
                "from": sender,
                "nonce": self.w3.eth.get_transaction_count(sender),
            }
            if self.chain_id is not None:
                tx_params["chainId"] = self.chain_id
            tx = self.contract.functions.publishProof(
                hash_to_bytes(record.epoch_key),
                hash_to_bytes(record.merkle_root),
                record.timestamp,
                record.is_solvent,
                hash_to_bytes(record.master_commitment),
                hash_to_bytes(record.witness_hash),
                hash_to_bytes(record.reserves_commitment),
                hash_to_bytes(record.liabilities_commitment),
                hash_to_bytes(record.solvency_assertion),
            ).build_transaction(tx_params)
            tx_hash = self.w3.eth.send_raw_transaction(signer.sign_transaction(tx))
        except ContractLogicError as exc:
            raise PublishFailedError(
                None, f"publishProof reverted: {exc}", epoch_key=record.epoch_key
            ) from exc
        except Exception as exc:
            raise PublishFailedError(
                None, f"submitting publishProof failed: {exc}", epoch_key=record.epoch_key
            ) from exc

        tx_hex = to_hex(bytes(tx_hash))
        wait = timeout or RECEIPT_TIMEOUT_S
        logger.info("publishProof sent in tx %s, waiting for receipt", tx_hex)
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=wait)
        except TimeExhausted as exc:
            raise PublishTimeoutError(
                None, f"no receipt for {tx_hex} within {wait}s", epoch_key=record.epoch_key
            ) from exc
        except Exception as exc:
            raise PublishFailedError(
                None, f"waiting for {tx_hex} failed: {exc}", epoch_key=record.epoch_key
            ) from exc

        if receipt["status"] != 1:
            raise PublishFailedError(
                None, f"transaction {tx_hex} reverted", epoch_key=record.epoch_key
            )
        return WriteReceipt(tx_hash=tx_hex, block_number=int(receipt["blockNumber"]), publisher=sender)
