"""web3 access to the CertificateVerification contract.

The contract is treated as an opaque ledger: this module only knows its
call signatures and the two events it emits.
"""
import json
import logging
import os
import time
from dataclasses import dataclass

from web3 import Web3
from web3.exceptions import (
    ContractLogicError,
    InvalidEventABI,
    LogTopicError,
    MismatchedABI,
    TimeExhausted,
    Web3Exception,
)

from certledger.errors import ExternalDependencyFailure, LinkageExtractionFailure, NotFound

logger = logging.getLogger(__name__)

ABI_PATH = os.path.join(os.path.dirname(__file__), "CertificateVerification.json")
ROLES = {"ISSUER_ROLE", "ADMIN_ROLE", "DEFAULT_ADMIN_ROLE"}
LOG_CHUNK_BLOCKS = 5000

_RPC_ERRORS = (Web3Exception, ValueError, OSError)


def _hex(value):
    if isinstance(value, str):
        value = value.lower()
        return value if value.startswith("0x") else "0x" + value
    return Web3.to_hex(value)


def load_abi(path=ABI_PATH):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


@dataclass(frozen=True)
class IssuedEvent:
    ledger_id: int
    tx_hash: str
    block_number: int
    content_id: str
    student_id: str
    certificate_type: str


@dataclass(frozen=True)
class LedgerCertificate:
    ledger_id: int
    student_address: str
    student_id: str
    student_name: str
    certificate_type: str
    course_name: str
    grade: str
    content_id: str
    issued_at: int
    issuer: str
    revoked: bool
    revoked_at: int
    revoked_reason: str


class LedgerGateway:
    def __init__(self, w3, contract_address, abi=None, private_key=None, chain_id=None, poll_interval=1.0):
        self.w3 = w3
        self.contract = w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=abi or load_abi(),
        )
        self.chain_id = int(chain_id) if chain_id is not None else None
        self.poll_interval = poll_interval
        self._account = w3.eth.account.from_key(private_key) if private_key else None

    @classmethod
    def from_provider(cls, provider_url, contract_address, **kwargs):
        return cls(Web3(Web3.HTTPProvider(provider_url)), contract_address, **kwargs)

    @property
    def sender(self):
        if self._account is not None:
            return self._account.address
        if self.w3.eth.default_account:
            return self.w3.eth.default_account
        accounts = self.w3.eth.accounts
        if not accounts:
            raise ExternalDependencyFailure("No signing account available for ledger transactions")
        return accounts[0]

    # ---------------- TRANSACTIONS ----------------
    def _send(self, fn, action):
        try:
            if self._account is not None:
                tx = fn.build_transaction({
                    "from": self._account.address,
                    "nonce": self.w3.eth.get_transaction_count(self._account.address, "pending"),
                    "chainId": self.chain_id or self.w3.eth.chain_id,
                })
                signed = self._account.sign_transaction(tx)
                tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            else:
                tx_hash = fn.transact({"from": self.sender})
        except _RPC_ERRORS as e:
            logger.warning("ledger %s submission failed: %s", action, e)
            raise ExternalDependencyFailure(f"Ledger {action} submission failed: {e}") from e
        tx_hex = _hex(tx_hash)
        logger.info("ledger %s submitted tx=%s", action, tx_hex)
        return tx_hex

    def submit_issuance(self, recipient, student_id, student_name, type_name, course_name, grade, content_id):
        fn = self.contract.functions.issueCertificate(
            Web3.to_checksum_address(recipient),
            str(student_id),
            student_name,
            type_name,
            course_name,
            grade,
            content_id,
        )
        return self._send(fn, "issuance")

    def submit_revocation(self, ledger_id, reason):
        return self._send(self.contract.functions.revokeCertificate(int(ledger_id), reason), "revocation")

    def await_receipt(self, tx_hash, confirmations=1, timeout=120.0):
        """Wait for inclusion plus ``confirmations`` blocks, bounded by ``timeout`` seconds."""
        deadline = time.monotonic() + timeout
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=self.poll_interval
            )
        except TimeExhausted as e:
            raise ExternalDependencyFailure(
                f"Transaction {tx_hash} not mined within {timeout}s", tx_hash=tx_hash
            ) from e
        except _RPC_ERRORS as e:
            raise ExternalDependencyFailure(f"Receipt lookup failed: {e}", tx_hash=tx_hash) from e

        if receipt["status"] == 0:
            raise ExternalDependencyFailure("Transaction reverted on-chain", tx_hash=tx_hash)

        while confirmations > 1:
            depth = self.w3.eth.block_number - receipt["blockNumber"] + 1
            if depth >= confirmations:
                break
            if time.monotonic() >= deadline:
                raise ExternalDependencyFailure(
                    f"Transaction {tx_hash} has {depth} of {confirmations} confirmations after {timeout}s",
                    tx_hash=tx_hash,
                )
            time.sleep(self.poll_interval)
        return receipt

    # ---------------- EVENTS ----------------
    def _ids_from_filter(self, receipt, tx_hash):
        block = receipt["blockNumber"]
        events = self.contract.events.CertificateIssued().get_logs(from_block=block, to_block=block)
        return [
            int(ev["args"]["certificateId"])
            for ev in events
            if _hex(ev["transactionHash"]) == tx_hash
        ]

    def _ids_from_receipt_logs(self, receipt):
        event = self.contract.events.CertificateIssued()
        ids = []
        for log in receipt.get("logs", []):
            address = log.get("address")
            if address and Web3.to_checksum_address(address) != self.contract.address:
                continue
            try:
                decoded = event.process_log(log)
            except (MismatchedABI, LogTopicError, InvalidEventABI):
                continue
            ids.append(int(decoded["args"]["certificateId"]))
        return ids

    def extract_issued_id(self, receipt):
        """Return the ledger id assigned by the issuance in ``receipt``.

        Tries an event filter over the receipt's block first, then decodes
        the receipt logs directly. The last matching event wins.
        """
        tx_hash = _hex(receipt["transactionHash"])
        ids = []
        try:
            ids = self._ids_from_filter(receipt, tx_hash)
        except _RPC_ERRORS as e:
            logger.warning("event filter query failed for tx=%s: %s", tx_hash, e)
        if not ids:
            ids = self._ids_from_receipt_logs(receipt)
        if not ids:
            raise LinkageExtractionFailure(
                "Transaction succeeded but no CertificateIssued event could be decoded",
                tx_hash=tx_hash,
            )
        return ids[-1]

    def issued_events(self, from_block=0, to_block=None):
        if to_block is None:
            to_block = self.w3.eth.block_number
        event = self.contract.events.CertificateIssued()
        start = from_block
        while start <= to_block:
            end = min(start + LOG_CHUNK_BLOCKS - 1, to_block)
            try:
                logs = event.get_logs(from_block=start, to_block=end)
            except _RPC_ERRORS as e:
                raise ExternalDependencyFailure(f"Event query {start}-{end} failed: {e}") from e
            for ev in logs:
                args = ev["args"]
                yield IssuedEvent(
                    ledger_id=int(args["certificateId"]),
                    tx_hash=_hex(ev["transactionHash"]),
                    block_number=ev["blockNumber"],
                    content_id=args["ipfsHash"],
                    student_id=args["studentId"],
                    certificate_type=args["certificateType"],
                )
            start = end + 1

    # ---------------- READS ----------------
    def has_role(self, address, role="ISSUER_ROLE"):
        if role not in ROLES:
            raise ValueError(f"unknown contract role: {role}")
        try:
            role_id = getattr(self.contract.functions, role)().call()
            return bool(self.contract.functions.hasRole(role_id, Web3.to_checksum_address(address)).call())
        except _RPC_ERRORS as e:
            raise ExternalDependencyFailure(f"Role lookup failed: {e}") from e

    def get_certificate(self, ledger_id):
        try:
            raw = self.contract.functions.getCertificate(int(ledger_id)).call()
        except ContractLogicError as e:
            raise NotFound(f"No ledger certificate with id {ledger_id}", ledger_id=ledger_id) from e
        except _RPC_ERRORS as e:
            raise ExternalDependencyFailure(f"Ledger read failed: {e}") from e
        return LedgerCertificate(
            ledger_id=int(raw[0]),
            student_address=raw[1],
            student_id=raw[2],
            student_name=raw[3],
            certificate_type=raw[4],
            course_name=raw[5],
            grade=raw[6],
            content_id=raw[7],
            issued_at=int(raw[8]),
            issuer=raw[9],
            revoked=bool(raw[10]),
            revoked_at=int(raw[11]),
            revoked_reason=raw[12],
        )
