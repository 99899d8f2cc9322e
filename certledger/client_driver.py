"""Issuer-side driver for the multi-step issuance.

The signing key lives with the issuer, so the ledger transaction and the
metadata publish run here rather than on the server. The server only sees
step 1 (create PENDING row) and step 3 (attach linkage); step 3 is
idempotent and therefore retried on transport errors.
"""
import logging
import time
from dataclasses import dataclass

import requests

from certledger.errors import (
    ConfigurationMissing,
    ExternalDependencyFailure,
    InvalidState,
    LifecycleError,
    LinkageExtractionFailure,
    NotFound,
    ValidationFailed,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {502, 503, 504}

_ERROR_KINDS = {
    cls.kind: cls
    for cls in (NotFound, InvalidState, ConfigurationMissing, ExternalDependencyFailure, ValidationFailed)
}


@dataclass
class DriverOutcome:
    certificate_id: int
    certificate_number: str
    ledger_id: int
    tx_hash: str
    content_id: str
    metadata_url: str


class IssuanceDriver:
    def __init__(self, api_base_url, token, metadata_store, ledger, confirmations=1, tx_timeout=120.0,
                 attach_attempts=5, backoff_seconds=0.5, http_timeout=30, session=None, sleep=time.sleep):
        self.api_base_url = api_base_url.rstrip("/")
        self.metadata_store = metadata_store
        self.ledger = ledger
        self.confirmations = confirmations
        self.tx_timeout = tx_timeout
        self.attach_attempts = attach_attempts
        self.backoff_seconds = backoff_seconds
        self.http_timeout = http_timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {token}"})
        self._sleep = sleep

    def _raise_for_api_error(self, response):
        if response.ok:
            return
        try:
            body = response.json()
        except ValueError:
            body = {}
        message = body.get("message") or body.get("error") or response.reason
        error_cls = _ERROR_KINDS.get(body.get("error"), LifecycleError)
        raise error_cls(message, status=response.status_code)

    def request_issuance(self, request):
        try:
            response = self.session.post(
                f"{self.api_base_url}/api/certificates",
                json=request.model_dump(),
                timeout=self.http_timeout,
            )
        except requests.RequestException as e:
            raise ExternalDependencyFailure(f"Issuance request failed: {e}") from e
        self._raise_for_api_error(response)
        return response.json()

    def attach(self, certificate_id, ledger_id, tx_hash, content_id, metadata_url):
        payload = {
            "blockchain_id": ledger_id,
            "transaction_hash": tx_hash,
            "ipfs_hash": content_id,
            "ipfs_metadata_url": metadata_url,
        }
        url = f"{self.api_base_url}/api/certificates/{certificate_id}/blockchain"
        last_error = None
        for attempt in range(1, self.attach_attempts + 1):
            try:
                response = self.session.put(url, json=payload, timeout=self.http_timeout)
            except requests.RequestException as e:
                last_error = e
            else:
                if response.status_code not in RETRYABLE_STATUS:
                    self._raise_for_api_error(response)
                    return response.json()
                last_error = f"HTTP {response.status_code}"
            logger.warning("attach for certificate %s failed (attempt %d/%d): %s",
                           certificate_id, attempt, self.attach_attempts, last_error)
            if attempt < self.attach_attempts:
                self._sleep(self.backoff_seconds * (2 ** (attempt - 1)))
        raise ExternalDependencyFailure(
            f"Could not record ledger linkage for certificate {certificate_id}: {last_error}",
            certificate_id=certificate_id,
            tx_hash=tx_hash,
        )

    def _anchor(self, certificate_id, tx_hash, content_id, metadata_url):
        receipt = self.ledger.await_receipt(tx_hash, confirmations=self.confirmations, timeout=self.tx_timeout)
        try:
            ledger_id = self.ledger.extract_issued_id(receipt)
        except LinkageExtractionFailure as e:
            logger.error("certificate %s: tx %s mined but issued id unreadable", certificate_id, tx_hash)
            raise LinkageExtractionFailure(e.message, tx_hash=tx_hash, certificate_id=certificate_id) from e
        self.attach(certificate_id, ledger_id, tx_hash, content_id, metadata_url)
        return ledger_id

    def issue(self, request, recipient=None):
        """Run the whole issuance for ``request`` and return the recorded linkage."""
        created = self.request_issuance(request)
        certificate_id = created["certificate_id"]
        number = created["certificate_number"]
        metadata = created["metadata"]

        published = self.metadata_store.publish(metadata, name=f"certificate-{number}.json")

        signer = self.ledger.sender
        if not self.ledger.has_role(signer, "ISSUER_ROLE"):
            raise ExternalDependencyFailure(
                f"Wallet {signer} does not have ISSUER_ROLE", certificate_id=certificate_id
            )

        tx_hash = self.ledger.submit_issuance(
            recipient or created.get("student_wallet_address") or signer,
            metadata["studentId"],
            metadata["studentName"],
            metadata.get("certificateType") or "",
            metadata["courseName"],
            metadata["grade"],
            published.content_id,
        )
        ledger_id = self._anchor(certificate_id, tx_hash, published.content_id, published.url)
        logger.info("certificate %s fully registered as ledger id %s", number, ledger_id)
        return DriverOutcome(
            certificate_id=certificate_id,
            certificate_number=number,
            ledger_id=ledger_id,
            tx_hash=tx_hash,
            content_id=published.content_id,
            metadata_url=published.url,
        )

    def resume(self, certificate_id, tx_hash, content_id, metadata_url):
        """Finish step 3 for a transaction that was submitted before a crash."""
        return self._anchor(certificate_id, tx_hash, content_id, metadata_url)

    def revoke_on_ledger(self, ledger_id, reason):
        tx_hash = self.ledger.submit_revocation(ledger_id, reason)
        self.ledger.await_receipt(tx_hash, confirmations=self.confirmations, timeout=self.tx_timeout)
        return tx_hash
