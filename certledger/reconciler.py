"""Recovery for certificates whose issuer never reported ledger linkage.

A client can crash after its issuance transaction is mined but before it
calls back with the ledger id. Such rows stay ``PENDING`` while a real
on-chain record exists. The reconciler scans pending rows older than a
threshold, walks ``CertificateIssued`` events, reads each event's metadata
blob and matches on ``certificateNumber``. Matches are anchored; the rest
are flagged for manual review.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List

from certledger.errors import ExternalDependencyFailure, LifecycleError
from certledger.lifecycle import CertificateState, certificate_state, ensure_transition
from certledger.registry import NEEDS_REVIEW, RECOVERED
from certledger.schemas import AnchorDataRequest

logger = logging.getLogger(__name__)

INCONSISTENT_NOTE = "ledger id and transaction hash are not both set"
ABANDONED_NOTE = "no matching ledger issuance found; pending, possibly abandoned"


@dataclass
class ReconciliationReport:
    scanned: int = 0
    recovered: List[str] = field(default_factory=list)
    flagged: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "scanned": self.scanned,
            "recovered": self.recovered,
            "flagged": self.flagged,
            "errors": self.errors,
        }


class PendingReconciler:
    def __init__(self, lifecycle, ledger, metadata_store, clock=datetime.utcnow):
        self.lifecycle = lifecycle
        self.registry = lifecycle.registry
        self.ledger = ledger
        self.metadata_store = metadata_store
        self._clock = clock

    def _index_ledger(self, wanted, from_block, report):
        found = {}
        for event in self.ledger.issued_events(from_block=from_block):
            try:
                metadata = self.metadata_store.fetch(event.content_id)
            except ExternalDependencyFailure as e:
                logger.warning("reconcile: metadata for ledger id %s unreadable: %s", event.ledger_id, e.message)
                report.errors.append(f"ledger:{event.ledger_id}")
                continue
            number = metadata.get("certificateNumber")
            if number in wanted:
                found[number] = event
        return found

    def run(self, older_than_minutes=60, from_block=0, dry_run=False):
        report = ReconciliationReport()

        for cert in self.registry.partially_linked():
            logger.warning("reconcile: %s has partial ledger linkage", cert.certificate_number)
            report.flagged.append(cert.certificate_number)
            if not dry_run:
                self.registry.flag_for_review(cert.id, INCONSISTENT_NOTE)

        cutoff = self._clock() - timedelta(minutes=older_than_minutes)
        stale = self.registry.stale_pending(cutoff)
        report.scanned = len(stale)
        if not stale:
            return report

        wanted = {cert.certificate_number for cert in stale}
        found = self._index_ledger(wanted, from_block, report)

        for cert in stale:
            number = cert.certificate_number
            event = found.get(number)
            if event is None:
                report.flagged.append(number)
                if not dry_run:
                    self.registry.flag_for_review(cert.id, ABANDONED_NOTE, status=NEEDS_REVIEW)
                continue

            report.recovered.append(number)
            if dry_run:
                continue
            try:
                ensure_transition(certificate_state(cert), CertificateState.ANCHORED)
                self.lifecycle.attach_anchor_data(cert.id, AnchorDataRequest(
                    blockchain_id=event.ledger_id,
                    transaction_hash=event.tx_hash,
                    ipfs_hash=event.content_id,
                    ipfs_metadata_url=self.metadata_store.url_for(event.content_id),
                ))
            except LifecycleError as e:
                report.recovered.remove(number)
                report.errors.append(number)
                logger.warning("reconcile: could not anchor %s: %s", number, e.message)
                continue
            self.registry.flag_for_review(
                cert.id, f"recovered from ledger id {event.ledger_id} tx {event.tx_hash}", status=RECOVERED
            )
            logger.info("reconcile: %s recovered as ledger id %s", number, event.ledger_id)

        return report
