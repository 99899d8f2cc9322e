"""Certificate lifecycle coordination across registry, ledger and metadata store.

The three stores share no transaction. The registry row is created first in
``PENDING`` state and is the only thing the server writes during issuance;
the issuer's client publishes metadata and submits the ledger transaction,
then reports the linkage back through :meth:`CertificateLifecycle.attach_anchor_data`.

States::

    PENDING --attach--> ANCHORED
    PENDING | ANCHORED --revoke--> REVOKED   (terminal)

A row with only one of ledger id / transaction hash is ``INCONSISTENT``;
it is reported, never produced by this module.
"""
import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from certledger.errors import (
    CertificateNumberCollision,
    ConfigurationMissing,
    ExternalDependencyFailure,
    InvalidState,
    NotFound,
    ValidationFailed,
)
from certledger.numbers import generate_certificate_number
from certledger.registry import CertificateDraft

logger = logging.getLogger(__name__)

METHOD_CERTIFICATE_NUMBER = "certificate_number"
METHOD_LEDGER = "ledger"


class CertificateState(str, enum.Enum):
    PENDING = "PENDING"
    ANCHORED = "ANCHORED"
    REVOKED = "REVOKED"
    INCONSISTENT = "INCONSISTENT"


_TRANSITIONS = {
    CertificateState.PENDING: {CertificateState.ANCHORED, CertificateState.REVOKED},
    CertificateState.ANCHORED: {CertificateState.REVOKED},
    CertificateState.INCONSISTENT: {CertificateState.ANCHORED, CertificateState.REVOKED},
    CertificateState.REVOKED: set(),
}


def certificate_state(cert):
    if cert.is_revoked:
        return CertificateState.REVOKED
    has_id = cert.blockchain_id is not None
    has_tx = cert.transaction_hash is not None
    if has_id and has_tx:
        return CertificateState.ANCHORED
    if has_id or has_tx:
        return CertificateState.INCONSISTENT
    return CertificateState.PENDING


def ensure_transition(current, target):
    if target not in _TRANSITIONS[current]:
        if current is CertificateState.REVOKED:
            raise InvalidState("Certificate is already revoked")
        raise InvalidState(f"Illegal transition {current.value} -> {target.value}")


def serialize(cert, public=False):
    data = cert.to_public_dict() if public else cert.to_dict()
    data["state"] = certificate_state(cert).value
    return data


@dataclass
class IssuanceResult:
    certificate_id: int
    certificate_number: str
    metadata: Dict[str, Any]
    blockchain_config: Dict[str, Any]
    student_wallet_address: Optional[str] = None

    def to_dict(self):
        return {
            "message": "Certificate issued successfully",
            "certificate_id": self.certificate_id,
            "certificate_number": self.certificate_number,
            "metadata": self.metadata,
            "blockchain_config": self.blockchain_config,
            "student_wallet_address": self.student_wallet_address,
        }


@dataclass
class VerificationResult:
    is_valid: bool
    certificate: Dict[str, Any]
    ledger: Optional[Dict[str, Any]] = field(default=None)

    def to_dict(self):
        data = {"is_valid": self.is_valid, "certificate": self.certificate}
        if self.ledger is not None:
            data["ledger"] = self.ledger
        return data


class CertificateLifecycle:
    def __init__(self, registry, settings, ledger=None, sleep=time.sleep):
        self.registry = registry
        self.settings = settings
        self.ledger = ledger
        self._sleep = sleep

    # ---------------- READS ----------------
    def get(self, certificate_id):
        cert = self.registry.find_by_id(certificate_id)
        if cert is None:
            raise NotFound("Certificate not found", certificate_id=certificate_id)
        return cert

    def list(self, query):
        return self.registry.list_certificates(
            student_id=query.student_id,
            certificate_type_id=query.certificate_type_id,
            is_revoked=query.is_revoked,
        )

    def list_types(self):
        return self.registry.list_types()

    # ---------------- ISSUANCE ----------------
    def issue(self, request, issuer_id):
        """Step 1: create the PENDING row and hand back the metadata to publish."""
        student = self.registry.find_user(request.student_id)
        if student is None:
            raise NotFound("Student not found", student_id=request.student_id)
        issuer = self.registry.find_user(issuer_id)
        if issuer is None:
            raise NotFound("Issuer not found", issuer_id=issuer_id)
        cert_type = None
        if request.certificate_type_id is not None:
            cert_type = self.registry.find_type(request.certificate_type_id)
            if cert_type is None or not cert_type.is_active:
                raise NotFound("Certificate type not found", certificate_type_id=request.certificate_type_id)

        network = self.registry.get_network_config(self.settings.blockchain_network)
        if network is None:
            raise ConfigurationMissing(
                f"Blockchain configuration not found for network: {self.settings.blockchain_network}"
            )

        issue_date = datetime.utcnow()
        certificate_id, number = self._create_with_fresh_number(request, issuer_id, network, issue_date)
        logger.info(
            "certificate %s created PENDING id=%s network=%s", number, certificate_id, network.network_name
        )

        metadata = {
            "certificateNumber": number,
            "studentId": student.id,
            "studentName": student.name,
            "studentEmail": student.email,
            "certificateTypeId": request.certificate_type_id,
            "certificateType": cert_type.name if cert_type else None,
            "courseName": request.course_name,
            "grade": request.grade,
            "issueDate": issue_date.isoformat() + "Z",
            "issuerId": issuer.id,
            "issuerName": issuer.name,
            "description": request.description or "",
            "network": network.network_name,
            "contractAddress": network.contract_address,
        }
        return IssuanceResult(
            certificate_id=certificate_id,
            certificate_number=number,
            metadata=metadata,
            blockchain_config=network.to_public(),
            student_wallet_address=student.wallet_address,
        )

    def _create_with_fresh_number(self, request, issuer_id, network, issue_date):
        attempts = max(1, self.settings.number_max_attempts)
        for attempt in range(1, attempts + 1):
            number = generate_certificate_number()
            draft = CertificateDraft(
                certificate_number=number,
                student_id=request.student_id,
                issuer_id=issuer_id,
                certificate_type_id=request.certificate_type_id,
                course_name=request.course_name,
                grade=request.grade,
                description=request.description,
                issue_date=issue_date,
                contract_address=network.contract_address,
                network=network.network_name,
            )
            try:
                return self.registry.create(draft), number
            except CertificateNumberCollision:
                logger.warning("certificate number collision on %s (attempt %d/%d)", number, attempt, attempts)
                if attempt < attempts:
                    self._sleep(self.settings.number_backoff_seconds * (2 ** (attempt - 1)))
        raise ExternalDependencyFailure(
            f"Could not allocate a unique certificate number after {attempts} attempts"
        )

    def attach_anchor_data(self, certificate_id, request):
        """Step 3: record ledger and metadata linkage. Safe to replay."""
        tx_hash = request.transaction_hash.lower()
        self.registry.attach_anchor_data(
            certificate_id,
            request.blockchain_id,
            tx_hash,
            request.ipfs_hash,
            request.ipfs_metadata_url,
        )
        cert = self.get(certificate_id)
        logger.info(
            "certificate %s anchored ledger_id=%s tx=%s state=%s",
            cert.certificate_number, request.blockchain_id, tx_hash, certificate_state(cert).value,
        )
        return cert

    # ---------------- VERIFICATION ----------------
    def _lookup_and_log(self, certificate_number, actor, method):
        cert = self.registry.find_by_number(certificate_number)
        if cert is None:
            self.registry.log_verification(None, actor, method, False)
            raise NotFound("Certificate not found", certificate_number=certificate_number)
        self.registry.log_verification(cert.id, actor, method, True)
        return cert

    def verify(self, certificate_number, actor):
        cert = self._lookup_and_log(certificate_number, actor, METHOD_CERTIFICATE_NUMBER)
        return VerificationResult(is_valid=not cert.is_revoked, certificate=serialize(cert, public=True))

    def verify_on_ledger(self, certificate_number, actor):
        """Registry verification plus a live read of the anchored ledger record.

        Validity still comes from the registry; the ledger view is reported
        alongside so divergence is visible. Without ledger access the
        registry verdict is returned with ``{"available": False}``.
        """
        cert = self._lookup_and_log(certificate_number, actor, METHOD_LEDGER)
        return VerificationResult(
            is_valid=not cert.is_revoked,
            certificate=serialize(cert, public=True),
            ledger=self._ledger_view(cert),
        )

    def _ledger_view(self, cert):
        if self.ledger is None:
            logger.warning("ledger verification of %s without ledger access", cert.certificate_number)
            return {"available": False}
        if cert.blockchain_id is None:
            return {"available": True, "anchored": False}
        try:
            onchain = self.ledger.get_certificate(cert.blockchain_id)
        except NotFound:
            logger.warning(
                "certificate %s anchored to ledger id %s which has no ledger record",
                cert.certificate_number, cert.blockchain_id,
            )
            return {"available": True, "anchored": True, "ledger_record_missing": True}
        return {
            "available": True,
            "anchored": True,
            "ledger_record_missing": False,
            "ledger_revoked": onchain.revoked,
            "content_id_matches": onchain.content_id == cert.ipfs_hash,
            "revocation_diverges": onchain.revoked != cert.is_revoked,
        }

    # ---------------- REVOCATION ----------------
    def revoke(self, certificate_id, actor_id, reason):
        reason = (reason or "").strip()
        if not reason:
            raise ValidationFailed("A revocation reason is required")
        ensure_transition(certificate_state(self.get(certificate_id)), CertificateState.REVOKED)
        # the pre-check only fails fast; the conditional update decides concurrent races
        self.registry.revoke(certificate_id, actor_id, reason)
        logger.info("certificate id=%s revoked by user=%s", certificate_id, actor_id)
        return self.get(certificate_id)
