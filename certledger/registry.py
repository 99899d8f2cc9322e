"""Relational system of record for certificates.

Every write that guards a lifecycle transition is a single conditional
UPDATE; the affected row count decides the outcome, so two concurrent
callers cannot both win.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, func, or_, update
from sqlalchemy.exc import IntegrityError

from certledger.errors import CertificateNumberCollision, InvalidState, NotFound
from certledger.models import (
    BlockchainConfig,
    Certificate,
    CertificateType,
    CertificateVerification,
    User,
    db,
)

logger = logging.getLogger(__name__)

NEEDS_REVIEW = "NEEDS_REVIEW"
RECOVERED = "RECOVERED"


@dataclass
class CertificateDraft:
    certificate_number: str
    student_id: int
    issuer_id: int
    course_name: str
    grade: str
    contract_address: str
    network: str
    certificate_type_id: Optional[int] = None
    description: Optional[str] = None
    issue_date: Optional[datetime] = None


class CertificateRegistry:
    def __init__(self, session=None):
        self.session = session or db.session

    # ---------------- READS ----------------
    def find_by_id(self, certificate_id):
        return self.session.get(Certificate, certificate_id)

    def find_by_number(self, certificate_number):
        return self.session.execute(
            db.select(Certificate).filter_by(certificate_number=certificate_number)
        ).scalar_one_or_none()

    def find_user(self, user_id):
        if user_id is None:
            return None
        return self.session.get(User, user_id)

    def find_type(self, type_id):
        if type_id is None:
            return None
        return self.session.get(CertificateType, type_id)

    def list_certificates(self, student_id=None, certificate_type_id=None, is_revoked=None):
        stmt = db.select(Certificate)
        if student_id is not None:
            stmt = stmt.filter(Certificate.student_id == student_id)
        if certificate_type_id is not None:
            stmt = stmt.filter(Certificate.certificate_type_id == certificate_type_id)
        if is_revoked is not None:
            stmt = stmt.filter(Certificate.is_revoked == is_revoked)
        stmt = stmt.order_by(Certificate.issue_date.desc(), Certificate.id.desc())
        return list(self.session.execute(stmt).scalars())

    def list_types(self):
        stmt = db.select(CertificateType).filter_by(is_active=True).order_by(CertificateType.name)
        return list(self.session.execute(stmt).scalars())

    def get_active_network_config(self):
        stmt = (
            db.select(BlockchainConfig)
            .filter_by(is_active=True)
            .order_by(BlockchainConfig.is_testnet.desc(), BlockchainConfig.id.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def get_network_config(self, network_name):
        stmt = db.select(BlockchainConfig).filter(
            func.lower(BlockchainConfig.network_name) == network_name.lower(),
            BlockchainConfig.is_active.is_(True),
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def stale_pending(self, older_than):
        """Pending rows created before ``older_than``.

        Rows already flagged ``NEEDS_REVIEW`` come back once their flag is
        older than ``older_than`` too, so a later run over a wider block
        range can still recover them.
        """
        stmt = (
            db.select(Certificate)
            .filter(
                Certificate.blockchain_id.is_(None),
                Certificate.transaction_hash.is_(None),
                Certificate.is_revoked.is_(False),
                Certificate.created_at < older_than,
                or_(
                    Certificate.reconciliation_status.is_(None),
                    and_(
                        Certificate.reconciliation_status == NEEDS_REVIEW,
                        Certificate.reconciled_at < older_than,
                    ),
                ),
            )
            .order_by(Certificate.created_at)
        )
        return list(self.session.execute(stmt).scalars())

    def partially_linked(self):
        stmt = db.select(Certificate).filter(
            or_(
                and_(Certificate.blockchain_id.is_(None), Certificate.transaction_hash.isnot(None)),
                and_(Certificate.blockchain_id.isnot(None), Certificate.transaction_hash.is_(None)),
            ),
            Certificate.reconciliation_status.is_(None),
        )
        return list(self.session.execute(stmt).scalars())

    # ---------------- WRITES ----------------
    def create(self, draft):
        cert = Certificate(
            certificate_number=draft.certificate_number,
            student_id=draft.student_id,
            certificate_type_id=draft.certificate_type_id,
            issuer_id=draft.issuer_id,
            course_name=draft.course_name,
            grade=draft.grade,
            description=draft.description or "",
            issue_date=draft.issue_date or datetime.utcnow(),
            contract_address=draft.contract_address,
            network=draft.network,
        )
        self.session.add(cert)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            if self.find_by_number(draft.certificate_number) is not None:
                raise CertificateNumberCollision(draft.certificate_number)
            raise
        return cert.id

    def attach_anchor_data(self, certificate_id, ledger_id, tx_hash, content_id, metadata_url):
        """Write all four linkage fields in one statement.

        Accepted when the row carries no ledger linkage yet or exactly this
        one, so replaying the same call is harmless.
        """
        now = datetime.utcnow()
        stmt = (
            update(Certificate)
            .where(
                Certificate.id == certificate_id,
                or_(Certificate.blockchain_id.is_(None), Certificate.blockchain_id == ledger_id),
                or_(Certificate.transaction_hash.is_(None), Certificate.transaction_hash == tx_hash),
            )
            .values(
                blockchain_id=ledger_id,
                transaction_hash=tx_hash,
                ipfs_hash=content_id,
                ipfs_metadata_url=metadata_url,
                reconciliation_status=None,
                reconciliation_note=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        self.session.commit()
        if result.rowcount == 0:
            if self.find_by_id(certificate_id) is None:
                raise NotFound("Certificate not found", certificate_id=certificate_id)
            raise InvalidState(
                "Certificate is already anchored to a different ledger record",
                certificate_id=certificate_id,
            )

    def revoke(self, certificate_id, actor_id, reason):
        now = datetime.utcnow()
        stmt = (
            update(Certificate)
            .where(Certificate.id == certificate_id, Certificate.is_revoked.is_(False))
            .values(
                is_revoked=True,
                revoked_date=now,
                revoked_by=actor_id,
                revoked_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        self.session.commit()
        if result.rowcount == 0:
            if self.find_by_id(certificate_id) is None:
                raise NotFound("Certificate not found", certificate_id=certificate_id)
            raise InvalidState("Certificate is already revoked", certificate_id=certificate_id)

    def log_verification(self, certificate_id, verified_by, method, result):
        self.session.add(CertificateVerification(
            certificate_id=certificate_id,
            verified_by=verified_by,
            verification_method=method,
            verification_result=bool(result),
        ))
        self.session.commit()

    def flag_for_review(self, certificate_id, note, status=NEEDS_REVIEW):
        stmt = (
            update(Certificate)
            .where(Certificate.id == certificate_id)
            .values(reconciliation_status=status, reconciliation_note=note, reconciled_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        self.session.execute(stmt)
        self.session.commit()
