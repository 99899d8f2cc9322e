from flask_sqlalchemy import SQLAlchemy
from datetime import datetime

db = SQLAlchemy()


def _iso(value):
    return value.isoformat() if value is not None else None


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(32), nullable=False)
    wallet_address = db.Column(db.String(42), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)


class CertificateType(db.Model):
    __tablename__ = "certificate_types"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
        }


class BlockchainConfig(db.Model):
    __tablename__ = "blockchain_config"

    id = db.Column(db.Integer, primary_key=True)
    network_name = db.Column(db.String(50), unique=True, nullable=False)
    contract_address = db.Column(db.String(42), nullable=False)
    chain_id = db.Column(db.String(20), nullable=False)
    rpc_url = db.Column(db.String(255), nullable=False)
    block_explorer = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    is_testnet = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_public(self):
        return {
            "contractAddress": self.contract_address,
            "network": self.network_name,
            "chainId": self.chain_id,
            "rpcUrl": self.rpc_url,
        }


class Certificate(db.Model):
    __tablename__ = "certificates"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    certificate_number = db.Column(db.String(64), unique=True, nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    certificate_type_id = db.Column(db.Integer, db.ForeignKey("certificate_types.id"), nullable=True)
    issuer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    course_name = db.Column(db.String(255), nullable=False)
    grade = db.Column(db.String(20), nullable=False)
    description = db.Column(db.Text, nullable=True)
    issue_date = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    # ledger linkage, null until the client reports the transaction
    blockchain_id = db.Column(db.BigInteger, nullable=True)
    transaction_hash = db.Column(db.String(66), nullable=True)
    contract_address = db.Column(db.String(42), nullable=True)
    network = db.Column(db.String(50), nullable=True)

    # metadata linkage
    ipfs_hash = db.Column(db.String(128), nullable=True)
    ipfs_metadata_url = db.Column(db.String(512), nullable=True)

    is_revoked = db.Column(db.Boolean, default=False, nullable=False)
    revoked_date = db.Column(db.DateTime, nullable=True)
    revoked_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    revoked_reason = db.Column(db.Text, nullable=True)

    reconciliation_status = db.Column(db.String(20), nullable=True)
    reconciliation_note = db.Column(db.Text, nullable=True)
    reconciled_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    student = db.relationship("User", foreign_keys=[student_id])
    issuer = db.relationship("User", foreign_keys=[issuer_id])
    revoker = db.relationship("User", foreign_keys=[revoked_by])
    certificate_type = db.relationship("CertificateType")

    @property
    def type_name(self):
        return self.certificate_type.name if self.certificate_type else None

    def to_public_dict(self):
        """Projection safe to hand to anonymous verifiers: names, no actor ids."""
        return {
            "certificate_number": self.certificate_number,
            "student_name": self.student.name if self.student else None,
            "course_name": self.course_name,
            "grade": self.grade,
            "issue_date": _iso(self.issue_date),
            "certificate_type": self.type_name,
            "issuer_name": self.issuer.name if self.issuer else None,
            "is_revoked": self.is_revoked,
            "revoked_date": _iso(self.revoked_date),
            "revoked_reason": self.revoked_reason,
            "blockchain_id": self.blockchain_id,
            "transaction_hash": self.transaction_hash,
            "contract_address": self.contract_address,
            "network": self.network,
            "ipfs_hash": self.ipfs_hash,
            "ipfs_metadata_url": self.ipfs_metadata_url,
        }

    def to_dict(self):
        data = self.to_public_dict()
        data.update({
            "id": self.id,
            "student_id": self.student_id,
            "student_email": self.student.email if self.student else None,
            "certificate_type_id": self.certificate_type_id,
            "issuer_id": self.issuer_id,
            "description": self.description,
            "revoked_by": self.revoked_by,
            "revoked_by_name": self.revoker.name if self.revoker else None,
            "reconciliation_status": self.reconciliation_status,
            "reconciliation_note": self.reconciliation_note,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        })
        return data


class CertificateVerification(db.Model):
    __tablename__ = "certificate_verifications"

    id = db.Column(db.Integer, primary_key=True)
    certificate_id = db.Column(db.Integer, db.ForeignKey("certificates.id"), nullable=True)
    verified_by = db.Column(db.String(255), nullable=False)
    verification_method = db.Column(db.String(50), nullable=False)
    verification_result = db.Column(db.Boolean, nullable=False)
    verified_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
