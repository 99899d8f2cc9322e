import logging
from datetime import timedelta
from functools import wraps

import bcrypt
import click
from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt,
    get_jwt_identity,
    jwt_required,
    verify_jwt_in_request,
)
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import InvalidTokenError

from certledger.config import Config, LifecycleSettings
from certledger.errors import register_error_handlers
from certledger.ledger import LedgerGateway
from certledger.lifecycle import CertificateLifecycle, serialize
from certledger.metadata_store import PinataMetadataStore
from certledger.models import db, BlockchainConfig, User
from certledger.reconciler import PendingReconciler
from certledger.registry import CertificateRegistry
from certledger.schemas import (
    AnchorDataRequest,
    CertificateListQuery,
    IssueCertificateRequest,
    LoginRequest,
    RevokeRequest,
)

ROLES = {"admin", "issuer", "student"}


def role_required(*roles):
    def decorator(fn):
        @wraps(fn)
        @jwt_required()
        def wrapper(*args, **kwargs):
            if roles and get_jwt().get("role") not in roles:
                return jsonify({"error": "forbidden"}), 403
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def ensure_network_config(app):
    """Insert the configured network row once; existing rows are never rewritten."""
    address = app.config.get("CONTRACT_ADDRESS")
    name = app.config.get("BLOCKCHAIN_NETWORK")
    if not address or not name:
        return
    registry = CertificateRegistry(db.session)
    if registry.get_network_config(name) is not None:
        return
    db.session.add(BlockchainConfig(
        network_name=name,
        contract_address=address,
        chain_id=str(app.config.get("CHAIN_ID")),
        rpc_url=Config.build_web3_provider(),
        block_explorer=app.config.get("BLOCK_EXPLORER") or None,
        is_testnet=name.lower() not in {"polygon", "mainnet"},
    ))
    db.session.commit()
    app.logger.info("registered blockchain network %s at %s", name, address)


def create_app(config_object=None):
    app = Flask(__name__)
    app.config.from_object(config_object or Config)
    CORS(app, supports_credentials=True)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    db.init_app(app)
    with app.app_context():
        db.create_all()
        ensure_network_config(app)
    JWTManager(app)
    register_error_handlers(app)

    settings = LifecycleSettings.from_mapping(app.config)
    app.extensions["certledger.settings"] = settings

    ledger = None

    def ensure_ledger():
        nonlocal ledger
        if ledger is not None:
            return ledger
        address = app.config.get("CONTRACT_ADDRESS")
        if not address:
            return None
        candidate = LedgerGateway.from_provider(
            Config.build_web3_provider(),
            address,
            chain_id=app.config.get("CHAIN_ID"),
        )
        if not candidate.w3.is_connected():
            app.logger.warning("Web3 provider unavailable")
            return None
        ledger = candidate
        return ledger

    def lifecycle(with_ledger=False):
        return CertificateLifecycle(
            CertificateRegistry(db.session),
            settings,
            ledger=ensure_ledger() if with_ledger else None,
        )

    app.extensions["certledger.lifecycle"] = lifecycle
    app.extensions["certledger.ledger"] = ensure_ledger

    @app.route("/api/login", methods=["POST"])
    def login():
        body = LoginRequest.model_validate(request.get_json(silent=True) or {})
        u = db.session.execute(db.select(User).filter_by(email=body.email)).scalar_one_or_none()
        if not u:
            return jsonify({"error": "invalid credentials"}), 401
        valid = bcrypt.checkpw(body.password.encode("utf-8"), u.password_hash.encode("utf-8"))
        if not valid:
            return jsonify({"error": "invalid credentials"}), 401
        token = create_access_token(
            identity=str(u.id),
            additional_claims={"role": u.role, "email": u.email},
            expires_delta=timedelta(hours=12),
        )
        return jsonify({"access_token": token})

    @app.route("/api/certificates", methods=["GET"])
    @role_required()
    def list_certificates():
        query = CertificateListQuery.model_validate(request.args.to_dict())
        rows = lifecycle().list(query)
        return jsonify({"certificates": [serialize(r) for r in rows]})

    @app.route("/api/certificates/types", methods=["GET"])
    @role_required()
    def list_types():
        return jsonify({"types": [t.to_dict() for t in lifecycle().list_types()]})

    @app.route("/api/certificates/<int:certificate_id>", methods=["GET"])
    @role_required()
    def get_certificate(certificate_id):
        return jsonify({"certificate": serialize(lifecycle().get(certificate_id))})

    def optional_identity():
        try:
            verify_jwt_in_request(optional=True)
        except (JWTExtendedException, InvalidTokenError) as e:
            app.logger.info("ignoring unusable token on public route: %s", e)
            return None
        return get_jwt_identity()

    @app.route("/api/certificates/verify/<path:certificate_number>", methods=["GET"])
    def verify(certificate_number):
        verified_by = optional_identity() or request.remote_addr or "unknown"
        if request.args.get("source") == "ledger":
            result = lifecycle(with_ledger=True).verify_on_ledger(certificate_number, verified_by)
        else:
            result = lifecycle().verify(certificate_number, verified_by)
        return jsonify(result.to_dict())

    @app.route("/api/certificates", methods=["POST"])
    @role_required("issuer", "admin")
    def issue():
        body = IssueCertificateRequest.model_validate(request.get_json(silent=True) or {})
        result = lifecycle().issue(body, issuer_id=int(get_jwt_identity()))
        return jsonify(result.to_dict()), 201

    @app.route("/api/certificates/<int:certificate_id>/blockchain", methods=["PUT"])
    @role_required("issuer", "admin")
    def attach_blockchain_data(certificate_id):
        body = AnchorDataRequest.model_validate(request.get_json(silent=True) or {})
        cert = lifecycle().attach_anchor_data(certificate_id, body)
        return jsonify({
            "message": "Certificate blockchain data updated successfully",
            "certificate": serialize(cert),
        })

    @app.route("/api/certificates/<int:certificate_id>/revoke", methods=["POST"])
    @role_required("admin")
    def revoke(certificate_id):
        body = RevokeRequest.model_validate(request.get_json(silent=True) or {})
        cert = lifecycle().revoke(certificate_id, int(get_jwt_identity()), body.reason)
        return jsonify({"message": "Certificate revoked successfully", "certificate": serialize(cert)})

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "service": "certledger"}), 200

    @app.cli.command("reconcile-pending")
    @click.option("--older-than-minutes", type=int, default=None)
    @click.option("--from-block", type=int, default=None)
    @click.option("--dry-run", is_flag=True)
    def reconcile_pending(older_than_minutes, from_block, dry_run):
        """Anchor or flag certificates left PENDING by an interrupted issuance."""
        gateway = ensure_ledger()
        if gateway is None:
            raise click.ClickException("Reconciliation needs CONTRACT_ADDRESS and a reachable provider")
        store = PinataMetadataStore(
            app.config.get("PINATA_JWT"),
            app.config.get("PINATA_GATEWAY"),
            api_url=app.config.get("PINATA_API_URL"),
        )
        reconciler = PendingReconciler(lifecycle(), gateway, store)
        report = reconciler.run(
            older_than_minutes=settings.pending_reconcile_after_minutes
            if older_than_minutes is None else older_than_minutes,
            from_block=settings.reconcile_from_block if from_block is None else from_block,
            dry_run=dry_run,
        )
        click.echo(
            f"scanned={report.scanned} recovered={len(report.recovered)} "
            f"flagged={len(report.flagged)} errors={len(report.errors)}"
        )

    @app.cli.command("create-user")
    @click.option("--name", required=True)
    @click.option("--email", required=True)
    @click.option("--password", required=True, prompt=True, hide_input=True)
    @click.option("--role", type=click.Choice(sorted(ROLES)), required=True)
    @click.option("--wallet-address", default=None)
    def create_user(name, email, password, role, wallet_address):
        """Bootstrap an account that can log in."""
        pw_hash = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
        u = User(name=name, email=email.strip().lower(), password_hash=pw_hash, role=role,
                 wallet_address=wallet_address)
        db.session.add(u)
        db.session.commit()
        click.echo(f"created {role} {u.email} id={u.id}")

    return app
