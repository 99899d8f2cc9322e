import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


class Config:
    _root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    _default_db = os.path.join(_root, "local.db")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL") or f"sqlite:///{_default_db}"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JWT_SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    BLOCKCHAIN_NETWORK = os.getenv("BLOCKCHAIN_NETWORK", "localhost")
    CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS")
    CHAIN_ID = os.getenv("CHAIN_ID", "31337")
    BLOCK_EXPLORER = os.getenv("BLOCK_EXPLORER", "")
    GANACHE_HOST = os.getenv("GANACHE_HOST")
    GANACHE_PORT = os.getenv("GANACHE_PORT")
    WEB3_PROVIDER = os.getenv("WEB3_PROVIDER")

    PINATA_JWT = os.getenv("PINATA_JWT")
    PINATA_GATEWAY = os.getenv("PINATA_GATEWAY", "https://gateway.pinata.cloud")
    PINATA_API_URL = os.getenv("PINATA_API_URL", "https://api.pinata.cloud")

    TX_CONFIRMATIONS = int(os.getenv("TX_CONFIRMATIONS", "1"))
    TX_TIMEOUT_SECONDS = float(os.getenv("TX_TIMEOUT_SECONDS", "120"))
    PENDING_RECONCILE_AFTER_MINUTES = int(os.getenv("PENDING_RECONCILE_AFTER_MINUTES", "60"))
    RECONCILE_FROM_BLOCK = int(os.getenv("RECONCILE_FROM_BLOCK", "0"))
    CERT_NUMBER_MAX_ATTEMPTS = int(os.getenv("CERT_NUMBER_MAX_ATTEMPTS", "5"))
    CERT_NUMBER_BACKOFF_SECONDS = float(os.getenv("CERT_NUMBER_BACKOFF_SECONDS", "0.05"))

    @staticmethod
    def build_web3_provider():
        p = os.getenv("WEB3_PROVIDER")
        if p:
            return p
        h = os.getenv("GANACHE_HOST")
        r = os.getenv("GANACHE_PORT")
        if h and r:
            return f"http://{h}:{r}"
        return os.getenv("HTTP_PROVIDER", "http://127.0.0.1:8545")


@dataclass(frozen=True)
class LifecycleSettings:
    """Values the lifecycle coordinator needs, resolved once at startup."""

    blockchain_network: str
    number_max_attempts: int = 5
    number_backoff_seconds: float = 0.05
    tx_confirmations: int = 1
    tx_timeout_seconds: float = 120.0
    pending_reconcile_after_minutes: int = 60
    reconcile_from_block: int = 0

    @classmethod
    def from_mapping(cls, config):
        return cls(
            blockchain_network=config.get("BLOCKCHAIN_NETWORK") or "localhost",
            number_max_attempts=int(config.get("CERT_NUMBER_MAX_ATTEMPTS", 5)),
            number_backoff_seconds=float(config.get("CERT_NUMBER_BACKOFF_SECONDS", 0.05)),
            tx_confirmations=int(config.get("TX_CONFIRMATIONS", 1)),
            tx_timeout_seconds=float(config.get("TX_TIMEOUT_SECONDS", 120)),
            pending_reconcile_after_minutes=int(config.get("PENDING_RECONCILE_AFTER_MINUTES", 60)),
            reconcile_from_block=int(config.get("RECONCILE_FROM_BLOCK", 0)),
        )
