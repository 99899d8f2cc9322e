from unittest.mock import MagicMock

import pytest
import requests

from certledger.client_driver import IssuanceDriver
from certledger.errors import (
    ExternalDependencyFailure,
    InvalidState,
    LifecycleError,
    LinkageExtractionFailure,
    NotFound,
)
from certledger.metadata_store import PublishedMetadata
from certledger.schemas import IssueCertificateRequest

SIGNER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
TX = "0x" + "ab" * 32
METADATA = {
    "certificateNumber": "CERT-LOYW3V28-00FF10",
    "studentId": "3",
    "studentName": "Sam Student",
    "certificateType": "Completion",
    "courseName": "Distributed Systems",
    "grade": "A+",
}


def _response(status=200, payload=None, reason="OK"):
    response = MagicMock()
    response.status_code = status
    response.ok = status < 400
    response.reason = reason
    response.json.return_value = payload if payload is not None else {}
    return response


@pytest.fixture
def session():
    session = MagicMock()
    session.post.return_value = _response(201, {
        "certificate_id": 11,
        "certificate_number": METADATA["certificateNumber"],
        "metadata": METADATA,
        "student_wallet_address": "0x70997970C51812dc3A010C7d01b50e0d17dc79C8",
    })
    session.put.return_value = _response(200, {"message": "Blockchain data updated successfully"})
    return session


@pytest.fixture
def store():
    store = MagicMock()
    store.publish.return_value = PublishedMetadata("QmMeta", "https://gw.test/ipfs/QmMeta")
    return store


@pytest.fixture
def ledger():
    ledger = MagicMock()
    ledger.sender = SIGNER
    ledger.has_role.return_value = True
    ledger.submit_issuance.return_value = TX
    ledger.await_receipt.return_value = {"transactionHash": TX, "blockNumber": 4, "status": 1, "logs": []}
    ledger.extract_issued_id.return_value = 21
    return ledger


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def driver(session, store, ledger, sleeps):
    return IssuanceDriver("http://api.test/", "tok", store, ledger, attach_attempts=3,
                          backoff_seconds=0.5, session=session, sleep=sleeps.append)


def _request():
    return IssueCertificateRequest(student_id=3, course_name="Distributed Systems", grade="A+")


def test_happy_path_runs_all_three_steps(driver, session, store, ledger):
    outcome = driver.issue(_request())

    assert outcome.certificate_id == 11
    assert outcome.ledger_id == 21
    assert outcome.tx_hash == TX
    assert outcome.metadata_url == "https://gw.test/ipfs/QmMeta"
    session.headers.update.assert_called_once_with({"Authorization": "Bearer tok"})
    assert session.post.call_args.args[0] == "http://api.test/api/certificates"
    store.publish.assert_called_once_with(METADATA, name="certificate-CERT-LOYW3V28-00FF10.json")
    ledger.submit_issuance.assert_called_once_with(
        "0x70997970C51812dc3A010C7d01b50e0d17dc79C8", "3", "Sam Student", "Completion",
        "Distributed Systems", "A+", "QmMeta",
    )
    url = session.put.call_args.args[0]
    assert url == "http://api.test/api/certificates/11/blockchain"
    assert session.put.call_args.kwargs["json"] == {
        "blockchain_id": 21,
        "transaction_hash": TX,
        "ipfs_hash": "QmMeta",
        "ipfs_metadata_url": "https://gw.test/ipfs/QmMeta",
    }


def test_missing_issuer_role_stops_before_submitting(driver, ledger, session):
    ledger.has_role.return_value = False

    with pytest.raises(ExternalDependencyFailure) as exc:
        driver.issue(_request())

    assert exc.value.details["certificate_id"] == 11
    ledger.submit_issuance.assert_not_called()
    session.put.assert_not_called()


def test_unreadable_ledger_id_carries_certificate_and_tx(driver, ledger, session):
    ledger.extract_issued_id.side_effect = LinkageExtractionFailure("no event", tx_hash=TX)

    with pytest.raises(LinkageExtractionFailure) as exc:
        driver.issue(_request())

    assert exc.value.tx_hash == TX
    assert exc.value.details["certificate_id"] == 11
    session.put.assert_not_called()


def test_attach_retries_transient_failures(driver, session, sleeps):
    session.put.side_effect = [
        requests.ConnectionError("reset"),
        _response(503, reason="Service Unavailable"),
        _response(200, {"message": "ok"}),
    ]

    assert driver.attach(11, 21, TX, "QmMeta", "https://gw.test/ipfs/QmMeta") == {"message": "ok"}
    assert sleeps == [0.5, 1.0]


def test_attach_exhaustion(driver, session, sleeps):
    session.put.return_value = _response(504, reason="Gateway Timeout")

    with pytest.raises(ExternalDependencyFailure) as exc:
        driver.attach(11, 21, TX, "QmMeta", "https://gw.test/ipfs/QmMeta")

    assert session.put.call_count == 3
    assert sleeps == [0.5, 1.0]
    assert exc.value.details == {"certificate_id": 11, "tx_hash": TX}


def test_attach_conflict_is_not_retried(driver, session, sleeps):
    session.put.return_value = _response(409, {"error": "InvalidState", "message": "already anchored"})

    with pytest.raises(InvalidState) as exc:
        driver.attach(11, 22, TX, "QmMeta", "https://gw.test/ipfs/QmMeta")

    assert exc.value.message == "already anchored"
    assert session.put.call_count == 1
    assert sleeps == []


def test_api_errors_map_to_lifecycle_errors(driver, session, store):
    session.post.return_value = _response(404, {"error": "NotFound", "message": "Student not found"})

    with pytest.raises(NotFound):
        driver.issue(_request())
    store.publish.assert_not_called()


def test_unknown_api_error_falls_back_to_base_class(driver, session):
    response = _response(401, reason="Unauthorized")
    response.json.side_effect = ValueError("not json")
    session.post.return_value = response

    with pytest.raises(LifecycleError) as exc:
        driver.request_issuance(_request())

    assert exc.value.message == "Unauthorized"
    assert exc.value.details == {"status": 401}


def test_resume_finishes_attach_for_submitted_tx(driver, ledger, session):
    assert driver.resume(11, TX, "QmMeta", "https://gw.test/ipfs/QmMeta") == 21

    ledger.await_receipt.assert_called_once_with(TX, confirmations=1, timeout=120.0)
    ledger.submit_issuance.assert_not_called()
    session.put.assert_called_once()


def test_revoke_on_ledger(driver, ledger):
    ledger.submit_revocation.return_value = "0xdead"

    assert driver.revoke_on_ledger(21, "fraud") == "0xdead"
    ledger.submit_revocation.assert_called_once_with(21, "fraud")
