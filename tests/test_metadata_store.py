from unittest.mock import MagicMock

import pytest
import requests

from certledger.errors import ExternalDependencyFailure
from certledger.metadata_store import PinataMetadataStore, normalize_gateway


def _response(payload=None, status_error=None):
    response = MagicMock()
    response.json.return_value = payload
    if status_error is not None:
        response.raise_for_status.side_effect = status_error
    return response


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def store(session):
    return PinataMetadataStore("jwt-token", "example.mypinata.cloud/", session=session)


@pytest.mark.parametrize("raw,expected", [
    ("example.mypinata.cloud", "https://example.mypinata.cloud"),
    ("https://gw.test/", "https://gw.test"),
    ("http://127.0.0.1:8080", "http://127.0.0.1:8080"),
])
def test_normalize_gateway(raw, expected):
    assert normalize_gateway(raw) == expected


def test_publish_returns_cid_and_gateway_url(store, session):
    session.post.return_value = _response({"IpfsHash": "QmAbc", "PinSize": 120})

    published = store.publish({"certificateNumber": "CERT-1"}, name="certificate-CERT-1.json")

    assert published.content_id == "QmAbc"
    assert published.url == "https://example.mypinata.cloud/ipfs/QmAbc"
    args, kwargs = session.post.call_args
    assert args[0] == "https://api.pinata.cloud/pinning/pinJSONToIPFS"
    assert kwargs["json"] == {
        "pinataContent": {"certificateNumber": "CERT-1"},
        "pinataMetadata": {"name": "certificate-CERT-1.json"},
    }
    assert kwargs["headers"] == {"Authorization": "Bearer jwt-token"}


def test_publish_transport_error(store, session):
    session.post.side_effect = requests.ConnectionError("down")
    with pytest.raises(ExternalDependencyFailure):
        store.publish({"a": 1})


def test_publish_http_error(store, session):
    session.post.return_value = _response(status_error=requests.HTTPError("401 Unauthorized"))
    with pytest.raises(ExternalDependencyFailure):
        store.publish({"a": 1})


def test_publish_without_cid(store, session):
    session.post.return_value = _response({"error": "quota"})
    with pytest.raises(ExternalDependencyFailure):
        store.publish({"a": 1})


def test_publish_requires_credentials(session):
    with pytest.raises(ExternalDependencyFailure):
        PinataMetadataStore(None, "gw.test", session=session).publish({"a": 1})
    session.post.assert_not_called()


def test_fetch_reads_gateway(store, session):
    session.get.return_value = _response({"certificateNumber": "CERT-1"})

    assert store.fetch("QmAbc") == {"certificateNumber": "CERT-1"}
    assert session.get.call_args.args[0] == "https://example.mypinata.cloud/ipfs/QmAbc"


def test_fetch_rejects_non_object(store, session):
    session.get.return_value = _response(["not", "an", "object"])
    with pytest.raises(ExternalDependencyFailure):
        store.fetch("QmAbc")
