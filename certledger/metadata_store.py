import logging
from dataclasses import dataclass

import requests

from certledger.errors import ExternalDependencyFailure

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishedMetadata:
    content_id: str
    url: str


def normalize_gateway(gateway):
    gateway = (gateway or "").strip().rstrip("/")
    if gateway and "://" not in gateway:
        gateway = f"https://{gateway}"
    return gateway


class PinataMetadataStore:
    """Publishes certificate metadata JSON to IPFS through Pinata."""

    def __init__(self, jwt, gateway, api_url="https://api.pinata.cloud", timeout=30, session=None):
        self.jwt = jwt
        self.gateway = normalize_gateway(gateway)
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def url_for(self, content_id):
        return f"{self.gateway}/ipfs/{content_id}"

    def publish(self, payload, name=None):
        if not self.jwt:
            raise ExternalDependencyFailure("Metadata store credentials are not configured")
        body = {"pinataContent": payload}
        if name:
            body["pinataMetadata"] = {"name": name}
        try:
            response = self.session.post(
                f"{self.api_url}/pinning/pinJSONToIPFS",
                json=body,
                headers={"Authorization": f"Bearer {self.jwt}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            logger.warning("metadata publish failed: %s", e)
            raise ExternalDependencyFailure(f"Metadata publish failed: {e}") from e
        except ValueError as e:
            raise ExternalDependencyFailure("Metadata store returned a non-JSON response") from e

        content_id = data.get("IpfsHash") if isinstance(data, dict) else None
        if not content_id:
            raise ExternalDependencyFailure("Metadata store response carried no content identifier")
        logger.info("metadata published cid=%s", content_id)
        return PublishedMetadata(content_id=content_id, url=self.url_for(content_id))

    def fetch(self, content_id):
        try:
            response = self.session.get(self.url_for(content_id), timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise ExternalDependencyFailure(f"Metadata fetch failed for {content_id}: {e}") from e
        except ValueError as e:
            raise ExternalDependencyFailure(f"Metadata {content_id} is not JSON") from e
        if not isinstance(data, dict):
            raise ExternalDependencyFailure(f"Metadata {content_id} is not a JSON object")
        return data
