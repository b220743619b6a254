"""
IPFS Pinning Client using Pinata

Uploads product images, certificate PDFs and metadata documents to IPFS via
Pinata and resolves CIDs through the configured gateway.

Uploads and gateway fetches never raise on service failure. They return a
PinResult / FetchResult whose status tells the caller whether the failure is
worth retrying; callers that cannot continue call ``unwrap()``.
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import requests
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_PINATA_API_URL = "https://api.pinata.cloud"
DEFAULT_PINATA_GATEWAY = "gateway.pinata.cloud"

IPFS_SCHEME = "ipfs://"


class PinStatus(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


class PinningError(Exception):
    """Upload or gateway fetch failed."""

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


@dataclass
class PinResult:
    """Outcome of a single upload."""
    status: PinStatus
    cid: Optional[str] = None
    url: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == PinStatus.SUCCESS

    def unwrap(self) -> "PinResult":
        if not self.ok:
            raise PinningError(
                self.error or "Upload failed",
                transient=self.status == PinStatus.TRANSIENT_FAILURE
            )
        return self


@dataclass
class FetchResult:
    """Outcome of a gateway fetch. ``data`` is bytes or parsed JSON."""
    status: PinStatus
    url: str
    data: Any = None
    status_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == PinStatus.SUCCESS

    def unwrap(self) -> Any:
        if not self.ok:
            raise PinningError(
                self.error or f"Failed to fetch {self.url}",
                transient=self.status == PinStatus.TRANSIENT_FAILURE
            )
        return self.data


def ipfs_uri(cid: str) -> str:
    """Return the ``ipfs://`` URI for a CID."""
    return f"{IPFS_SCHEME}{cid}"


def gateway_url(cid: str, gateway: Optional[str] = None) -> str:
    """Return ``https://<gateway-host>/ipfs/<cid>``."""
    host = gateway or os.getenv("PINATA_GATEWAY", DEFAULT_PINATA_GATEWAY)
    host = host.replace("https://", "").replace("http://", "").rstrip("/")
    return f"https://{host}/ipfs/{cid}"


def extract_cid(reference: str) -> str:
    """
    Extract the CID from an ``ipfs://`` URI, a gateway URL or a bare CID.

    Examples:
        >>> extract_cid("ipfs://QmAbc")
        'QmAbc'
        >>> extract_cid("https://gateway.pinata.cloud/ipfs/QmAbc")
        'QmAbc'
    """
    if not reference:
        raise ValueError("Empty IPFS reference")
    reference = reference.strip()
    if reference.startswith(IPFS_SCHEME):
        return reference[len(IPFS_SCHEME):].strip("/")
    if "/ipfs/" in reference:
        return reference.split("/ipfs/", 1)[1].split("?")[0].strip("/")
    if reference.startswith("http://") or reference.startswith("https://"):
        return reference.rstrip("/").rsplit("/", 1)[-1]
    return reference


def classify_status_code(status_code: int) -> PinStatus:
    if status_code == 429 or status_code >= 500:
        return PinStatus.TRANSIENT_FAILURE
    return PinStatus.PERMANENT_FAILURE


class PinataClient:
    """Pinata-backed content-addressed store."""

    def __init__(
        self,
        jwt: Optional[str] = None,
        api_url: Optional[str] = None,
        gateway: Optional[str] = None,
        timeout: int = 60
    ):
        self.jwt = jwt or os.getenv("PINATA_JWT")
        self.api_url = (api_url or os.getenv("PINATA_API_URL", DEFAULT_PINATA_API_URL)).rstrip("/")
        self.gateway = gateway or os.getenv("PINATA_GATEWAY", DEFAULT_PINATA_GATEWAY)
        self.timeout = timeout

    def gateway_url(self, cid: str) -> str:
        return gateway_url(cid, self.gateway)

    def resolve(self, reference: str) -> str:
        """Turn an ``ipfs://`` URI, bare CID or URL into a fetchable URL."""
        if reference.startswith("http://") or reference.startswith("https://"):
            return reference
        return self.gateway_url(extract_cid(reference))

    def upload(
        self,
        content: Union[bytes, Dict[str, Any], List[Any]],
        filename: str,
        mime_type: Optional[str] = None
    ) -> PinResult:
        """
        Pin a blob to IPFS.

        Args:
            content: Raw bytes (image, PDF) or a JSON-serializable object
            filename: Name recorded in Pinata metadata
            mime_type: Content type; JSON objects always use application/json

        Returns:
            PinResult with cid and gateway url on success
        """
        if isinstance(content, (dict, list)):
            content = json.dumps(content, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
            mime_type = "application/json"
        mime_type = mime_type or "application/octet-stream"

        if not self.jwt:
            logger.error("PINATA_JWT not configured")
            return PinResult(status=PinStatus.PERMANENT_FAILURE, error="PINATA_JWT not configured")

        headers = {"Authorization": f"Bearer {self.jwt}"}
        files = {"file": (filename, content, mime_type)}
        data = {"pinataMetadata": json.dumps({"name": filename})}

        started = time.perf_counter()
        try:
            response = requests.post(
                f"{self.api_url}/pinning/pinFileToIPFS",
                files=files,
                data=data,
                headers=headers,
                timeout=self.timeout
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            logger.warning(f"Pinata upload of {filename} failed: {e}")
            return PinResult(status=PinStatus.TRANSIENT_FAILURE, error=f"Pinata unreachable: {e}")
        except requests.exceptions.RequestException as e:
            logger.error(f"Pinata upload of {filename} failed: {e}")
            return PinResult(status=PinStatus.PERMANENT_FAILURE, error=str(e))

        if response.status_code >= 400:
            status = classify_status_code(response.status_code)
            logger.warning(f"Pinata rejected {filename}: HTTP {response.status_code}")
            return PinResult(
                status=status,
                error=f"Pinata upload failed with HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            cid = response.json().get("IpfsHash")
        except ValueError:
            cid = None
        if not cid:
            return PinResult(status=PinStatus.PERMANENT_FAILURE, error="No IPFS hash returned")

        elapsed = (time.perf_counter() - started) * 1000
        logger.info(f"[PERF] Pinned {filename} ({len(content)} bytes) in {elapsed:.2f} ms: {cid}")
        return PinResult(status=PinStatus.SUCCESS, cid=cid, url=self.gateway_url(cid))

    def upload_json(self, document: Dict[str, Any], filename: str = "metadata.json") -> PinResult:
        return self.upload(document, filename, "application/json")

    def upload_file(self, file_path: Path, mime_type: Optional[str] = None) -> PinResult:
        """Pin a local file."""
        file_path = Path(file_path)
        if not file_path.exists():
            return PinResult(status=PinStatus.PERMANENT_FAILURE, error=f"File not found: {file_path}")
        return self.upload(file_path.read_bytes(), file_path.name, mime_type)

    def _get(self, url: str) -> Union[requests.Response, FetchResult]:
        try:
            response = requests.get(url, timeout=self.timeout)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            return FetchResult(status=PinStatus.TRANSIENT_FAILURE, url=url, error=f"Gateway unreachable: {e}")
        except requests.exceptions.RequestException as e:
            return FetchResult(status=PinStatus.PERMANENT_FAILURE, url=url, error=str(e))

        if response.status_code >= 400:
            return FetchResult(
                status=classify_status_code(response.status_code),
                url=url,
                status_code=response.status_code,
                error=f"Failed to fetch {url}: HTTP {response.status_code}"
            )
        return response

    def fetch_bytes(self, reference: str) -> FetchResult:
        """Fetch raw bytes through the gateway."""
        url = self.resolve(reference)
        started = time.perf_counter()
        response = self._get(url)
        if isinstance(response, FetchResult):
            logger.warning(response.error)
            return response
        elapsed = (time.perf_counter() - started) * 1000
        logger.info(f"[PERF] Fetched {url} in {elapsed:.2f} ms")
        return FetchResult(
            status=PinStatus.SUCCESS,
            url=url,
            data=response.content,
            status_code=response.status_code
        )

    def fetch_json(self, reference: str) -> FetchResult:
        """Fetch and parse a JSON document through the gateway."""
        result = self.fetch_bytes(reference)
        if not result.ok:
            return result
        try:
            result.data = json.loads(result.data)
        except ValueError as e:
            return FetchResult(
                status=PinStatus.PERMANENT_FAILURE,
                url=result.url,
                status_code=result.status_code,
                error=f"Invalid JSON at {result.url}: {e}"
            )
        return result


# Global instance (singleton pattern)
_client = None


def get_pinning_client() -> PinataClient:
    """Get singleton Pinata client"""
    global _client
    if _client is None:
        _client = PinataClient()
    return _client
