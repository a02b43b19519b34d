"""
Opaque blob storage for payment transcripts.

A transcript is pinned once before the payment is submitted; the returned
content hash is what the contract records as ``receiptHash`` and the URI as
``receiptURI``. Hashes are keccak-256 over canonical JSON (sorted keys,
compact separators), so the same transcript always yields the same hash.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

import httpx
from web3 import Web3

from .errors import BlobStoreError
from .storage import ensure_private_dir, write_private_bytes


logger = logging.getLogger(__name__)

LOCAL_URI_PREFIX = "local://"
IPFS_URI_PREFIX = "ipfs://"


def canonical_json(blob: dict[str, Any]) -> bytes:
    return json.dumps(blob, sort_keys=True, separators=(",", ":")).encode()


def content_hash(blob: dict[str, Any]) -> str:
    """bytes32 hex of keccak-256 over the canonical encoding."""
    return Web3.to_hex(Web3.keccak(canonical_json(blob)))


@dataclass
class PinnedBlob:
    content_hash: str
    uri: str


@dataclass
class ReceiptTranscript:
    """What the agent did in exchange for a payment."""

    tool: str
    input_hash: str
    output_hash: str
    signer: str
    nonce: str
    chain_id: int
    cost: str = "0"
    timestamp: int = field(default_factory=lambda: int(time.time()))
    context: dict[str, Any] = field(default_factory=dict)

    def to_blob(self) -> dict[str, Any]:
        return {
            "tool": self.tool,
            "inputHash": self.input_hash,
            "outputHash": self.output_hash,
            "signer": self.signer,
            "nonce": self.nonce,
            "cost": self.cost,
            "timestamp": self.timestamp,
            "chainId": self.chain_id,
            "context": self.context,
        }

    @classmethod
    def from_blob(cls, blob: dict[str, Any]) -> "ReceiptTranscript":
        try:
            return cls(
                tool=blob["tool"],
                input_hash=blob["inputHash"],
                output_hash=blob["outputHash"],
                signer=blob["signer"],
                nonce=str(blob["nonce"]),
                chain_id=int(blob["chainId"]),
                cost=str(blob.get("cost", "0")),
                timestamp=int(blob["timestamp"]),
                context=dict(blob.get("context") or {}),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Invalid receipt transcript: {e}") from e


class BlobStore(Protocol):
    def pin(self, blob: dict[str, Any]) -> PinnedBlob: ...

    def fetch(self, uri: str) -> dict[str, Any]: ...


class LocalBlobStore:
    """Content-addressed directory of JSON blobs."""

    def __init__(self, root: Path):
        self.root = Path(root)
        ensure_private_dir(self.root)

    def _path(self, digest: str) -> Path:
        name = digest[2:] if digest.startswith("0x") else digest
        if len(name) != 64 or any(c not in "0123456789abcdef" for c in name):
            raise BlobStoreError(f"Invalid blob hash: {digest}")
        return self.root / f"{name}.json"

    def pin(self, blob: dict[str, Any]) -> PinnedBlob:
        try:
            digest = content_hash(blob)
            path = self._path(digest)
            if not path.exists():
                write_private_bytes(path, canonical_json(blob))
        except (OSError, TypeError, ValueError) as e:
            raise BlobStoreError(f"Could not pin blob: {e}") from e
        return PinnedBlob(content_hash=digest, uri=f"{LOCAL_URI_PREFIX}{digest}")

    def fetch(self, uri: str) -> dict[str, Any]:
        if not uri.startswith(LOCAL_URI_PREFIX):
            raise BlobStoreError(f"Not a local blob URI: {uri}")
        path = self._path(uri[len(LOCAL_URI_PREFIX):])
        if not path.exists():
            raise BlobStoreError(f"Blob not found: {uri}")
        return json.loads(path.read_bytes())


class IpfsBlobStore:
    """Pins blobs through an IPFS HTTP API (``/api/v0/add`` and ``/api/v0/cat``)."""

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.api_url = api_url.rstrip("/")
        auth = (api_key, api_secret) if api_key and api_secret else None
        self._http = client or httpx.Client(timeout=timeout, auth=auth)

    def _post(self, path: str, **kwargs) -> httpx.Response:
        try:
            response = self._http.post(f"{self.api_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            raise BlobStoreError(f"IPFS request failed: {type(e).__name__}: {e}") from e
        if response.status_code >= 400:
            raise BlobStoreError(f"IPFS API returned {response.status_code}: {response.text[:200]}")
        return response

    def pin(self, blob: dict[str, Any]) -> PinnedBlob:
        try:
            data = canonical_json(blob)
        except (TypeError, ValueError) as e:
            raise BlobStoreError(f"Blob is not JSON-serializable: {e}") from e
        response = self._post(
            "/api/v0/add",
            params={"pin": "true", "cid-version": "1"},
            files={"file": ("receipt.json", data, "application/json")},
        )
        try:
            cid = response.json()["Hash"]
        except (ValueError, KeyError) as e:
            raise BlobStoreError(f"Unexpected IPFS add response: {response.text[:200]}") from e
        logger.info("Pinned receipt transcript %s", cid)
        return PinnedBlob(content_hash=content_hash(blob), uri=f"{IPFS_URI_PREFIX}{cid}")

    def fetch(self, uri: str) -> dict[str, Any]:
        if not uri.startswith(IPFS_URI_PREFIX):
            raise BlobStoreError(f"Not an IPFS URI: {uri}")
        response = self._post("/api/v0/cat", params={"arg": uri[len(IPFS_URI_PREFIX):]})
        try:
            return response.json()
        except ValueError as e:
            raise BlobStoreError(f"Blob at {uri} is not JSON") from e

    def close(self) -> None:
        self._http.close()
