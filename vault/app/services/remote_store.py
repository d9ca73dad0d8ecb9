"""
Remote document store adapters (the sync peer).

The peer is opaque JSON storage addressed by collection and document ID.
Only the sync coordinator talks to it, and only encrypted envelopes are
ever sent: note content never leaves the device in plaintext.

Adapters:
- HttpDocumentStore: REST client built on ``requests``
- InMemoryDocumentStore: in-process peer for offline/dev mode and tests
"""

import base64
import copy
import threading
from typing import Any, Dict, List, Optional, Protocol

import requests

from vault.app.config import get_remote_timeout_seconds
from vault.app.logging_config import get_logger
from vault.app.models.notes import ComplianceMetadata, EncryptedEnvelope, EncryptedRecord, SyncStatus
from vault.app.services.errors import NetworkFailure
from vault.app.services.timestamps import parse_timestamp

logger = get_logger("remote_store")

Document = Dict[str, Any]


class RemoteDocumentStore(Protocol):
    """Create/get/update/delete/query-by-page over named collections."""

    def create(self, collection: str, doc_id: str, document: Document) -> None: ...

    def get(self, collection: str, doc_id: str) -> Optional[Document]: ...

    def update(self, collection: str, doc_id: str, document: Document) -> None: ...

    def delete(self, collection: str, doc_id: str) -> None: ...

    def query_page(
        self,
        collection: str,
        page: int,
        page_size: int,
        modified_since: Optional[str] = None,
    ) -> List[Document]: ...


# ---------------------------------------------------------------------------
# Document codec
# ---------------------------------------------------------------------------


def record_to_document(record: EncryptedRecord, version: int, modified_at: str) -> Document:
    """
    Serialize a record for the peer.

    Local sync bookkeeping (status, base version) stays on the device.
    """
    envelope = record.envelope
    return {
        "id": record.id,
        "patient_id": record.patient_id,
        "template_type": record.template_type,
        "created_at": record.created_at,
        "modified_at": modified_at,
        "consent_obtained": record.consent_obtained,
        "deidentified": record.deidentified,
        "encrypted": True,
        "compliance_metadata": record.compliance_metadata.model_dump(
            mode="json", exclude={"audit_trail"}
        ),
        "version": version,
        "envelope": {
            "ciphertext": base64.b64encode(envelope.ciphertext).decode("ascii"),
            "nonce": base64.b64encode(envelope.nonce).decode("ascii"),
            "checksum": envelope.checksum,
            "key_id": envelope.key_id,
            "content_hash": envelope.content_hash,
            "encryption_version": envelope.encryption_version,
        },
    }


def document_to_record(document: Document) -> EncryptedRecord:
    """
    Parse a peer document.

    Raises:
        ValueError: missing or malformed fields (pydantic's ValidationError
            is a ValueError subclass)
    """
    try:
        envelope = document["envelope"]
        return EncryptedRecord(
            id=document["id"],
            patient_id=document["patient_id"],
            template_type=document["template_type"],
            created_at=document["created_at"],
            modified_at=document["modified_at"],
            consent_obtained=document["consent_obtained"],
            deidentified=document.get("deidentified", True),
            encrypted=True,
            sync_status=SyncStatus.SYNCED,
            compliance_metadata=ComplianceMetadata(**document["compliance_metadata"]),
            version=int(document["version"]),
            synced_version=int(document["version"]),
            synced_at=document["modified_at"],
            envelope=EncryptedEnvelope(
                ciphertext=base64.b64decode(envelope["ciphertext"], validate=True),
                nonce=base64.b64decode(envelope["nonce"], validate=True),
                checksum=envelope["checksum"],
                key_id=envelope["key_id"],
                content_hash=envelope["content_hash"],
                encryption_version=int(envelope.get("encryption_version", 1)),
            ),
        )
    except (KeyError, TypeError) as e:
        raise ValueError(f"Malformed remote document: {type(e).__name__}: {e}")


# ---------------------------------------------------------------------------
# HTTP adapter
# ---------------------------------------------------------------------------


class HttpDocumentStore:
    """
    REST client for the remote document service.

    Routes:
        POST   {base}/collections/{c}/documents          {"id", "document"}
        GET    {base}/collections/{c}/documents/{id}
        PUT    {base}/collections/{c}/documents/{id}     {"document"}
        DELETE {base}/collections/{c}/documents/{id}
        GET    {base}/collections/{c}/documents?page&page_size&modified_since
    """

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        api_token: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else get_remote_timeout_seconds()
        self.session = session or requests.Session()
        if api_token:
            self.session.headers["Authorization"] = f"Bearer {api_token}"

    def _url(self, collection: str, doc_id: Optional[str] = None) -> str:
        url = f"{self.base_url}/collections/{collection}/documents"
        return f"{url}/{doc_id}" if doc_id else url

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.warning("remote_request_failed", method=method, error=type(e).__name__)
            raise NetworkFailure(f"Remote {method} failed: {type(e).__name__}")
        return response

    @staticmethod
    def _check(response: requests.Response, method: str) -> None:
        if response.status_code >= 400:
            raise NetworkFailure(f"Remote {method} returned HTTP {response.status_code}")

    @staticmethod
    def _json(response: requests.Response, method: str) -> Dict[str, Any]:
        """Decode a JSON object body; anything else counts as a failed call."""
        try:
            body = response.json()
        except ValueError:
            raise NetworkFailure(f"Remote {method} returned a non-JSON body")
        if not isinstance(body, dict):
            raise NetworkFailure(f"Remote {method} returned an unexpected body")
        return body

    def create(self, collection: str, doc_id: str, document: Document) -> None:
        response = self._request(
            "POST", self._url(collection), json={"id": doc_id, "document": document}
        )
        self._check(response, "POST")

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        response = self._request("GET", self._url(collection, doc_id))
        if response.status_code == 404:
            return None
        self._check(response, "GET")
        document = self._json(response, "GET").get("document")
        if document is not None and not isinstance(document, dict):
            raise NetworkFailure("Remote GET returned a malformed document")
        return document

    def update(self, collection: str, doc_id: str, document: Document) -> None:
        response = self._request(
            "PUT", self._url(collection, doc_id), json={"document": document}
        )
        self._check(response, "PUT")

    def delete(self, collection: str, doc_id: str) -> None:
        response = self._request("DELETE", self._url(collection, doc_id))
        if response.status_code == 404:
            return
        self._check(response, "DELETE")

    def query_page(
        self,
        collection: str,
        page: int,
        page_size: int,
        modified_since: Optional[str] = None,
    ) -> List[Document]:
        params: Dict[str, Any] = {"page": page, "page_size": page_size}
        if modified_since:
            params["modified_since"] = modified_since
        response = self._request("GET", self._url(collection), params=params)
        self._check(response, "GET")
        documents = self._json(response, "GET").get("documents", [])
        if not isinstance(documents, list):
            raise NetworkFailure("Remote GET returned a malformed page")
        return documents


# ---------------------------------------------------------------------------
# In-process adapter
# ---------------------------------------------------------------------------


class InMemoryDocumentStore:
    """
    Thread-safe in-process peer.

    ``offline = True`` makes every call raise ``NetworkFailure``, which is how
    tests and the dev server simulate a lost connection.
    """

    def __init__(self):
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.Lock()
        self.offline = False

    def _guard(self, operation: str) -> None:
        if self.offline:
            raise NetworkFailure(f"Remote {operation} failed: peer offline")

    def create(self, collection: str, doc_id: str, document: Document) -> None:
        self._guard("create")
        with self._lock:
            docs = self._collections.setdefault(collection, {})
            if doc_id in docs:
                raise NetworkFailure("Remote create returned HTTP 409")
            docs[doc_id] = copy.deepcopy(document)

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        self._guard("get")
        with self._lock:
            document = self._collections.get(collection, {}).get(doc_id)
            return copy.deepcopy(document) if document is not None else None

    def update(self, collection: str, doc_id: str, document: Document) -> None:
        self._guard("update")
        with self._lock:
            docs = self._collections.setdefault(collection, {})
            if doc_id not in docs:
                raise NetworkFailure("Remote update returned HTTP 404")
            docs[doc_id] = copy.deepcopy(document)

    def delete(self, collection: str, doc_id: str) -> None:
        self._guard("delete")
        with self._lock:
            self._collections.get(collection, {}).pop(doc_id, None)

    def query_page(
        self,
        collection: str,
        page: int,
        page_size: int,
        modified_since: Optional[str] = None,
    ) -> List[Document]:
        self._guard("query")
        since = parse_timestamp(modified_since)
        with self._lock:
            docs = sorted(
                self._collections.get(collection, {}).values(),
                key=lambda doc: (str(doc.get("modified_at", "")), str(doc.get("id", ""))),
            )
            if since is not None:
                docs = [
                    doc for doc in docs
                    if (parse_timestamp(doc.get("modified_at")) or since) >= since
                ]
            start = page * page_size
            return copy.deepcopy(docs[start:start + page_size])

    def put_document(self, collection: str, document: Document) -> None:
        """Insert or replace a document directly (seeding and tests)."""
        with self._lock:
            self._collections.setdefault(collection, {})[document["id"]] = copy.deepcopy(document)

    def document_count(self, collection: str) -> int:
        with self._lock:
            return len(self._collections.get(collection, {}))
