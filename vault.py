"""
Storage collaborators for the key distribution core: record persistence,
blob storage for encrypted payloads, and identity to public key resolution.

MemoryVault keeps everything in process. FileVault keeps the on-disk layout:

    <vault>/users/<identity>/keys.json      key pair of a local identity
    <vault>/objects/<document_id>.bin       encrypted payload
    <vault>/objects/<document_id>.json      document record
    <vault>/records/<record_id>.json        recipient key records
"""

import os
import re
import json
import glob
import logging
import threading
from typing import Dict, List, Optional, Protocol

from errors import InvalidIdentityError, NotFoundError
from keywrap import generate_keypair, public_key_address
from records import DocumentRecord, RecipientKeyRecord, check_transition

logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    def put(self, record_id: str, record: RecipientKeyRecord) -> None: ...
    def get(self, record_id: str) -> RecipientKeyRecord: ...
    def update_status(self, record_id: str, new_status) -> RecipientKeyRecord: ...
    def delete(self, record_id: str) -> None: ...
    def find_by_identity(self, identity: str) -> List[RecipientKeyRecord]: ...
    def find_by_fingerprint(self, fingerprint: str) -> List[RecipientKeyRecord]: ...
    def put_document(self, document: DocumentRecord) -> None: ...
    def get_document(self, fingerprint: str) -> DocumentRecord: ...
    def delete_document(self, fingerprint: str) -> None: ...


class BlobStore(Protocol):
    def put_blob(self, name: str, data: bytes) -> str: ...
    def get_blob(self, handle: str) -> bytes: ...
    def delete_blob(self, handle: str) -> None: ...


class KeyResolver(Protocol):
    def resolve_public_key(self, identity: str) -> str: ...


def _norm(identity):
    return identity.strip().lower()


class MemoryVault:
    """In-process implementation of RecordStore, BlobStore and KeyResolver."""

    def __init__(self):
        self._records: Dict[str, RecipientKeyRecord] = {}
        self._documents: Dict[str, DocumentRecord] = {}
        self._blobs: Dict[str, bytes] = {}
        self._public_keys: Dict[str, str] = {}
        self._lock = threading.Lock()

    # Key directory
    def register_public_key(self, identity, public_key):
        self._public_keys[_norm(identity)] = public_key

    def resolve_public_key(self, identity):
        try:
            return self._public_keys[_norm(identity)]
        except KeyError:
            raise NotFoundError(f"No public key registered for '{identity}'") from None

    # Records
    def put(self, record_id, record):
        with self._lock:
            self._records[record_id] = record

    def get(self, record_id):
        try:
            return self._records[record_id]
        except KeyError:
            raise NotFoundError(f"No key record '{record_id}'") from None

    def update_status(self, record_id, new_status):
        with self._lock:
            record = self.get(record_id)
            updated = record.with_status(new_status)
            self._records[record_id] = updated
            return updated

    def delete(self, record_id):
        with self._lock:
            self._records.pop(record_id, None)

    def find_by_identity(self, identity):
        identity = _norm(identity)
        return [r for r in self._records.values() if r.identity == identity]

    def find_by_fingerprint(self, fingerprint):
        fingerprint = fingerprint.lower()
        return [r for r in self._records.values() if r.fingerprint == fingerprint]

    # Documents
    def put_document(self, document):
        with self._lock:
            self._documents[document.fingerprint.lower()] = document

    def get_document(self, fingerprint):
        try:
            return self._documents[fingerprint.lower()]
        except KeyError:
            raise NotFoundError(f"No document with fingerprint {fingerprint}") from None

    def delete_document(self, fingerprint):
        with self._lock:
            self._documents.pop(fingerprint.lower(), None)

    # Blobs
    def put_blob(self, name, data):
        handle = f"memory://{name}"
        with self._lock:
            self._blobs[handle] = bytes(data)
        return handle

    def get_blob(self, handle):
        try:
            return self._blobs[handle]
        except KeyError:
            raise NotFoundError(f"No blob at {handle}") from None

    def delete_blob(self, handle):
        with self._lock:
            self._blobs.pop(handle, None)


_SAFE_NAME = re.compile(r"^[A-Za-z0-9_.@-]+$")


def _safe_name(name):
    if not _SAFE_NAME.match(name) or name in (".", ".."):
        raise InvalidIdentityError(f"'{name}' cannot be used as a vault file name")
    return name


class FileVault:
    """Directory backed implementation of RecordStore, BlobStore and KeyResolver."""

    def __init__(self, vault_path):
        self.vault_path = vault_path
        os.makedirs(os.path.join(vault_path, "users"), exist_ok=True)
        os.makedirs(os.path.join(vault_path, "objects"), exist_ok=True)
        os.makedirs(os.path.join(vault_path, "records"), exist_ok=True)

    # Paths
    def _user_path(self, identity):
        return os.path.join(self.vault_path, "users", _safe_name(_norm(identity)), "keys.json")

    def _record_path(self, record_id):
        return os.path.join(self.vault_path, "records", _safe_name(record_id.replace(":", "_")) + ".json")

    def get_obj_paths(self, document_id):
        obj_dir = os.path.join(self.vault_path, "objects")
        bin_path = os.path.join(obj_dir, _safe_name(document_id) + ".bin")
        json_path = os.path.join(obj_dir, _safe_name(document_id) + ".json")
        return obj_dir, bin_path, json_path

    @staticmethod
    def _write_json(path, data):
        # Write then rename so readers never see a half written file
        tmp_path = path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, path)

    @staticmethod
    def _read_json(path):
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    # Key directory
    def get_user_keys(self, identity, create=True):
        """Load a local identity's key pair, creating it on first use."""
        path = self._user_path(identity)

        # If their keys exist, load and return
        if os.path.exists(path):
            return self._read_json(path)
        if not create:
            raise NotFoundError(f"No keys for '{identity}' in {self.vault_path}")

        os.makedirs(os.path.dirname(path), exist_ok=True)
        sk_hex, pk_hex = generate_keypair()
        data = {
            "identity": _norm(identity),
            "private_key": sk_hex,
            "public_key": pk_hex,
            "address": public_key_address(pk_hex),
        }
        self._write_json(path, data)
        logger.info("Generated key pair for '%s'", identity)
        return data

    def resolve_public_key(self, identity):
        return self.get_user_keys(identity, create=False)["public_key"]

    # Records
    def put(self, record_id, record):
        self._write_json(self._record_path(record_id), record.model_dump(mode="json"))

    def get(self, record_id):
        path = self._record_path(record_id)
        if not os.path.exists(path):
            raise NotFoundError(f"No key record '{record_id}'")
        return RecipientKeyRecord.model_validate(self._read_json(path))

    def update_status(self, record_id, new_status):
        record = self.get(record_id)
        updated = record.with_status(new_status)
        self.put(record_id, updated)
        return updated

    def delete(self, record_id):
        path = self._record_path(record_id)
        if os.path.exists(path):
            os.remove(path)

    def _all_records(self):
        for path in sorted(glob.glob(os.path.join(self.vault_path, "records", "*.json"))):
            yield RecipientKeyRecord.model_validate(self._read_json(path))

    def find_by_identity(self, identity):
        identity = _norm(identity)
        return [r for r in self._all_records() if r.identity == identity]

    def find_by_fingerprint(self, fingerprint):
        fingerprint = fingerprint.lower()
        return [r for r in self._all_records() if r.fingerprint == fingerprint]

    # Documents
    def put_document(self, document):
        _, _, json_path = self.get_obj_paths(document.document_id)
        self._write_json(json_path, document.model_dump(mode="json"))

    def get_document_by_id(self, document_id):
        _, _, json_path = self.get_obj_paths(document_id)
        if not os.path.exists(json_path):
            raise NotFoundError(f"No document '{document_id}'")
        return DocumentRecord.model_validate(self._read_json(json_path))

    def _find_document(self, fingerprint) -> Optional[DocumentRecord]:
        fingerprint = fingerprint.lower()
        for path in glob.glob(os.path.join(self.vault_path, "objects", "*.json")):
            document = DocumentRecord.model_validate(self._read_json(path))
            if document.fingerprint.lower() == fingerprint:
                return document
        return None

    def get_document(self, fingerprint):
        document = self._find_document(fingerprint)
        if document is None:
            raise NotFoundError(f"No document with fingerprint {fingerprint}")
        return document

    def delete_document(self, fingerprint):
        document = self._find_document(fingerprint)
        if document is not None:
            os.remove(self.get_obj_paths(document.document_id)[2])

    # Blobs
    def put_blob(self, name, data):
        _, bin_path, _ = self.get_obj_paths(name)
        with open(bin_path, "wb") as f:
            f.write(data)
        return bin_path

    def get_blob(self, handle):
        if not os.path.exists(handle):
            raise NotFoundError(f"No blob at {handle}")
        with open(handle, "rb") as f:
            return f.read()

    def delete_blob(self, handle):
        if os.path.exists(handle):
            os.remove(handle)
