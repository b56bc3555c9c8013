"""
Orchestrates a document's key material: generating and applying the content
key, wrapping it for every recipient under that recipient's access condition,
releasing wrapped keys when conditions hold, and reversing it all on the
recipient's side.
"""

import time
import uuid
import logging
from typing import Callable, Optional, Protocol

from aead import generate_content_key, encrypt_bytes, decrypt_bytes
from conditions import (
    identity_condition,
    multi_identity_condition,
    time_condition,
    everyone_condition,
    combine,
    evaluate,
    normalise_identity,
)
from digest import fingerprint as make_fingerprint, verify_fingerprint
from errors import (
    SealdocError,
    AccessDeniedError,
    NotFoundError,
    EnvelopeCreationError,
)
from keywrap import public_key_hex, wrap, unwrap
from records import (
    DocumentRecord,
    Envelope,
    KeyStatus,
    RecipientKeyRecord,
    RegistryEntry,
    check_transition,
    record_id,
)

logger = logging.getLogger(__name__)


class DocumentRegistry(Protocol):
    """Read-only view of an on-chain document registry."""
    def verify_document(self, fingerprint: str) -> RegistryEntry: ...


def system_clock():
    return int(time.time())


def _unique_identities(identities):
    seen = []
    for identity in identities:
        if not isinstance(identity, str) or not identity.strip():
            raise EnvelopeCreationError(f"Invalid recipient identity: {identity!r}")
        identity = normalise_identity(identity)
        if identity not in seen:
            seen.append(identity)
    return seen


class KeyDistributionCoordinator:
    """
    Creates envelopes and serves unwrap requests for them.

    All collaborators are passed in: `key_resolver` maps identities to public
    keys, `store` persists records, `blobs` holds encrypted payloads, `clock`
    returns the current unix time, `registry` optionally confirms fingerprints
    on chain and `identity_verifier(identity, proof)` optionally checks the
    proof a caller presents with an unwrap request. The coordinator never holds
    recipient private keys.
    """

    def __init__(self, key_resolver=None, store=None, blobs=None,
                 clock: Callable[[], int] = system_clock,
                 registry: Optional[DocumentRegistry] = None,
                 identity_verifier: Optional[Callable[[str, object], bool]] = None):
        self.key_resolver = key_resolver
        self.store = store
        self.blobs = blobs
        self.clock = clock
        self.registry = registry
        self.identity_verifier = identity_verifier

    def _require(self, name):
        collaborator = getattr(self, name)
        if collaborator is None:
            raise RuntimeError(f"KeyDistributionCoordinator has no {name} configured")
        return collaborator

    def _public_key_for(self, identity, public_keys):
        if public_keys:
            for candidate, public_key in public_keys.items():
                if normalise_identity(candidate) == identity:
                    return public_key
        return self._require("key_resolver").resolve_public_key(identity)

    def _recipient_condition(self, identity, expires_at, public):
        condition = everyone_condition() if public else identity_condition(identity)
        if expires_at is not None:
            condition = combine(condition, time_condition(expires_at))
        return condition

    def _document_condition(self, parties, expires_at, public):
        condition = everyone_condition() if public else multi_identity_condition(parties)
        if expires_at is not None:
            condition = combine(condition, time_condition(expires_at))
        return condition

    def create_envelope(self, plaintext, recipients, expires_at=None, creator=None,
                        public_keys=None, public=False, aad=None):
        """
        Encrypt plaintext under a fresh content key and wrap that key for every
        recipient (and the creator, when given).

        Either every recipient gets a wrapped key or the call raises
        EnvelopeCreationError and nothing is returned. Nothing is persisted
        here; see publish().
        """
        recipients = _unique_identities(recipients or [])
        creator = normalise_identity(creator) if creator else None
        parties = recipients + ([creator] if creator and creator not in recipients else [])

        try:
            # Resolve every key before any key material exists
            recipient_keys = {identity: self._public_key_for(identity, public_keys)
                              for identity in recipients}
            creator_key = self._public_key_for(creator, public_keys) if creator else None
            document_condition = self._document_condition(parties, expires_at, public)

            content_key = generate_content_key()
            encrypted_payload = encrypt_bytes(content_key, plaintext, aad)
            fp = make_fingerprint(encrypted_payload)

            records = {}
            for identity in recipients:
                logger.debug("Wrapping content key for %s", identity)
                public_key = recipient_keys[identity]
                wrapped_key = wrap(public_key, content_key)
                records[identity] = RecipientKeyRecord(
                    fingerprint=fp,
                    identity=identity,
                    public_key=public_key_hex(public_key),
                    wrapped_key=wrapped_key,
                    condition=self._recipient_condition(identity, expires_at, public),
                )
            creator_wrapped_key = wrap(creator_key, content_key) if creator else None
        except SealdocError as e:
            logger.warning("Envelope creation aborted: %s", e)
            raise EnvelopeCreationError(f"Envelope creation failed: {e}") from e

        document = DocumentRecord(
            document_id=uuid.uuid4().hex,
            fingerprint=fp,
            creator=creator,
            creator_wrapped_key=creator_wrapped_key,
            access_condition=document_condition,
            is_public=public,
            expires_at=expires_at,
            created_at=self.clock(),
        )
        logger.info("Created envelope %s for %d recipient(s)", fp, len(records))
        return Envelope(document=document, encrypted_payload=encrypted_payload, recipients=records)

    def publish(self, envelope):
        """
        Persist an envelope's payload, document record and recipient records.
        If any write fails the writes already made are removed again.
        """
        store = self._require("store")
        blobs = self._require("blobs")

        written_records = []
        handle = None
        document_written = False
        try:
            handle = blobs.put_blob(envelope.document.document_id, envelope.encrypted_payload)
            document = envelope.document.model_copy(update={"blob_handle": handle})
            store.put_document(document)
            document_written = True
            for record in envelope.recipients.values():
                store.put(record.id, record)
                written_records.append(record.id)
        except Exception:
            logger.error("Publishing envelope %s failed, rolling back", envelope.fingerprint)
            for rid in written_records:
                store.delete(rid)
            if document_written:
                store.delete_document(envelope.fingerprint)
            if handle is not None:
                blobs.delete_blob(handle)
            raise

        logger.info("Published envelope %s as document %s", envelope.fingerprint, document.document_id)
        return document

    def request_unwrap(self, fingerprint, identity, proof=None):
        """
        Return the wrapped content key stored for identity if its access
        condition holds now. The caller unwraps it with their own private key.
        """
        if self.identity_verifier is not None and not self.identity_verifier(identity, proof):
            logger.warning("Identity proof rejected for %s on %s", identity, fingerprint)
            raise AccessDeniedError(f"Identity proof for '{identity}' was rejected")

        store = self._require("store")
        try:
            record = store.get(record_id(fingerprint, identity))
        except NotFoundError:
            return self._creator_unwrap(fingerprint, identity)

        if not evaluate(record.condition, identity, self.clock()):
            logger.warning("Access denied for %s on %s", identity, fingerprint)
            raise AccessDeniedError(f"'{identity}' is not authorised for document {fingerprint}")

        logger.info("Released wrapped key for %s on %s", record.identity, fingerprint)
        return record.wrapped_key

    def _creator_unwrap(self, fingerprint, identity):
        document = self._require("store").get_document(fingerprint)
        if (document.creator and document.creator_wrapped_key
                and normalise_identity(identity) == document.creator):
            # The creator's own copy is not time bound
            logger.info("Released creator key on %s", fingerprint)
            return document.creator_wrapped_key
        raise NotFoundError(f"No key record for '{identity}' on document {fingerprint}")

    def can_access(self, fingerprint, identity):
        document = self._require("store").get_document(fingerprint)
        return evaluate(document.access_condition, identity, self.clock())

    def fetch_payload(self, fingerprint):
        document = self._require("store").get_document(fingerprint)
        if document.blob_handle is None:
            raise NotFoundError(f"Document {fingerprint} has no stored payload")
        return self._require("blobs").get_blob(document.blob_handle)

    def advance_status(self, fingerprint, identity, new_status):
        """Move a recipient's delivery status forward; backward moves are rejected."""
        store = self._require("store")
        rid = record_id(fingerprint, identity)
        record = store.get(rid)
        new_status = check_transition(record.status, new_status)
        if new_status == record.status:
            return record

        updated = store.update_status(rid, new_status)
        logger.info("Key status for %s on %s: %s -> %s",
                    record.identity, fingerprint, record.status.value, new_status.value)
        return updated

    def records_for(self, identity):
        return self._require("store").find_by_identity(identity)

    def recipients_of(self, fingerprint):
        return self._require("store").find_by_fingerprint(fingerprint)

    def pending_recipients(self, fingerprint):
        return [r.identity for r in self.recipients_of(fingerprint) if r.status != KeyStatus.SIGNED]

    def verify_on_registry(self, fingerprint):
        if self.registry is None:
            logger.debug("No registry configured, skipping on-chain check for %s", fingerprint)
            return None
        return self.registry.verify_document(fingerprint)


def open_envelope(encrypted_payload, fingerprint, wrapped_key, private_key, aad=None):
    """
    Recipient side: check the payload against its fingerprint, unwrap the
    content key with the recipient's private key and decrypt.
    """
    verify_fingerprint(encrypted_payload, fingerprint)
    content_key = unwrap(private_key, wrapped_key)
    return decrypt_bytes(content_key, encrypted_payload, aad)
