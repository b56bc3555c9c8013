"""
Records describing a document's key material: the envelope produced at
creation time and the per-recipient records that outlive it.
"""

from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from conditions import StoredCondition
from errors import InvalidStatusTransitionError


class KeyStatus(str, Enum):
    PENDING = "pending"
    KEY_PROVIDED = "key_provided"
    READY = "ready"
    SIGNED = "signed"

    @property
    def rank(self):
        return _STATUS_ORDER.index(self)

    def can_move_to(self, new_status):
        return KeyStatus(new_status).rank >= self.rank


_STATUS_ORDER = [KeyStatus.PENDING, KeyStatus.KEY_PROVIDED, KeyStatus.READY, KeyStatus.SIGNED]


def check_transition(current, new_status):
    """Raise unless moving from current to new_status keeps the status monotonic."""
    try:
        current, new_status = KeyStatus(current), KeyStatus(new_status)
    except ValueError as e:
        raise InvalidStatusTransitionError(f"Unknown key status: {e}") from e
    if not current.can_move_to(new_status):
        raise InvalidStatusTransitionError(
            f"Cannot move key status back from '{current.value}' to '{new_status.value}'")
    return new_status


def record_id(fingerprint, identity):
    return f"{fingerprint.lower()}:{identity.strip().lower()}"


class RecipientKeyRecord(BaseModel):
    """One recipient's wrapped copy of a document key and the condition gating it."""
    model_config = ConfigDict(frozen=True)

    fingerprint: str = Field(..., description="Keccak-256 fingerprint of the encrypted document.")
    identity: str = Field(..., description="Recipient identity (wallet address), lowercased.")
    public_key: str = Field(..., description="Public key the content key was wrapped for (hex).")
    wrapped_key: str = Field(..., description="Content key wrapped for this recipient (hex).")
    condition: StoredCondition = Field(..., description="Access condition evaluated before releasing the wrapped key.")
    status: KeyStatus = Field(default=KeyStatus.PENDING)

    @property
    def id(self):
        return record_id(self.fingerprint, self.identity)

    def with_status(self, new_status):
        return self.model_copy(update={"status": check_transition(self.status, new_status)})


class DocumentRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_id: str
    fingerprint: str
    creator: Optional[str] = None
    creator_wrapped_key: Optional[str] = Field(None, description="Content key wrapped for the creator (hex).")
    access_condition: StoredCondition = Field(..., description="Condition covering every party of the document.")
    blob_handle: Optional[str] = Field(None, description="Where the encrypted payload was stored.")
    is_public: bool = False
    expires_at: Optional[int] = None
    created_at: int


class Envelope(BaseModel):
    """
    Everything created for one document: the encrypted payload, its fingerprint
    and the per-recipient records. Nothing here contains the content key in
    the clear.
    """
    model_config = ConfigDict(frozen=True)

    document: DocumentRecord
    encrypted_payload: bytes = Field(..., repr=False)
    recipients: Dict[str, RecipientKeyRecord] = Field(default_factory=dict)

    @property
    def fingerprint(self):
        return self.document.fingerprint

    @property
    def wrapped_keys_by_identity(self):
        return {identity: record.wrapped_key for identity, record in self.recipients.items()}


class RegistryEntry(BaseModel):
    exists: bool
    is_completed: bool = False
    owner: Optional[str] = None
    current_signatures: int = 0
    required_signatures: int = 0
