import pytest

from conditions import evaluate
from envelope import KeyDistributionCoordinator, open_envelope
from errors import (
    AccessDeniedError,
    EmptyConditionError,
    EnvelopeCreationError,
    FingerprintMismatchError,
    InvalidIdentityError,
    InvalidPublicKeyError,
    InvalidStatusTransitionError,
    NotFoundError,
)
from digest import fingerprint
from keywrap import generate_keypair, unwrap
from records import KeyStatus, RegistryEntry
from vault import FileVault, MemoryVault

DOCUMENT = b"%PDF-1.7 sale agreement between the parties"


@pytest.fixture
def envelope(coordinator, identities):
    return coordinator.create_envelope(DOCUMENT, identities[:3])


def published(coordinator, *args, **kwargs):
    env = coordinator.create_envelope(*args, **kwargs)
    coordinator.publish(env)
    return env


class TestCreateEnvelope:
    def test_every_recipient_can_open(self, envelope, keypairs, identities):
        assert set(envelope.wrapped_keys_by_identity) == {i.lower() for i in identities[:3]}
        for identity, (sk, _) in zip(identities[:3], keypairs):
            wrapped = envelope.wrapped_keys_by_identity[identity.lower()]
            plaintext = open_envelope(envelope.encrypted_payload, envelope.fingerprint, wrapped, sk)
            assert plaintext == DOCUMENT

    def test_fingerprint_covers_encrypted_payload(self, envelope):
        assert envelope.fingerprint == fingerprint(envelope.encrypted_payload)

    def test_recipients_share_one_content_key(self, envelope, keypairs, identities):
        keys = {unwrap(sk, envelope.wrapped_keys_by_identity[identity.lower()])
                for identity, (sk, _) in zip(identities[:3], keypairs)}
        assert len(keys) == 1
        assert len(keys.pop()) == 64

    def test_one_condition_per_recipient(self, envelope, identities, clock):
        first, second = identities[0].lower(), identities[1].lower()
        condition = envelope.recipients[first].condition
        assert evaluate(condition, first, clock())
        assert not evaluate(condition, second, clock())

    def test_document_condition_covers_all_parties(self, coordinator, identities, clock):
        env = coordinator.create_envelope(DOCUMENT, identities[:2], creator=identities[4])
        condition = env.document.access_condition
        for identity in [identities[0], identities[1], identities[4]]:
            assert evaluate(condition, identity, clock())
        assert not evaluate(condition, identities[2], clock())

    def test_duplicate_recipients_are_wrapped_once(self, coordinator, identities):
        env = coordinator.create_envelope(DOCUMENT, [identities[0], identities[0].upper()])
        assert list(env.recipients) == [identities[0].lower()]

    def test_records_start_pending(self, envelope):
        assert all(r.status is KeyStatus.PENDING for r in envelope.recipients.values())

    def test_explicit_public_keys_override_resolver(self, clock, identities):
        sk, pk = generate_keypair()
        coordinator = KeyDistributionCoordinator(clock=clock)
        env = coordinator.create_envelope(DOCUMENT, ["0xnew"], public_keys={"0xNEW": pk})
        wrapped = env.wrapped_keys_by_identity["0xnew"]
        assert open_envelope(env.encrypted_payload, env.fingerprint, wrapped, sk) == DOCUMENT

    def test_creator_gets_own_copy(self, coordinator, identities, keypairs):
        env = coordinator.create_envelope(DOCUMENT, identities[:1], creator=identities[4])
        sk, _ = keypairs[4]
        assert env.document.creator == identities[4].lower()
        assert identities[4].lower() not in env.recipients
        assert open_envelope(env.encrypted_payload, env.fingerprint,
                             env.document.creator_wrapped_key, sk) == DOCUMENT

    def test_no_parties_is_an_error(self, coordinator):
        with pytest.raises(EnvelopeCreationError) as excinfo:
            coordinator.create_envelope(DOCUMENT, [])
        assert isinstance(excinfo.value.__cause__, EmptyConditionError)

    def test_blank_recipient_is_an_error(self, coordinator, identities):
        with pytest.raises(EnvelopeCreationError):
            coordinator.create_envelope(DOCUMENT, [identities[0], "  "])


class TestAllOrNothing:
    def test_bad_key_for_third_of_five_recipients(self, vault, coordinator, identities):
        vault.register_public_key(identities[2], "04" + "00" * 10)
        with pytest.raises(EnvelopeCreationError) as excinfo:
            coordinator.create_envelope(DOCUMENT, identities)
        assert isinstance(excinfo.value.__cause__, InvalidPublicKeyError)
        # Nothing reached the store for anyone
        for identity in identities:
            assert vault.find_by_identity(identity) == []

    def test_unresolvable_recipient(self, coordinator, identities):
        with pytest.raises(EnvelopeCreationError) as excinfo:
            coordinator.create_envelope(DOCUMENT, identities[:2] + ["0xstranger"])
        assert isinstance(excinfo.value.__cause__, NotFoundError)

    def test_unsupported_key_type_from_resolver(self, coordinator, vault, identities):
        vault.register_public_key(identities[1], 12345)
        with pytest.raises(EnvelopeCreationError) as excinfo:
            coordinator.create_envelope(DOCUMENT, identities[:3])
        assert isinstance(excinfo.value.__cause__, InvalidPublicKeyError)

    @pytest.mark.parametrize("identity", ["alice/../bob", "a b"])
    def test_identity_unusable_as_file_name(self, tmp_path, clock, identity):
        vault = FileVault(str(tmp_path))
        coordinator = KeyDistributionCoordinator(key_resolver=vault, store=vault, blobs=vault, clock=clock)
        with pytest.raises(EnvelopeCreationError) as excinfo:
            coordinator.create_envelope(DOCUMENT, [identity])
        assert isinstance(excinfo.value.__cause__, InvalidIdentityError)

    def test_publish_rolls_back_on_failure(self, coordinator, vault, identities, monkeypatch):
        env = coordinator.create_envelope(DOCUMENT, identities)
        real_put = vault.put
        calls = []

        def flaky_put(record_id, record):
            calls.append(record_id)
            if len(calls) == 3:
                raise OSError("disk full")
            real_put(record_id, record)

        monkeypatch.setattr(vault, "put", flaky_put)
        with pytest.raises(OSError):
            coordinator.publish(env)

        assert vault.find_by_fingerprint(env.fingerprint) == []
        with pytest.raises(NotFoundError):
            vault.get_document(env.fingerprint)
        with pytest.raises(NotFoundError):
            vault.get_blob("memory://" + env.document.document_id)


class TestRequestUnwrap:
    def test_recipient_gets_wrapped_key(self, coordinator, identities, keypairs):
        env = published(coordinator, DOCUMENT, identities[:3])
        wrapped = coordinator.request_unwrap(env.fingerprint, identities[1])
        sk, _ = keypairs[1]
        payload = coordinator.fetch_payload(env.fingerprint)
        assert open_envelope(payload, env.fingerprint, wrapped, sk) == DOCUMENT

    def test_identity_match_is_case_insensitive(self, coordinator, identities):
        env = published(coordinator, DOCUMENT, identities[:1])
        assert coordinator.request_unwrap(env.fingerprint, identities[0].upper())

    def test_uninvited_identity_is_not_found(self, coordinator, identities):
        env = published(coordinator, DOCUMENT, identities[:2])
        with pytest.raises(NotFoundError):
            coordinator.request_unwrap(env.fingerprint, identities[3])

    def test_unknown_document(self, coordinator, identities):
        with pytest.raises(NotFoundError):
            coordinator.request_unwrap("0x" + "00" * 32, identities[0])

    def test_expiry(self, coordinator, identities, clock):
        expiry = clock.now + 3600
        env = published(coordinator, DOCUMENT, identities[:2], expires_at=expiry)

        clock.now = expiry - 1
        assert coordinator.request_unwrap(env.fingerprint, identities[0])

        clock.now = expiry + 1
        with pytest.raises(AccessDeniedError):
            coordinator.request_unwrap(env.fingerprint, identities[0])

    def test_access_denied_is_a_permission_error(self, coordinator, identities, clock):
        env = published(coordinator, DOCUMENT, identities[:1], expires_at=clock.now - 1)
        with pytest.raises(PermissionError):
            coordinator.request_unwrap(env.fingerprint, identities[0])

    def test_creator_can_request_own_key(self, coordinator, identities, keypairs):
        env = published(coordinator, DOCUMENT, identities[:1], creator=identities[4])
        wrapped = coordinator.request_unwrap(env.fingerprint, identities[4])
        sk, _ = keypairs[4]
        assert open_envelope(coordinator.fetch_payload(env.fingerprint), env.fingerprint, wrapped, sk) == DOCUMENT

    def test_identity_verifier(self, vault, clock, identities):
        proofs = {identities[0].lower(): "signed-challenge"}
        coordinator = KeyDistributionCoordinator(
            key_resolver=vault, store=vault, blobs=vault, clock=clock,
            identity_verifier=lambda identity, proof: proofs.get(identity.lower()) == proof)
        env = published(coordinator, DOCUMENT, identities[:1])

        assert coordinator.request_unwrap(env.fingerprint, identities[0], proof="signed-challenge")
        with pytest.raises(AccessDeniedError):
            coordinator.request_unwrap(env.fingerprint, identities[0], proof="forged")

    def test_store_is_required(self, clock):
        with pytest.raises(RuntimeError):
            KeyDistributionCoordinator(clock=clock).request_unwrap("0xabc", "0x1")


class TestOpenEnvelope:
    def test_tampered_payload_is_rejected(self, envelope, keypairs, identities):
        sk, _ = keypairs[0]
        wrapped = envelope.wrapped_keys_by_identity[identities[0].lower()]
        tampered = bytearray(envelope.encrypted_payload)
        tampered[-1] ^= 1
        with pytest.raises(FingerprintMismatchError):
            open_envelope(bytes(tampered), envelope.fingerprint, wrapped, sk)

    def test_wrong_recipient_key(self, envelope, keypairs, identities):
        from errors import DecryptionError
        sk, _ = keypairs[1]
        wrapped = envelope.wrapped_keys_by_identity[identities[0].lower()]
        with pytest.raises(DecryptionError):
            open_envelope(envelope.encrypted_payload, envelope.fingerprint, wrapped, sk)


class TestStatus:
    def test_advance_forward(self, coordinator, identities):
        env = published(coordinator, DOCUMENT, identities[:2])
        record = coordinator.advance_status(env.fingerprint, identities[0], "key_provided")
        assert record.status is KeyStatus.KEY_PROVIDED
        record = coordinator.advance_status(env.fingerprint, identities[0], KeyStatus.SIGNED)
        assert record.status is KeyStatus.SIGNED

    def test_ready_back_to_pending_is_rejected(self, coordinator, vault, identities):
        env = published(coordinator, DOCUMENT, identities[:1])
        coordinator.advance_status(env.fingerprint, identities[0], "ready")
        with pytest.raises(InvalidStatusTransitionError):
            coordinator.advance_status(env.fingerprint, identities[0], "pending")
        assert coordinator.recipients_of(env.fingerprint)[0].status is KeyStatus.READY

    def test_same_status_is_a_no_op(self, coordinator, identities):
        env = published(coordinator, DOCUMENT, identities[:1])
        coordinator.advance_status(env.fingerprint, identities[0], "ready")
        assert coordinator.advance_status(env.fingerprint, identities[0], "ready").status is KeyStatus.READY

    def test_unknown_recipient(self, coordinator, identities):
        env = published(coordinator, DOCUMENT, identities[:1])
        with pytest.raises(NotFoundError):
            coordinator.advance_status(env.fingerprint, identities[3], "ready")

    def test_pending_recipients(self, coordinator, identities):
        env = published(coordinator, DOCUMENT, identities[:3])
        coordinator.advance_status(env.fingerprint, identities[1], "signed")
        assert sorted(coordinator.pending_recipients(env.fingerprint)) == sorted(
            [identities[0].lower(), identities[2].lower()])


class TestListingsAndAccess:
    def test_records_for_identity(self, coordinator, identities):
        first = published(coordinator, DOCUMENT, identities[:2])
        second = published(coordinator, b"another document", identities[1:3])
        assert {r.fingerprint for r in coordinator.records_for(identities[1])} == {
            first.fingerprint, second.fingerprint}
        assert [r.fingerprint for r in coordinator.records_for(identities[0])] == [first.fingerprint]

    def test_can_access(self, coordinator, identities):
        env = published(coordinator, DOCUMENT, identities[:2], creator=identities[4])
        assert coordinator.can_access(env.fingerprint, identities[4])
        assert coordinator.can_access(env.fingerprint, identities[1])
        assert not coordinator.can_access(env.fingerprint, identities[3])

    def test_public_document(self, coordinator, identities, clock):
        env = published(coordinator, DOCUMENT, identities[:1], creator=identities[4], public=True)
        assert env.document.is_public
        assert coordinator.can_access(env.fingerprint, "0xanybody")

    def test_public_document_without_recipients(self, coordinator, identities):
        env = coordinator.create_envelope(DOCUMENT, [], creator=identities[4], public=True)
        assert env.recipients == {}

    def test_fetch_payload_matches_fingerprint(self, coordinator, identities):
        env = published(coordinator, DOCUMENT, identities[:1])
        assert fingerprint(coordinator.fetch_payload(env.fingerprint)) == env.fingerprint


class TestRegistry:
    def test_without_registry(self, coordinator):
        assert coordinator.verify_on_registry("0xabc") is None

    def test_with_registry(self, vault, clock):
        class Registry:
            def verify_document(self, fp):
                return RegistryEntry(exists=fp == "0xabc", current_signatures=1, required_signatures=2)

        coordinator = KeyDistributionCoordinator(store=vault, clock=clock, registry=Registry())
        entry = coordinator.verify_on_registry("0xabc")
        assert entry.exists and entry.current_signatures == 1 and not entry.is_completed
        assert not coordinator.verify_on_registry("0xdef").exists


def test_stateless_coordinators_share_a_store(vault, clock, identities, keypairs):
    creator_side = KeyDistributionCoordinator(key_resolver=vault, store=vault, blobs=vault, clock=clock)
    recipient_side = KeyDistributionCoordinator(store=MemoryVault(), clock=clock)
    env = published(creator_side, DOCUMENT, identities[:1])

    with pytest.raises(NotFoundError):
        recipient_side.request_unwrap(env.fingerprint, identities[0])
    recipient_side.store = vault
    assert recipient_side.request_unwrap(env.fingerprint, identities[0]) == env.wrapped_keys_by_identity[
        identities[0].lower()]
