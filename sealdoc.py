"""
sealdoc : envelope-encrypted documents for multiple signers
"""

import sys
import argparse
import logging

import settings
from envelope import KeyDistributionCoordinator, open_envelope
from errors import SealdocError, AccessDeniedError
from vault import FileVault

logger = logging.getLogger(__name__)

EXIT_ERROR = 1
EXIT_DENIED = 3


def build_coordinator(vault):
    return KeyDistributionCoordinator(key_resolver=vault, store=vault, blobs=vault)


def cmd_keygen(args, vault, coordinator):
    keys = vault.get_user_keys(args.user)
    print(f"Identity: {keys['identity']}\nAddress: {keys['address']}\nPublic key: {keys['public_key']}")


# Encrypts the file for every recipient and stores the envelope in the vault
def cmd_create(args, vault, coordinator):
    with open(args.file, "rb") as f:
        plaintext = f.read()

    # Creator always has keys so they can reopen their own document
    vault.get_user_keys(args.user)

    expires_in = args.expires_in if args.expires_in is not None else settings.DEFAULT_TTL
    expires_at = coordinator.clock() + expires_in if expires_in > 0 else None

    envelope = coordinator.create_envelope(
        plaintext, args.recipients, expires_at=expires_at,
        creator=args.user, public=args.public)
    document = coordinator.publish(envelope)
    print(f"Encryption complete.\nDocument ID: {document.document_id}\nFingerprint: {document.fingerprint}")


# Requests the wrapped key, unwraps it locally and writes the plaintext
def cmd_open(args, vault, coordinator):
    document = vault.get_document_by_id(args.doc_id)
    keys = vault.get_user_keys(args.user, create=False)

    wrapped_key = coordinator.request_unwrap(document.fingerprint, args.user)
    payload = coordinator.fetch_payload(document.fingerprint)
    plaintext = open_envelope(payload, document.fingerprint, wrapped_key, keys["private_key"])

    with open(args.out, "wb") as f:
        f.write(plaintext)
    print(f"Decryption complete.\nOutput in: {args.out}")


def cmd_status(args, vault, coordinator):
    document = vault.get_document_by_id(args.doc_id)
    record = coordinator.advance_status(document.fingerprint, args.user, args.status)
    print(f"Status for {record.identity}: {record.status.value}")


def cmd_list(args, vault, coordinator):
    records = coordinator.records_for(args.user)
    if not records:
        print("No documents.")
    for record in records:
        print(f"{record.fingerprint}  {record.status.value}")


COMMANDS = {
    "keygen": cmd_keygen,
    "create": cmd_create,
    "open": cmd_open,
    "status": cmd_status,
    "list": cmd_list,
}


def build_parser():
    parser = argparse.ArgumentParser(prog="sealdoc")
    parser.add_argument("--vault", dest="vault", default=settings.VAULT_PATH)
    parser.add_argument("-v", "--verbose", action="store_true")
    subparsers = parser.add_subparsers(dest="command", required=True)

    keygen = subparsers.add_parser("keygen")
    keygen.add_argument("--as", dest="user", required=True)

    create = subparsers.add_parser("create")
    create.add_argument("--as", dest="user", required=True)
    create.add_argument("--file", dest="file", required=True)
    create.add_argument("--to", dest="recipients", action="append", default=[])
    create.add_argument("--expires-in", dest="expires_in", type=int, default=None,
                        help="seconds until recipients can no longer obtain the key")
    create.add_argument("--public", action="store_true")

    open_ = subparsers.add_parser("open")
    open_.add_argument("--as", dest="user", required=True)
    open_.add_argument("--id", dest="doc_id", required=True)
    open_.add_argument("--out", dest="out", required=True)

    status = subparsers.add_parser("status")
    status.add_argument("--as", dest="user", required=True)
    status.add_argument("--id", dest="doc_id", required=True)
    status.add_argument("--set", dest="status", required=True,
                        choices=["pending", "key_provided", "ready", "signed"])

    list_ = subparsers.add_parser("list")
    list_.add_argument("--as", dest="user", required=True)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    settings.configure_logging(logging.DEBUG if args.verbose else None)

    vault = FileVault(args.vault)
    coordinator = build_coordinator(vault)

    try:
        COMMANDS[args.command](args, vault, coordinator)
    except AccessDeniedError as e:
        print(f"Not authorised: {e}", file=sys.stderr)
        return EXIT_DENIED
    except SealdocError as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    return 0


if __name__ == "__main__":
    sys.exit(main())
