"""
Key storage for mother and child wallets.

Each wallet set lives in a single JSON document under ``<data_dir>/wallets``:

    {"mother": {"name": ..., "publicKey": ..., "privateKey": <base64>} | null,
     "children": [{...}, ...]}

Writes go to a temporary file in the same directory and are moved into place
with ``os.replace`` so a reader never sees a half-written set.
"""

import base64
import binascii
import json
import os
import tempfile
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import base58
from loguru import logger

from bundler.config import KEYSTORE_STRICT_KEYS, MOTHER_WALLET_NAME, WALLETS_DIR
from bundler.errors import CorruptWalletDataError, InvalidArgumentError, KeyMismatchError
from bundler.solana.models import (
    SECRET_KEY_LENGTH,
    NamingScheme,
    Wallet,
    WalletRecord,
    WalletSet,
    keypair_from_secret,
)

SECRET_FIELDS = ("privateKey", "privateKeyBs58", "secretKey", "secret")


@dataclass
class ImportResult:
    """Valid wallets plus one error per rejected record, in input order."""
    wallet_set: WalletSet
    errors: List[CorruptWalletDataError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors and len(self.wallet_set) > 0


def decode_secret(secret: Union[str, bytes, List[int]]) -> bytes:
    """
    Decode secret material given as base58, base64, raw bytes or a JSON int array.

    Raises:
        ValueError: If the material does not decode to exactly 64 bytes
    """
    if isinstance(secret, (bytes, bytearray)):
        raw = bytes(secret)
    elif isinstance(secret, list):
        try:
            raw = bytes(secret)
        except (TypeError, ValueError) as e:
            raise ValueError(f"invalid byte array: {e}") from e
    elif isinstance(secret, str):
        text = secret.strip()
        if not text:
            raise ValueError("secret material is empty")
        raw = b""
        try:
            raw = base58.b58decode(text)
        except ValueError:
            pass
        if len(raw) != SECRET_KEY_LENGTH:
            try:
                raw = base64.b64decode(text, validate=True)
            except (binascii.Error, ValueError):
                raise ValueError("secret material is neither base58 nor base64")
    else:
        raise ValueError(f"unsupported secret material type: {type(secret).__name__}")

    if len(raw) != SECRET_KEY_LENGTH:
        raise ValueError(f"expected {SECRET_KEY_LENGTH} bytes of secret material, got {len(raw)}")
    return raw


class KeyStore:
    """Creates, imports, loads and persists wallet sets. No network access."""

    def __init__(self, data_dir: str = WALLETS_DIR, strict_keys: bool = KEYSTORE_STRICT_KEYS):
        """
        Initialize the key store.

        Args:
            data_dir: Directory holding one JSON file per wallet set
            strict_keys: Raise KeyMismatchError instead of warning when a stored
                public key disagrees with the derived one
        """
        self.data_dir = data_dir
        self.strict_keys = strict_keys
        self._ensure_data_directory()

    def _ensure_data_directory(self) -> None:
        """Ensure the data directory exists."""
        try:
            os.makedirs(self.data_dir, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create wallet directory {self.data_dir}: {e}")
            raise

    def _set_path(self, identifier: str) -> str:
        if not identifier or os.sep in identifier or identifier in (".", ".."):
            raise InvalidArgumentError(f"Invalid wallet set identifier: {identifier!r}")
        return os.path.join(self.data_dir, f"{identifier}.json")

    # Creation

    def create(self, count: int, naming: Optional[NamingScheme] = None,
               identifier: str = "default", with_mother: bool = False) -> WalletSet:
        """
        Generate a fresh wallet set.

        Args:
            count: Number of child wallets to generate
            naming: Naming scheme for the children
            identifier: Wallet set identifier
            with_mother: Also generate a mother wallet

        Returns:
            The new, unpersisted WalletSet

        Raises:
            InvalidArgumentError: If count is less than 1
        """
        if not isinstance(count, int) or isinstance(count, bool) or count < 1:
            raise InvalidArgumentError(f"Wallet count must be a positive integer, got {count!r}")

        naming = naming or NamingScheme()
        children = [Wallet.generate(naming.name_for(i)) for i in range(count)]
        mother = self.create_mother() if with_mother else None

        logger.info(f"Created {count} child wallets for set {identifier}")
        return WalletSet(identifier=identifier, mother=mother, children=children)

    def create_mother(self, name: str = MOTHER_WALLET_NAME) -> Wallet:
        wallet = Wallet.generate(name)
        logger.info(f"Created new mother wallet: {wallet.public_key}")
        return wallet

    def import_mother(self, secret: Union[str, bytes, List[int]], name: str = MOTHER_WALLET_NAME) -> Wallet:
        """
        Import a mother wallet from its secret material.

        Raises:
            CorruptWalletDataError: If the secret does not decode to a keypair
        """
        try:
            raw = decode_secret(secret)
        except ValueError as e:
            raise CorruptWalletDataError(str(e), name=name) from e
        wallet = self._wallet_from_raw(raw, name=name)
        logger.info(f"Imported mother wallet: {wallet.public_key}")
        return wallet

    def import_wallets(self, records: List[Dict[str, Any]], identifier: str = "default") -> ImportResult:
        """
        Import child wallets from ``{name?, privateKey}`` records.

        Every record is checked; a bad record never stops the remaining ones
        from being imported.

        Args:
            records: Records with a name and base58/base64 secret material
            identifier: Wallet set the imported children belong to

        Returns:
            ImportResult with the valid wallets and one error per bad record
        """
        wallets: List[Wallet] = []
        errors: List[CorruptWalletDataError] = []
        seen_names = set()

        for index, record in enumerate(records):
            name = record.get("name") if isinstance(record, dict) else None
            try:
                wallet = self._wallet_from_record(record, index)
            except CorruptWalletDataError as e:
                errors.append(e)
                continue

            if wallet.name is None:
                wallet = Wallet(keypair=wallet.keypair, name=f"ImportedWallet{index + 1}")
            if wallet.name in seen_names:
                errors.append(CorruptWalletDataError("duplicate wallet name", index=index, name=name))
                continue
            seen_names.add(wallet.name)
            wallets.append(wallet)

        if errors:
            logger.warning(f"Rejected {len(errors)} of {len(records)} wallet records for set {identifier}")
        logger.info(f"Imported {len(wallets)} wallets for set {identifier}")
        return ImportResult(wallet_set=WalletSet(identifier=identifier, children=wallets), errors=errors)

    def _wallet_from_record(self, record: Any, index: Optional[int] = None) -> Wallet:
        if not isinstance(record, dict):
            raise CorruptWalletDataError("record is not an object", index=index)

        name = record.get("name")
        secret = next((record[k] for k in SECRET_FIELDS if record.get(k)), None)
        if secret is None:
            raise CorruptWalletDataError("missing secret material", index=index, name=name)

        try:
            raw = decode_secret(secret)
        except ValueError as e:
            raise CorruptWalletDataError(str(e), index=index, name=name) from e

        return self._wallet_from_raw(raw, name=name, stored_public_key=record.get("publicKey"), index=index)

    def _wallet_from_raw(self, raw: bytes, name: Optional[str] = None,
                         stored_public_key: Optional[str] = None, index: Optional[int] = None) -> Wallet:
        try:
            keypair = keypair_from_secret(raw)
        except ValueError as e:
            raise CorruptWalletDataError(str(e), index=index, name=name) from e

        derived = str(keypair.pubkey())
        embedded = base58.b58encode(raw[32:]).decode("ascii")
        for candidate in (stored_public_key, embedded):
            if candidate and candidate != derived:
                message = f"stored public key {candidate} does not match derived {derived}"
                if self.strict_keys:
                    raise KeyMismatchError(message, index=index, name=name)
                logger.warning(f"Public key mismatch for {name or 'wallet'}: {message}; using derived key")
                break

        return Wallet(keypair=keypair, name=name)

    # Persistence

    def persist(self, wallet_set: WalletSet) -> str:
        """
        Atomically write a wallet set, replacing any previous contents.

        Returns:
            The path of the written file
        """
        path = self._set_path(wallet_set.identifier)
        document = {
            "mother": WalletRecord.from_wallet(wallet_set.mother).model_dump(by_alias=True)
            if wallet_set.mother else None,
            "children": [WalletRecord.from_wallet(w).model_dump(by_alias=True) for w in wallet_set.children],
        }

        fd, tmp_path = tempfile.mkstemp(prefix=f".{wallet_set.identifier}.", suffix=".tmp", dir=self.data_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        logger.bind(path=path, has_mother=wallet_set.mother is not None).info(
            f"Persisted wallet set {wallet_set.identifier} ({len(wallet_set.children)} children)"
        )
        return path

    def load_set(self, identifier: str) -> WalletSet:
        """
        Load a wallet set; an absent file yields an empty set.

        Raises:
            CorruptWalletDataError: If the file or any record in it is unreadable
        """
        path = self._set_path(identifier)
        if not os.path.exists(path):
            return WalletSet(identifier=identifier)

        try:
            with open(path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except json.JSONDecodeError as e:
            raise CorruptWalletDataError(f"unreadable wallet file {path}: {e}") from e

        if not isinstance(document, dict):
            raise CorruptWalletDataError(f"wallet file {path} is not an object")

        mother = None
        if document.get("mother"):
            mother = self._wallet_from_record(document["mother"])

        children = []
        problems = []
        for index, record in enumerate(document.get("children") or []):
            try:
                children.append(self._wallet_from_record(record, index))
            except CorruptWalletDataError as e:
                problems.append(str(e))
        if problems:
            raise CorruptWalletDataError(f"{len(problems)} corrupt records in {path}: " + "; ".join(problems))

        return WalletSet(identifier=identifier, mother=mother, children=children)

    def load(self, identifier: str, name: Optional[str] = None) -> Optional[Wallet]:
        """
        Load a single wallet; the mother wallet when no name is given.

        Returns:
            The wallet, or None if the set or name does not exist
        """
        wallet_set = self.load_set(identifier)
        if name is None:
            return wallet_set.mother
        return wallet_set.get(name)

    def list_sets(self) -> List[str]:
        return sorted(
            f[:-len(".json")] for f in os.listdir(self.data_dir)
            if f.endswith(".json") and not f.startswith(".")
        )
