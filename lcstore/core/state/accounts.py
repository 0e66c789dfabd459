"""
Account Store - versioned account records for the light client.

Conceptual Background:
---------------------
An account's state is identified by (account id, nonce). Every time the
client observes a new nonce for an account, a new row is appended; rows are
never rewritten. The *current* state of an account is the row with the
highest nonce, compared as an unsigned integer (nonce 10 is newer than 9).

Account code, storage and vault payloads are not stored on the row itself:
the row references them by root in the content-addressed tables, so states
that share code or storage share the blob.

Account Auth:
------------
Key material needed to sign for an account lives in account_auth, one row
per account. Reverse lookup by public key goes through an in-memory cache
that must be populated explicitly with fetch_and_cache_account_auth_by_pub_key;
a cache miss is an error, never a silent fallback to the database.
"""

import base64
import sqlite3
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from lcstore.core.errors import DuplicateKeyError, NotFoundError
from lcstore.core.storage.blob_tables import BlobTables
from lcstore.core.storage.sqlite_adapter import SQLiteAdapter, u64_from_db, u64_to_db
from lcstore.utils.logger import get_logger
from lcstore.utils.validation import parse_u64, validate_bytes

logger = get_logger("state.accounts")


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True)
class AccountRecord:
    """
    One observed state of an account.

    Attributes:
        id: Account id (u64)
        nonce: Account nonce (u64)
        code_root: Root of the account code blob
        storage_root: Root of the account storage blob
        vault_root: Root of the account vault blob
        committed: Whether this state has been seen on chain
        account_seed: Seed used to derive the id; only set for accounts
            created locally before their first on-chain nonce
    """
    id: int
    nonce: int
    code_root: str
    storage_root: str
    vault_root: str
    committed: bool
    account_seed: Optional[bytes] = None

    def __post_init__(self):
        object.__setattr__(self, "id", parse_u64(self.id, "account_id"))
        object.__setattr__(self, "nonce", parse_u64(self.nonce, "nonce"))
        for name in ("code_root", "storage_root", "vault_root"):
            if not isinstance(getattr(self, name), str) or not getattr(self, name):
                raise ValueError(f"{name} must be a non-empty str")
        if self.account_seed is not None:
            valid, err = validate_bytes(self.account_seed, "account_seed")
            if not valid:
                raise ValueError(err)
            object.__setattr__(self, "account_seed", bytes(self.account_seed))
        object.__setattr__(self, "committed", bool(self.committed))


@dataclass(frozen=True)
class AccountAuth:
    """Signing material for one account."""
    account_id: int
    auth_info: bytes
    public_key: bytes


@dataclass(frozen=True)
class AccountView:
    """An account state together with its code, storage and vault payloads."""
    account: AccountRecord
    code: bytes
    storage: bytes
    vault: bytes

    @property
    def id(self) -> int:
        return self.account.id

    @property
    def nonce(self) -> int:
        return self.account.nonce

    @property
    def account_seed(self) -> Optional[bytes]:
        return self.account.account_seed


def pub_key_cache_key(public_key: bytes) -> str:
    """Stable text key for a public key."""
    return base64.b64encode(bytes(public_key)).decode("ascii")


def _account_from_row(row: sqlite3.Row) -> AccountRecord:
    return AccountRecord(
        id=u64_from_db(row["id"]),
        nonce=u64_from_db(row["nonce"]),
        code_root=row["code_root"],
        storage_root=row["storage_root"],
        vault_root=row["vault_root"],
        committed=bool(row["committed"]),
        account_seed=row["account_seed"],
    )


def _auth_from_row(row: sqlite3.Row) -> AccountAuth:
    return AccountAuth(
        account_id=u64_from_db(row["account_id"]),
        auth_info=row["auth_info"],
        public_key=row["pub_key"],
    )


def select_latest(records: List[AccountRecord]) -> Dict[int, AccountRecord]:
    """
    Reduce account rows to the latest row per id.

    Single pass; a row replaces the current best only on a strictly greater
    nonce, so on ties the first row seen wins.
    """
    latest: Dict[int, AccountRecord] = {}
    for record in records:
        best = latest.get(record.id)
        if best is None or record.nonce > best.nonce:
            latest[record.id] = record
    return latest


# =============================================================================
# Account Store
# =============================================================================


class AccountStore:
    """
    Versioned account records plus the account blobs and auth material.
    """

    def __init__(self, adapter: SQLiteAdapter, blobs: BlobTables):
        self.adapter = adapter
        self.blobs = blobs
        self._auth_cache: Dict[str, AccountAuth] = {}
        self._auth_lock = threading.Lock()

    # =========================================================================
    # Account Blobs
    # =========================================================================

    def insert_account_code(self, code_root: str, code: bytes) -> bool:
        return self.blobs.account_code.put(code_root, code)

    def insert_account_storage(self, storage_root: str, storage: bytes) -> bool:
        return self.blobs.account_storage.put(storage_root, storage)

    def insert_account_vault(self, vault_root: str, assets: bytes) -> bool:
        return self.blobs.account_vaults.put(vault_root, assets)

    def get_account_code(self, code_root: str) -> bytes:
        return self.blobs.account_code.get(code_root)

    def get_account_storage(self, storage_root: str) -> bytes:
        return self.blobs.account_storage.get(storage_root)

    def get_account_vault(self, vault_root: str) -> bytes:
        return self.blobs.account_vaults.get(vault_root)

    # =========================================================================
    # Account Records
    # =========================================================================

    def insert_account(
        self,
        account_id: int,
        nonce: int,
        code_root: str,
        storage_root: str,
        vault_root: str,
        committed: bool,
        account_seed: Optional[bytes] = None,
    ) -> AccountRecord:
        """
        Append a new account state.

        Raises:
            DuplicateKeyError: if (account_id, nonce) is already stored
        """
        record = AccountRecord(
            id=account_id,
            nonce=nonce,
            code_root=code_root,
            storage_root=storage_root,
            vault_root=vault_root,
            committed=committed,
            account_seed=account_seed,
        )

        with self.adapter.transaction() as conn:
            self._insert_record(conn, record)

        logger.debug(f"Inserted account {record.id} at nonce {record.nonce}")
        return record

    def _insert_record(self, conn: sqlite3.Connection, record: AccountRecord):
        try:
            conn.execute(
                """
                INSERT INTO accounts
                    (id, nonce, code_root, storage_root, vault_root, committed, account_seed)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    u64_to_db(record.id),
                    u64_to_db(record.nonce),
                    record.code_root,
                    record.storage_root,
                    record.vault_root,
                    int(record.committed),
                    record.account_seed,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateKeyError(
                f"Account {record.id} already has a row for nonce {record.nonce}"
            ) from e

    def insert_account_state(
        self,
        record: AccountRecord,
        code: bytes,
        storage: bytes,
        vault: bytes,
    ) -> AccountView:
        """
        Write an account state and the payloads it references in one
        transaction. Joins the caller's transaction when there is one.

        Raises:
            DuplicateKeyError: if (id, nonce) is already stored, or a root is
                stored with a different payload
        """
        with self.adapter.transaction() as conn:
            self.blobs.account_code.put(record.code_root, code)
            self.blobs.account_storage.put(record.storage_root, storage)
            self.blobs.account_vaults.put(record.vault_root, vault)
            self._insert_record(conn, record)

        logger.debug(f"Inserted account state {record.id} at nonce {record.nonce}")
        return AccountView(record, bytes(code), bytes(storage), bytes(vault))

    def create_account(
        self,
        record: AccountRecord,
        code: bytes,
        storage: bytes,
        vault: bytes,
        auth_info: bytes,
        public_key: bytes,
    ) -> AccountView:
        """
        Add a new account: payloads, first state and auth material are
        written together or not at all.

        Raises:
            DuplicateKeyError: if the state or the auth material already exists
        """
        with self.adapter.transaction():
            view = self.insert_account_state(record, code, storage, vault)
            self.insert_account_auth(record.id, auth_info, public_key)

        logger.info(f"Created account {record.id}")
        return view

    def get_account(self, account_id: int) -> AccountView:
        """
        Latest state of an account joined with its payloads.

        Raises:
            NotFoundError: if the account has no rows, or a payload its
                latest state references is missing
        """
        account_id = parse_u64(account_id, "account_id")
        with self.adapter.snapshot() as conn:
            rows = conn.execute(
                "SELECT * FROM accounts WHERE id = ?", (u64_to_db(account_id),)
            ).fetchall()
            latest = select_latest([_account_from_row(row) for row in rows])
            if account_id not in latest:
                raise NotFoundError(f"No account with id {account_id}")
            record = latest[account_id]

            row = conn.execute(
                """
                SELECT account_code.payload AS code,
                       account_storage.payload AS storage,
                       account_vaults.payload AS vault
                FROM accounts
                JOIN account_code ON accounts.code_root = account_code.root
                JOIN account_storage ON accounts.storage_root = account_storage.root
                JOIN account_vaults ON accounts.vault_root = account_vaults.root
                WHERE accounts.id = ? AND accounts.nonce = ?
                """,
                (u64_to_db(record.id), u64_to_db(record.nonce)),
            ).fetchone()

        if row is None:
            raise NotFoundError(
                f"Account {account_id} at nonce {record.nonce} references missing payloads"
            )
        return AccountView(record, row["code"], row["storage"], row["vault"])

    def get_account_ids(self) -> List[int]:
        """Distinct account ids across all stored nonces, ascending."""
        with self.adapter.snapshot() as conn:
            rows = conn.execute("SELECT DISTINCT id FROM accounts ORDER BY id").fetchall()
        return [u64_from_db(row["id"]) for row in rows]

    def get_account_history(self, account_id: int) -> List[AccountRecord]:
        """All stored states of an account, oldest nonce first."""
        key = u64_to_db(parse_u64(account_id, "account_id"))
        with self.adapter.snapshot() as conn:
            rows = conn.execute("SELECT * FROM accounts WHERE id = ?", (key,)).fetchall()
        records = [_account_from_row(row) for row in rows]
        return sorted(records, key=lambda r: r.nonce)

    def get_latest_account(self, account_id: int) -> AccountRecord:
        """
        Current state of an account (maximum nonce).

        Raises:
            NotFoundError: if the account has no rows
        """
        account_id = parse_u64(account_id, "account_id")
        with self.adapter.snapshot() as conn:
            rows = conn.execute(
                "SELECT * FROM accounts WHERE id = ?", (u64_to_db(account_id),)
            ).fetchall()

        latest = select_latest([_account_from_row(row) for row in rows])
        if account_id not in latest:
            raise NotFoundError(f"No account with id {account_id}")
        return latest[account_id]

    def get_all_latest_accounts(self) -> List[AccountRecord]:
        """Latest state of every account, ordered by account id."""
        with self.adapter.snapshot() as conn:
            rows = conn.execute("SELECT * FROM accounts").fetchall()

        latest = select_latest([_account_from_row(row) for row in rows])
        return [latest[account_id] for account_id in sorted(latest)]

    # =========================================================================
    # Account Auth
    # =========================================================================

    def insert_account_auth(
        self,
        account_id: int,
        auth_info: bytes,
        public_key: bytes,
    ) -> AccountAuth:
        """
        Store signing material for an account.

        Raises:
            DuplicateKeyError: if the account already has auth material
        """
        account_id = parse_u64(account_id, "account_id")
        for name, value in (("auth_info", auth_info), ("public_key", public_key)):
            valid, err = validate_bytes(value, name)
            if not valid:
                raise ValueError(err)

        auth = AccountAuth(account_id, bytes(auth_info), bytes(public_key))
        with self.adapter.transaction() as conn:
            try:
                conn.execute(
                    "INSERT INTO account_auth (account_id, auth_info, pub_key) VALUES (?, ?, ?)",
                    (u64_to_db(account_id), auth.auth_info, auth.public_key),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateKeyError(f"Auth for account {account_id} already stored") from e
        return auth

    def get_account_auth(self, account_id: int) -> AccountAuth:
        """
        Raises:
            NotFoundError: if the account has no auth material
        """
        account_id = parse_u64(account_id, "account_id")
        with self.adapter.snapshot() as conn:
            row = conn.execute(
                "SELECT * FROM account_auth WHERE account_id = ?", (u64_to_db(account_id),)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"No auth for account {account_id}")
        return _auth_from_row(row)

    def fetch_and_cache_account_auth_by_pub_key(self, public_key: bytes) -> AccountAuth:
        """
        Load auth material by public key into the reverse-lookup cache.

        Raises:
            NotFoundError: if no account uses this public key
        """
        with self.adapter.snapshot() as conn:
            row = conn.execute(
                "SELECT * FROM account_auth WHERE pub_key = ?", (bytes(public_key),)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"No auth for public key {pub_key_cache_key(public_key)}")

        auth = _auth_from_row(row)
        with self._auth_lock:
            self._auth_cache[pub_key_cache_key(public_key)] = auth
        return auth

    def get_account_auth_by_pub_key(self, public_key: bytes) -> AccountAuth:
        """
        Reverse lookup from the cache only.

        Raises:
            NotFoundError: if the key was never fetched into the cache
        """
        key = pub_key_cache_key(public_key)
        with self._auth_lock:
            auth = self._auth_cache.get(key)
        if auth is None:
            raise NotFoundError(f"Public key {key} not in auth cache")
        return auth

    def clear_auth_cache(self):
        with self._auth_lock:
            self._auth_cache.clear()
