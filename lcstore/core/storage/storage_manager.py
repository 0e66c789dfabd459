from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from lcstore.core.config import StoreConfig
from lcstore.core.state.accounts import AccountAuth, AccountRecord, AccountStore, AccountView
from lcstore.core.state.chain_data import BlockHeaderRecord, ChainStore
from lcstore.core.state.notes import NoteDetails, NoteFilter, NoteRecord, NoteStatus, NoteStore, NoteView
from lcstore.core.state.transactions import (
    TransactionFilter,
    TransactionRecord,
    TransactionResult,
    TransactionStore,
    TransactionView,
)
from lcstore.core.storage.blob_tables import BlobTables
from lcstore.core.storage.export import export_store, import_store
from lcstore.core.storage.sqlite_adapter import SQLiteAdapter
from lcstore.core.sync.state_sync import StateSyncApplier, StateSyncUpdate, SyncSummary
from lcstore.utils.logger import StoreLogger, get_logger

logger = get_logger("storage.manager")


class StorageManager:
    """
    Manages the persistent store of the light client.

    Coordinates the per-entity stores over one SQLite adapter.
    Handles:
    - Accounts (versioned records, code/storage/vault blobs, auth)
    - Notes (input/output lifecycle)
    - Transactions (records, scripts, commit heights)
    - Chain data (headers, MMR nodes, sync state)
    - Sync batches and store export/import
    """

    def __init__(
        self,
        data_dir: Path,
        db_name: str = "store.sqlite3",
        timeout: float = 30.0,
        trace_sql: bool = False,
    ):
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / db_name
        self.adapter = SQLiteAdapter(self.db_path, timeout=timeout, trace_sql=trace_sql)

        self.blobs = BlobTables(self.adapter)
        self.accounts = AccountStore(self.adapter, self.blobs)
        self.notes = NoteStore(self.adapter, self.blobs)
        self.transactions = TransactionStore(self.adapter, self.blobs, self.accounts, self.notes)
        self.chain = ChainStore(self.adapter)
        self.sync = StateSyncApplier(self.adapter, self.notes, self.transactions, self.chain)

        logger.info(f"StorageManager initialized at {self.db_path}")

    @classmethod
    def from_config(cls, config: StoreConfig) -> "StorageManager":
        """Build a store and apply the logging settings of `config`."""
        StoreLogger.reset()
        StoreLogger.setup(
            level=config.log_level,
            log_dir=config.log_dir,
            log_to_file=config.log_to_file,
            trace_sql=config.trace_sql,
        )
        return cls(
            config.data_dir,
            db_name=config.db_name,
            timeout=config.busy_timeout,
            trace_sql=config.trace_sql,
        )

    def close(self):
        self.adapter.close()

    # =========================================================================
    # Accounts
    # =========================================================================

    def insert_account_code(self, code_root: str, code: bytes) -> bool:
        return self.accounts.insert_account_code(code_root, code)

    def insert_account_storage(self, storage_root: str, storage: bytes) -> bool:
        return self.accounts.insert_account_storage(storage_root, storage)

    def insert_account_vault(self, vault_root: str, assets: bytes) -> bool:
        return self.accounts.insert_account_vault(vault_root, assets)

    def get_account_code(self, code_root: str) -> bytes:
        return self.accounts.get_account_code(code_root)

    def get_account_storage(self, storage_root: str) -> bytes:
        return self.accounts.get_account_storage(storage_root)

    def get_account_vault(self, vault_root: str) -> bytes:
        return self.accounts.get_account_vault(vault_root)

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
        return self.accounts.insert_account(
            account_id, nonce, code_root, storage_root, vault_root, committed, account_seed
        )

    def insert_account_state(
        self, record: AccountRecord, code: bytes, storage: bytes, vault: bytes
    ) -> AccountView:
        return self.accounts.insert_account_state(record, code, storage, vault)

    def create_account(
        self,
        record: AccountRecord,
        code: bytes,
        storage: bytes,
        vault: bytes,
        auth_info: bytes,
        public_key: bytes,
    ) -> AccountView:
        return self.accounts.create_account(record, code, storage, vault, auth_info, public_key)

    def get_account(self, account_id: int) -> AccountView:
        return self.accounts.get_account(account_id)

    def get_account_ids(self) -> List[int]:
        return self.accounts.get_account_ids()

    def get_account_history(self, account_id: int) -> List[AccountRecord]:
        return self.accounts.get_account_history(account_id)

    def get_latest_account(self, account_id: int) -> AccountRecord:
        return self.accounts.get_latest_account(account_id)

    def get_all_latest_accounts(self) -> List[AccountRecord]:
        return self.accounts.get_all_latest_accounts()

    def insert_account_auth(self, account_id: int, auth_info: bytes, public_key: bytes) -> AccountAuth:
        return self.accounts.insert_account_auth(account_id, auth_info, public_key)

    def get_account_auth(self, account_id: int) -> AccountAuth:
        return self.accounts.get_account_auth(account_id)

    def fetch_and_cache_account_auth_by_pub_key(self, public_key: bytes) -> AccountAuth:
        return self.accounts.fetch_and_cache_account_auth_by_pub_key(public_key)

    def get_account_auth_by_pub_key(self, public_key: bytes) -> AccountAuth:
        return self.accounts.get_account_auth_by_pub_key(public_key)

    # =========================================================================
    # Notes
    # =========================================================================

    def insert_input_note(
        self,
        note_id: str,
        assets: bytes,
        recipient: str,
        details: Union[NoteDetails, Dict[str, Any], str],
        status: NoteStatus = NoteStatus.PENDING,
        metadata: Optional[Dict[str, Any]] = None,
        inclusion_proof: Optional[bytes] = None,
        script: Optional[bytes] = None,
        created_at: Optional[int] = None,
    ) -> NoteRecord:
        return self.notes.insert_input_note(
            note_id, assets, recipient, details, status, metadata, inclusion_proof, script, created_at
        )

    def insert_output_note(
        self,
        note_id: str,
        assets: bytes,
        recipient: str,
        details: Optional[Union[NoteDetails, Dict[str, Any], str]] = None,
        status: NoteStatus = NoteStatus.PENDING,
        metadata: Optional[Dict[str, Any]] = None,
        inclusion_proof: Optional[bytes] = None,
        script: Optional[bytes] = None,
        created_at: Optional[int] = None,
    ) -> NoteRecord:
        return self.notes.insert_output_note(
            note_id, assets, recipient, details, status, metadata, inclusion_proof, script, created_at
        )

    def get_input_notes(self, note_filter: Union[NoteStatus, NoteFilter, str] = NoteFilter.ALL) -> List[NoteView]:
        return self.notes.get_input_notes(note_filter)

    def get_output_notes(self, note_filter: Union[NoteStatus, NoteFilter, str] = NoteFilter.ALL) -> List[NoteView]:
        return self.notes.get_output_notes(note_filter)

    def get_input_notes_by_ids(self, note_ids: Sequence[str]) -> List[NoteView]:
        return self.notes.get_input_notes_by_ids(note_ids)

    def get_output_notes_by_ids(self, note_ids: Sequence[str]) -> List[NoteView]:
        return self.notes.get_output_notes_by_ids(note_ids)

    def get_input_note(self, note_id: str) -> NoteView:
        return self.notes.get_input_note(note_id)

    def get_note_script(self, script_hash: str) -> bytes:
        return self.notes.get_note_script(script_hash)

    def get_unspent_nullifiers(self) -> List[str]:
        return self.notes.get_unspent_nullifiers()

    def mark_consumer_transaction(
        self, note_id: str, transaction_id: str, submitted_at: Optional[int] = None
    ):
        return self.notes.mark_consumer_transaction(note_id, transaction_id, submitted_at)

    # =========================================================================
    # Transactions
    # =========================================================================

    def insert_transaction_script(self, script_hash: str, payload: Optional[bytes] = None) -> bool:
        return self.transactions.insert_transaction_script(script_hash, payload)

    def insert_transaction(
        self, record: TransactionRecord, script: Optional[bytes] = None
    ) -> TransactionRecord:
        return self.transactions.insert_transaction(record, script)

    def apply_transaction(self, result: TransactionResult) -> TransactionRecord:
        return self.transactions.apply_transaction(result)

    def get_transactions(
        self, tx_filter: Union[TransactionFilter, str] = TransactionFilter.ALL
    ) -> List[TransactionView]:
        return self.transactions.get_transactions(tx_filter)

    def get_transaction(self, transaction_id: str) -> TransactionView:
        return self.transactions.get_transaction(transaction_id)

    # =========================================================================
    # Chain Data
    # =========================================================================

    def insert_block_header(
        self, block_num: int, header: bytes, chain_mmr_peaks: bytes, has_client_notes: bool
    ) -> bool:
        return self.chain.insert_block_header(block_num, header, chain_mmr_peaks, has_client_notes)

    def get_block_headers(self, block_nums: Iterable[int]) -> List[Optional[BlockHeaderRecord]]:
        return self.chain.get_block_headers(block_nums)

    def get_tracked_block_headers(self) -> List[BlockHeaderRecord]:
        return self.chain.get_tracked_block_headers()

    def get_chain_mmr_peaks(self, block_num: int) -> bytes:
        return self.chain.get_chain_mmr_peaks(block_num)

    def insert_chain_mmr_nodes(self, ids: Sequence[int], nodes: Sequence[bytes]) -> int:
        return self.chain.insert_chain_mmr_nodes(ids, nodes)

    def get_chain_mmr_nodes(self, ids: Iterable[int]) -> Dict[int, bytes]:
        return self.chain.get_chain_mmr_nodes(ids)

    def get_chain_mmr_nodes_all(self) -> Dict[int, bytes]:
        return self.chain.get_chain_mmr_nodes_all()

    def get_sync_height(self) -> int:
        return self.chain.get_sync_height()

    def get_note_tags(self) -> List[int]:
        return self.chain.get_note_tags()

    def add_note_tag(self, tags: Iterable[int]) -> List[int]:
        return self.chain.add_note_tag(tags)

    # =========================================================================
    # Sync & Export
    # =========================================================================

    def apply_state_sync(self, update: StateSyncUpdate) -> SyncSummary:
        return self.sync.apply_state_sync(update)

    def export_store(self) -> str:
        return export_store(self.adapter)

    def import_store(self, json_str: str) -> int:
        imported = import_store(self.adapter, json_str)
        self.accounts.clear_auth_cache()
        return imported
