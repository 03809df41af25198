#!/usr/bin/env python3
# QuickBill state: inventory + transaction lists mirrored to the key/value store
import datetime as dt
import logging
import os
import threading
import time
import uuid
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional

from pos_models import (
    BillItem,
    Item,
    ModelDecodeError,
    Transaction,
    decode_inventory,
    decode_transactions,
    encode_inventory,
    encode_transactions,
)
from pos_store import KeyValueStore

logger = logging.getLogger(__name__)

STORAGE_KEY = "quickbill_v2_transactions"
INVENTORY_STORAGE_KEY = "quickbill_v2_inventory"
BACKUP_DIR = "pos_backup"

# Marks a setting the caller left to the environment
FROM_ENV: Any = object()

# Fresh installs start with no catalogue
FIXED_ITEMS: List[Item] = []

CONFIRM_DELETE_ITEM = "Are you sure you want to delete this item?"
CONFIRM_DELETE_TRANSACTION = "Permanently delete this record?"
CONFIRM_CLEAR_ALL = "CRITICAL: This will delete ALL items and ALL transaction history. Continue?"

ConfirmFn = Callable[[str], bool]
TransactionListener = Callable[[Transaction], None]


class RepositoryState(str, Enum):
    LOADING = "loading"
    READY = "ready"


class RepositoryNotReady(RuntimeError):
    """Raised when a write is attempted before the initial load completed."""


def iso_now() -> str:
    return dt.datetime.utcnow().replace(microsecond=0).isoformat() + "Z"


def epoch_millis() -> int:
    return int(time.time() * 1000)


def new_record_id() -> str:
    return uuid.uuid4().hex


def build_bill_item(item: Item, quantity: float, line_id: Optional[str] = None) -> BillItem:
    """Snapshot an inventory item into a bill line; total is rate x quantity."""
    return BillItem(
        id=line_id or new_record_id(),
        item_id=item.id,
        name=item.name,
        rate=item.rate,
        quantity=quantity,
        total=item.rate * quantity,
    )


def build_transaction(
    lines: Iterable[BillItem],
    customer_name: Optional[str] = None,
    txn_id: Optional[str] = None,
    timestamp: Optional[int] = None,
) -> Transaction:
    lines = tuple(lines)
    return Transaction(
        id=txn_id or new_record_id(),
        timestamp=timestamp if timestamp is not None else epoch_millis(),
        items=lines,
        total_amount=sum(line.total for line in lines),
        customer_name=(customer_name or None),
    )


def transactions_storage_key() -> str:
    return os.environ.get("QUICKBILL_TRANSACTIONS_KEY") or STORAGE_KEY


def inventory_storage_key() -> str:
    return os.environ.get("QUICKBILL_INVENTORY_KEY") or INVENTORY_STORAGE_KEY


def backup_dir_setting() -> Optional[str]:
    """Quarantine directory from POS_BACKUP_DIR; an empty value turns it off."""
    return os.environ.get("POS_BACKUP_DIR", BACKUP_DIR).strip() or None


def _deny(_description: str) -> bool:
    return False


class BillingRepository:
    """
    Authoritative in-memory inventory and transaction lists.

    The repository starts LOADING; ``load()`` reads both slots and flips it
    to READY. Every public mutation changes the in-memory list first and
    then writes the lists back with ``synchronize()``, both under one lock
    so concurrent requests cannot drop each other's changes. Nothing is
    written to the store while LOADING.
    """

    def __init__(
        self,
        store: KeyValueStore,
        confirm: Optional[ConfirmFn] = None,
        transactions_key: Optional[str] = None,
        inventory_key: Optional[str] = None,
        default_items: Optional[List[Item]] = None,
        backup_dir: Optional[str] = FROM_ENV,
    ):
        self.store = store
        self.confirm = confirm or _deny
        self.transactions_key = transactions_key or transactions_storage_key()
        self.inventory_key = inventory_key or inventory_storage_key()
        self.default_items = list(FIXED_ITEMS if default_items is None else default_items)
        self.backup_dir = backup_dir_setting() if backup_dir is FROM_ENV else (backup_dir or None)
        self.state = RepositoryState.LOADING
        self.items: List[Item] = []
        self.transactions: List[Transaction] = []
        self._listeners: List[TransactionListener] = []
        self._lock = threading.RLock()

    # ---------- LIFECYCLE ----------
    @property
    def is_ready(self) -> bool:
        return self.state is RepositoryState.READY

    def load(self) -> "BillingRepository":
        with self._lock:
            self.transactions = self._load_transactions()
            self.items = self._load_inventory()
            self.state = RepositoryState.READY
        logger.info(
            "Loaded %d item(s) and %d transaction(s) from storage",
            len(self.items),
            len(self.transactions),
        )
        return self

    def _load_transactions(self) -> List[Transaction]:
        raw = self.store.get(self.transactions_key)
        if not raw:
            return []
        try:
            return decode_transactions(raw)
        except ModelDecodeError as exc:
            logger.warning("Transactions load failed (%s): %s", self.transactions_key, exc)
            self._quarantine(self.transactions_key, raw)
            return []

    def _load_inventory(self) -> List[Item]:
        raw = self.store.get(self.inventory_key)
        if raw is None:
            return list(self.default_items)
        try:
            # An explicitly stored [] is honored; it is not replaced by the seed
            return decode_inventory(raw)
        except ModelDecodeError as exc:
            logger.warning("Inventory load failed (%s): %s", self.inventory_key, exc)
            self._quarantine(self.inventory_key, raw)
            return []

    def _quarantine(self, key: str, raw: str) -> Optional[Path]:
        """Keep an undecodable payload on disk before it is overwritten."""
        if not self.backup_dir:
            return None
        stamp = dt.datetime.utcnow().strftime("%Y%m%dT%H%M%S%fZ")
        path = Path(self.backup_dir) / f"{key}_{stamp}.corrupt"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(raw, encoding="utf-8")
        except OSError as exc:
            logger.warning("Could not preserve corrupt payload for %s: %s", key, exc)
            return None
        logger.info("Preserved corrupt %s payload at %s", key, path)
        return path

    def _require_ready(self) -> None:
        if not self.is_ready:
            raise RepositoryNotReady("repository is still loading; call load() first")

    def synchronize(self) -> None:
        self._require_ready()
        with self._lock:
            self.store.set(self.transactions_key, encode_transactions(self.transactions))
            self.store.set(self.inventory_key, encode_inventory(self.items))

    # ---------- LISTENERS ----------
    def on_transaction_saved(self, listener: TransactionListener) -> TransactionListener:
        self._listeners.append(listener)
        return listener

    def _notify_saved(self, transaction: Transaction) -> None:
        for listener in list(self._listeners):
            try:
                listener(transaction)
            except Exception:
                logger.exception("Transaction listener failed for %s", transaction.id)

    def _confirmed(self, description: str, confirm: Optional[ConfirmFn]) -> bool:
        return bool((confirm or self.confirm)(description))

    # ---------- INVENTORY ----------
    def add_item(self, item: Item) -> Item:
        self._require_ready()
        with self._lock:
            self.items = self.items + [item]
            self.synchronize()
        return item

    def update_item(self, item: Item) -> bool:
        """Replace the first entry with the same id. Unknown ids change nothing."""
        self._require_ready()
        with self._lock:
            updated = list(self.items)
            replaced = False
            for idx, existing in enumerate(updated):
                if existing.id == item.id:
                    updated[idx] = item
                    replaced = True
                    break
            self.items = updated
            self.synchronize()
        return replaced

    def delete_item(self, item_id: str, confirm: Optional[ConfirmFn] = None) -> int:
        self._require_ready()
        if not self._confirmed(CONFIRM_DELETE_ITEM, confirm):
            return 0
        with self._lock:
            kept = [item for item in self.items if item.id != item_id]
            removed = len(self.items) - len(kept)
            self.items = kept
            self.synchronize()
        return removed

    def find_item(self, item_id: str) -> Optional[Item]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    # ---------- TRANSACTIONS ----------
    def save_transaction(self, transaction: Transaction) -> Transaction:
        self._require_ready()
        with self._lock:
            self.transactions = self.transactions + [transaction]
            self.synchronize()
        self._notify_saved(transaction)
        return transaction

    def delete_transaction(self, transaction_id: str, confirm: Optional[ConfirmFn] = None) -> bool:
        self._require_ready()
        if not self._confirmed(CONFIRM_DELETE_TRANSACTION, confirm):
            return False
        with self._lock:
            kept = [txn for txn in self.transactions if txn.id != transaction_id]
            removed = len(kept) != len(self.transactions)
            self.transactions = kept
            self.synchronize()
        return removed

    @property
    def latest_transaction(self) -> Optional[Transaction]:
        return self.transactions[-1] if self.transactions else None

    def find_transaction(self, transaction_id: str) -> Optional[Transaction]:
        for txn in self.transactions:
            if txn.id == transaction_id:
                return txn
        return None

    # ---------- RESET ----------
    def clear_all(self, confirm: Optional[ConfirmFn] = None) -> bool:
        """Drop both lists and remove both slots; the operator profile stays."""
        self._require_ready()
        if not self._confirmed(CONFIRM_CLEAR_ALL, confirm):
            return False
        with self._lock:
            self.items = []
            self.transactions = []
            self.store.remove(self.transactions_key)
            self.store.remove(self.inventory_key)
        logger.info("All items and transactions cleared at %s", iso_now())
        return True
