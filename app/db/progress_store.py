"""Pluggable progress storage: in-memory for dev/test, Firestore for production.

One store owns three kinds of per-user state:

* the progress record (coins, XP, counters, streak, titles);
* the achievement unlock ledger, unique on ``(user_id, achievement_code)``;
* idempotency keys for retried mutating requests.

Every progress mutation is an additive delta or a check-then-write executed
atomically (per-user lock in memory, ``Increment`` transforms or a
transaction in Firestore), so concurrent requests never lose updates.

Idempotency keys move ``pending -> applied -> completed``. The move to
``applied`` is part of the same atomic write as the mutation it guards, so a
key is only ever released while nothing has been credited under it.
"""

import abc
import copy
import functools
import logging
import threading
import uuid
import weakref
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from google.api_core.exceptions import AlreadyExists, GoogleAPICallError, RetryError
from google.cloud.firestore_v1 import ArrayUnion, DocumentReference, Increment, Transaction, transactional
from google.cloud.firestore_v1.base_query import FieldFilter

from app.db.firestore import get_firestore_client, is_mock_mode
from app.errors import IdempotencyConflictError, InsufficientCoinsError, StorageUnavailableError
from app.services.daily_bonus import EPOCH, is_bonus_due, next_streak

logger = logging.getLogger(__name__)

IDEMPOTENCY_PENDING = "pending"
IDEMPOTENCY_APPLIED = "applied"
IDEMPOTENCY_COMPLETED = "completed"

# Firestore rejects batches with more writes than this.
FIRESTORE_BATCH_LIMIT = 500


def _new_progress(uid: str, now: datetime) -> dict:
    """Return a zeroed progress record."""
    return {
        "user_id": uid,
        "coins": 0,
        "xp": 0,
        "total_actions": 0,
        "action_counts": {},
        "daily_streak": 0,
        "titles": [],
        "last_login_date": EPOCH,
        "last_activity": None,
        "created_at": now,
    }


def _normalise_progress(uid: str, data: dict) -> dict:
    """Fill missing fields so callers always see a complete record."""
    return {
        "user_id": uid,
        "coins": int(data.get("coins", 0) or 0),
        "xp": int(data.get("xp", 0) or 0),
        "total_actions": int(data.get("total_actions", 0) or 0),
        "action_counts": dict(data.get("action_counts") or {}),
        "daily_streak": int(data.get("daily_streak", 0) or 0),
        "titles": list(data.get("titles") or []),
        "last_login_date": data.get("last_login_date") or EPOCH,
        "last_activity": data.get("last_activity"),
        "created_at": data.get("created_at"),
    }


def _new_unlock(uid: str, code: str, now: datetime) -> dict:
    return {
        "user_id": uid,
        "achievement_code": code,
        "unlocked_at": now,
        "reward_applied": False,
        "reward_applied_at": None,
    }


def _new_idempotency(uid: str, key: str, now: datetime, ttl: timedelta) -> dict:
    return {
        "user_id": uid,
        "key": key,
        "claim_id": uuid.uuid4().hex,
        "status": IDEMPOTENCY_PENDING,
        "response": None,
        "created_at": now,
        "expires_at": now + ttl,
    }


def idempotency_reclaimable(entry: dict, now: datetime, pending_timeout: timedelta) -> bool:
    """Return *True* when *entry* may be claimed again.

    Expired entries always may. A ``pending`` entry has credited nothing, so
    it may once *pending_timeout* has passed; ``applied`` and ``completed``
    entries are kept until they expire.
    """
    expires_at = entry.get("expires_at")
    if expires_at is not None and expires_at <= now:
        return True
    created_at = entry.get("created_at")
    return (
        entry.get("status") == IDEMPOTENCY_PENDING
        and created_at is not None
        and created_at + pending_timeout <= now
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class ProgressStore(abc.ABC):
    """Common interface for progress persistence."""

    # -- progress record --

    @abc.abstractmethod
    def get_or_create(self, uid: str) -> dict:
        """Return the progress record, creating a zeroed one if absent.

        Concurrent first calls for one user resolve to a single record.
        """

    @abc.abstractmethod
    def get(self, uid: str) -> dict | None:
        """Return the progress record or *None*, never creating it."""

    @abc.abstractmethod
    def apply_action_reward(
        self,
        uid: str,
        action: str,
        reward: int,
        now: datetime,
        idempotency_key: str | None = None,
        claim_id: str | None = None,
    ) -> dict:
        """Atomically add *reward* to coins and XP and count one action.

        With *idempotency_key*, the key moves to ``applied`` in the same
        write; ``IdempotencyConflictError`` is raised, and nothing written,
        if the key is no longer held by *claim_id*. Returns the record as
        read after the write.
        """

    @abc.abstractmethod
    def claim_daily_bonus(
        self, uid: str, now: datetime, bonus: int, tz: ZoneInfo,
    ) -> tuple[dict, bool]:
        """Grant the daily bonus if *now* is on a later day than the last login.

        Returns ``(record, awarded)``. The day check and the write are atomic.
        """

    @abc.abstractmethod
    def spend_coins(
        self,
        uid: str,
        amount: int,
        now: datetime,
        idempotency_key: str | None = None,
        claim_id: str | None = None,
    ) -> dict:
        """Atomically deduct *amount* coins.

        Raises ``InsufficientCoinsError`` when the balance is too low. The
        idempotency arguments behave as in ``apply_action_reward``.
        """

    @abc.abstractmethod
    def reset(self, uid: str) -> bool:
        """Delete the user's record, unlocks and idempotency keys.

        Returns *True* if anything existed.
        """

    # -- unlock ledger --

    @abc.abstractmethod
    def insert_unlock_if_absent(self, uid: str, code: str, now: datetime) -> bool:
        """Record an unlock. Returns *False* if ``(uid, code)`` already exists."""

    @abc.abstractmethod
    def list_unlocks(self, uid: str) -> list[dict]:
        """Return the user's unlocks ordered by ``unlocked_at``."""

    @abc.abstractmethod
    def apply_unlock_reward(
        self, uid: str, code: str, coins: int, title: str | None, now: datetime,
    ) -> bool:
        """Credit an unlock's reward once.

        Adds *coins* to coins and XP (not to ``total_actions``), records
        *title*, sets ``last_activity`` and marks the unlock as rewarded, all
        atomically. Returns *False* when the unlock is missing or already
        rewarded.
        """

    def list_unrewarded_unlocks(self, uid: str) -> list[dict]:
        """Return unlocks whose reward has not been credited yet."""
        return [u for u in self.list_unlocks(uid) if not u.get("reward_applied")]

    # -- idempotency keys --

    @abc.abstractmethod
    def claim_idempotency_key(
        self,
        uid: str,
        key: str,
        now: datetime,
        ttl: timedelta,
        pending_timeout: timedelta,
    ) -> tuple[dict, bool]:
        """Claim *key* for *uid*, expiring after *ttl*.

        Returns ``(entry, claimed)``. When *claimed* is *False*, *entry* is
        the record held by an earlier request. Entries that are
        ``idempotency_reclaimable`` are replaced by a fresh claim.
        """

    @abc.abstractmethod
    def complete_idempotency_key(self, uid: str, key: str, response: dict) -> None:
        """Store the response produced for a claimed key."""

    @abc.abstractmethod
    def release_idempotency_key(self, uid: str, key: str, claim_id: str) -> bool:
        """Forget a claim so the request can be retried.

        Only a ``pending`` key held by *claim_id* is released. Returns
        whether it was.
        """


# ---------------------------------------------------------------------------
# In-memory implementation (mock / test mode)
# ---------------------------------------------------------------------------

class _UserLock:
    """Mutex for one user. Held weakly by the store, so idle users are dropped."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def __enter__(self) -> "_UserLock":
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self._lock.release()


class InMemoryProgressStore(ProgressStore):
    """Dict-backed store guarded by one lock per user."""

    def __init__(self) -> None:
        self._progress: dict[str, dict] = {}
        self._unlocks: dict[str, dict[str, dict]] = {}
        self._idempotency: dict[str, dict[str, dict]] = {}
        self._locks: "weakref.WeakValueDictionary[str, _UserLock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _lock(self, uid: str) -> _UserLock:
        with self._locks_guard:
            lock = self._locks.get(uid)
            if lock is None:
                lock = _UserLock()
                self._locks[uid] = lock
            return lock

    def _ensure(self, uid: str) -> dict:
        """Return the live record; caller must hold the user's lock."""
        record = self._progress.get(uid)
        if record is None:
            record = _new_progress(uid, _utcnow())
            self._progress[uid] = record
            logger.info("Created progress record for %s", uid)
        return record

    def _held_key(self, uid: str, key: str | None, claim_id: str | None) -> dict | None:
        """Return the key entry a mutation may apply under; caller holds the lock."""
        if key is None:
            return None
        entry = self._idempotency.get(uid, {}).get(key)
        if entry is None or entry["claim_id"] != claim_id or entry["status"] != IDEMPOTENCY_PENDING:
            raise IdempotencyConflictError("Idempotency-Key is held by another request")
        return entry

    # -- progress record --

    def get_or_create(self, uid: str) -> dict:
        with self._lock(uid):
            return copy.deepcopy(self._ensure(uid))

    def get(self, uid: str) -> dict | None:
        with self._lock(uid):
            record = self._progress.get(uid)
            return copy.deepcopy(record) if record is not None else None

    def apply_action_reward(
        self,
        uid: str,
        action: str,
        reward: int,
        now: datetime,
        idempotency_key: str | None = None,
        claim_id: str | None = None,
    ) -> dict:
        with self._lock(uid):
            entry = self._held_key(uid, idempotency_key, claim_id)
            record = self._ensure(uid)
            record["coins"] += reward
            record["xp"] += reward
            record["total_actions"] += 1
            record["action_counts"][action] = record["action_counts"].get(action, 0) + 1
            record["last_activity"] = now
            if entry is not None:
                entry["status"] = IDEMPOTENCY_APPLIED
            return copy.deepcopy(record)

    def claim_daily_bonus(
        self, uid: str, now: datetime, bonus: int, tz: ZoneInfo,
    ) -> tuple[dict, bool]:
        with self._lock(uid):
            record = self._ensure(uid)
            last_login = record["last_login_date"]
            if not is_bonus_due(last_login, now, tz):
                return copy.deepcopy(record), False
            record["coins"] += bonus
            record["xp"] += bonus
            record["daily_streak"] = next_streak(last_login, record["daily_streak"], now, tz)
            record["last_login_date"] = now
            record["last_activity"] = now
            return copy.deepcopy(record), True

    def spend_coins(
        self,
        uid: str,
        amount: int,
        now: datetime,
        idempotency_key: str | None = None,
        claim_id: str | None = None,
    ) -> dict:
        with self._lock(uid):
            entry = self._held_key(uid, idempotency_key, claim_id)
            record = self._ensure(uid)
            if record["coins"] < amount:
                raise InsufficientCoinsError("Not enough coins")
            record["coins"] -= amount
            record["last_activity"] = now
            if entry is not None:
                entry["status"] = IDEMPOTENCY_APPLIED
            return copy.deepcopy(record)

    def reset(self, uid: str) -> bool:
        with self._lock(uid):
            existed = self._progress.pop(uid, None) is not None
            if self._unlocks.pop(uid, None):
                existed = True
            self._idempotency.pop(uid, None)
            return existed

    # -- unlock ledger --

    def insert_unlock_if_absent(self, uid: str, code: str, now: datetime) -> bool:
        with self._lock(uid):
            unlocks = self._unlocks.setdefault(uid, {})
            if code in unlocks:
                return False
            unlocks[code] = _new_unlock(uid, code, now)
            return True

    def list_unlocks(self, uid: str) -> list[dict]:
        with self._lock(uid):
            unlocks = [copy.deepcopy(u) for u in self._unlocks.get(uid, {}).values()]
        return sorted(unlocks, key=lambda u: u["unlocked_at"])

    def apply_unlock_reward(
        self, uid: str, code: str, coins: int, title: str | None, now: datetime,
    ) -> bool:
        with self._lock(uid):
            unlock = self._unlocks.get(uid, {}).get(code)
            if unlock is None or unlock["reward_applied"]:
                return False
            record = self._ensure(uid)
            record["coins"] += coins
            record["xp"] += coins
            record["last_activity"] = now
            if title and title not in record["titles"]:
                record["titles"].append(title)
            unlock["reward_applied"] = True
            unlock["reward_applied_at"] = now
            return True

    # -- idempotency keys --

    def claim_idempotency_key(
        self,
        uid: str,
        key: str,
        now: datetime,
        ttl: timedelta,
        pending_timeout: timedelta,
    ) -> tuple[dict, bool]:
        with self._lock(uid):
            keys = self._idempotency.setdefault(uid, {})
            for expired in [k for k, e in keys.items() if e["expires_at"] <= now]:
                del keys[expired]
            existing = keys.get(key)
            if existing is not None and not idempotency_reclaimable(existing, now, pending_timeout):
                return copy.deepcopy(existing), False
            if existing is not None:
                logger.warning("Reclaiming stale idempotency key %s for %s", key, uid)
            entry = _new_idempotency(uid, key, now, ttl)
            keys[key] = entry
            return copy.deepcopy(entry), True

    def complete_idempotency_key(self, uid: str, key: str, response: dict) -> None:
        with self._lock(uid):
            entry = self._idempotency.get(uid, {}).get(key)
            if entry is not None:
                entry["status"] = IDEMPOTENCY_COMPLETED
                entry["response"] = copy.deepcopy(response)

    def release_idempotency_key(self, uid: str, key: str, claim_id: str) -> bool:
        with self._lock(uid):
            keys = self._idempotency.get(uid, {})
            entry = keys.get(key)
            if entry is None or entry["claim_id"] != claim_id or entry["status"] != IDEMPOTENCY_PENDING:
                return False
            del keys[key]
            return True


# ---------------------------------------------------------------------------
# Firestore implementation
# ---------------------------------------------------------------------------

def _storage_call(func):
    """Translate Firestore transport failures into ``StorageUnavailableError``."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (GoogleAPICallError, RetryError) as e:
            logger.error("Firestore call %s failed: %s", func.__name__, e)
            raise StorageUnavailableError("Progress storage is temporarily unavailable") from e

    return wrapper


def _check_held(snap, claim_id: str | None) -> None:
    data = snap.to_dict() if snap.exists else None
    if data is None or data.get("claim_id") != claim_id or data.get("status") != IDEMPOTENCY_PENDING:
        raise IdempotencyConflictError("Idempotency-Key is held by another request")


class FirestoreProgressStore(ProgressStore):
    """Firestore-backed store.

    Layout: ``user_progress/{uid}``, ``achievement_unlocks/{uid}:{code}`` and
    ``progress_idempotency/{uid}:{key}``. Deterministic document IDs make
    ``create()`` the uniqueness check. Idempotency documents carry an
    ``expires_at`` field; configure a Firestore TTL policy on it so expired
    keys are deleted server side.
    """

    PROGRESS_COLLECTION = "user_progress"
    UNLOCK_COLLECTION = "achievement_unlocks"
    IDEMPOTENCY_COLLECTION = "progress_idempotency"

    def _progress_ref(self, uid: str) -> DocumentReference:
        return get_firestore_client().collection(self.PROGRESS_COLLECTION).document(uid)

    def _unlock_ref(self, uid: str, code: str) -> DocumentReference:
        return get_firestore_client().collection(self.UNLOCK_COLLECTION).document(f"{uid}:{code}")

    def _idempotency_ref(self, uid: str, key: str) -> DocumentReference:
        return get_firestore_client().collection(self.IDEMPOTENCY_COLLECTION).document(f"{uid}:{key}")

    def _read(self, uid: str) -> dict:
        snap = self._progress_ref(uid).get()
        return _normalise_progress(uid, snap.to_dict() or {})

    # -- progress record --

    @_storage_call
    def get_or_create(self, uid: str) -> dict:
        ref = self._progress_ref(uid)
        snap = ref.get()
        if snap.exists:
            return _normalise_progress(uid, snap.to_dict())
        doc = _new_progress(uid, _utcnow())
        try:
            ref.create(doc)
        except AlreadyExists:
            # Another request created it first; use theirs.
            return self._read(uid)
        logger.info("Created Firestore progress doc for %s", uid)
        return doc

    @_storage_call
    def get(self, uid: str) -> dict | None:
        snap = self._progress_ref(uid).get()
        if not snap.exists:
            return None
        return _normalise_progress(uid, snap.to_dict())

    @_storage_call
    def apply_action_reward(
        self,
        uid: str,
        action: str,
        reward: int,
        now: datetime,
        idempotency_key: str | None = None,
        claim_id: str | None = None,
    ) -> dict:
        self.get_or_create(uid)
        ref = self._progress_ref(uid)
        updates = {
            "coins": Increment(reward),
            "xp": Increment(reward),
            "total_actions": Increment(1),
            f"action_counts.{action}": Increment(1),
            "last_activity": now,
        }
        if idempotency_key is None:
            ref.update(updates)
            return self._read(uid)

        key_ref = self._idempotency_ref(uid, idempotency_key)

        @transactional
        def _apply(transaction: Transaction) -> None:
            _check_held(key_ref.get(transaction=transaction), claim_id)
            transaction.update(ref, updates)
            transaction.update(key_ref, {"status": IDEMPOTENCY_APPLIED})

        _apply(get_firestore_client().transaction())
        return self._read(uid)

    @_storage_call
    def claim_daily_bonus(
        self, uid: str, now: datetime, bonus: int, tz: ZoneInfo,
    ) -> tuple[dict, bool]:
        self.get_or_create(uid)
        ref = self._progress_ref(uid)

        @transactional
        def _claim(transaction: Transaction) -> bool:
            snap = ref.get(transaction=transaction)
            data = snap.to_dict() or {}
            last_login = data.get("last_login_date") or EPOCH
            if not is_bonus_due(last_login, now, tz):
                return False
            transaction.update(ref, {
                "coins": Increment(bonus),
                "xp": Increment(bonus),
                "daily_streak": next_streak(
                    last_login, int(data.get("daily_streak", 0) or 0), now, tz,
                ),
                "last_login_date": now,
                "last_activity": now,
            })
            return True

        awarded = _claim(get_firestore_client().transaction())
        return self._read(uid), awarded

    @_storage_call
    def spend_coins(
        self,
        uid: str,
        amount: int,
        now: datetime,
        idempotency_key: str | None = None,
        claim_id: str | None = None,
    ) -> dict:
        self.get_or_create(uid)
        ref = self._progress_ref(uid)
        key_ref = self._idempotency_ref(uid, idempotency_key) if idempotency_key is not None else None

        @transactional
        def _spend(transaction: Transaction) -> None:
            if key_ref is not None:
                _check_held(key_ref.get(transaction=transaction), claim_id)
            snap = ref.get(transaction=transaction)
            coins = int((snap.to_dict() or {}).get("coins", 0) or 0)
            if coins < amount:
                raise InsufficientCoinsError("Not enough coins")
            transaction.update(ref, {"coins": Increment(-amount), "last_activity": now})
            if key_ref is not None:
                transaction.update(key_ref, {"status": IDEMPOTENCY_APPLIED})

        _spend(get_firestore_client().transaction())
        return self._read(uid)

    @_storage_call
    def reset(self, uid: str) -> bool:
        db = get_firestore_client()
        ref = self._progress_ref(uid)
        existed = ref.get().exists
        refs = [ref]
        for collection in (self.UNLOCK_COLLECTION, self.IDEMPOTENCY_COLLECTION):
            query = db.collection(collection).where(filter=FieldFilter("user_id", "==", uid))
            for doc in query.stream():
                if collection == self.UNLOCK_COLLECTION:
                    existed = True
                refs.append(doc.reference)
        for start in range(0, len(refs), FIRESTORE_BATCH_LIMIT):
            batch = db.batch()
            for doc_ref in refs[start:start + FIRESTORE_BATCH_LIMIT]:
                batch.delete(doc_ref)
            batch.commit()
        logger.info("Reset Firestore progress for %s (existed=%s, docs=%d)", uid, existed, len(refs))
        return existed

    # -- unlock ledger --

    @_storage_call
    def insert_unlock_if_absent(self, uid: str, code: str, now: datetime) -> bool:
        try:
            self._unlock_ref(uid, code).create(_new_unlock(uid, code, now))
        except AlreadyExists:
            return False
        return True

    @_storage_call
    def list_unlocks(self, uid: str) -> list[dict]:
        query = get_firestore_client().collection(self.UNLOCK_COLLECTION).where(
            filter=FieldFilter("user_id", "==", uid)
        )
        unlocks = [doc.to_dict() for doc in query.stream()]
        return sorted(unlocks, key=lambda u: u["unlocked_at"])

    @_storage_call
    def apply_unlock_reward(
        self, uid: str, code: str, coins: int, title: str | None, now: datetime,
    ) -> bool:
        self.get_or_create(uid)
        progress_ref = self._progress_ref(uid)
        unlock_ref = self._unlock_ref(uid, code)

        @transactional
        def _apply(transaction: Transaction) -> bool:
            snap = unlock_ref.get(transaction=transaction)
            if not snap.exists or snap.to_dict().get("reward_applied"):
                return False
            updates: dict = {"last_activity": now}
            if coins:
                updates["coins"] = Increment(coins)
                updates["xp"] = Increment(coins)
            if title:
                updates["titles"] = ArrayUnion([title])
            transaction.update(progress_ref, updates)
            transaction.update(unlock_ref, {"reward_applied": True, "reward_applied_at": now})
            return True

        return _apply(get_firestore_client().transaction())

    # -- idempotency keys --

    @_storage_call
    def claim_idempotency_key(
        self,
        uid: str,
        key: str,
        now: datetime,
        ttl: timedelta,
        pending_timeout: timedelta,
    ) -> tuple[dict, bool]:
        ref = self._idempotency_ref(uid, key)

        @transactional
        def _claim(transaction: Transaction) -> tuple[dict, bool]:
            snap = ref.get(transaction=transaction)
            if snap.exists:
                existing = snap.to_dict()
                if not idempotency_reclaimable(existing, now, pending_timeout):
                    return existing, False
                logger.warning("Reclaiming stale idempotency key %s for %s", key, uid)
            entry = _new_idempotency(uid, key, now, ttl)
            transaction.set(ref, entry)
            return entry, True

        return _claim(get_firestore_client().transaction())

    @_storage_call
    def complete_idempotency_key(self, uid: str, key: str, response: dict) -> None:
        self._idempotency_ref(uid, key).update({
            "status": IDEMPOTENCY_COMPLETED,
            "response": response,
        })

    @_storage_call
    def release_idempotency_key(self, uid: str, key: str, claim_id: str) -> bool:
        ref = self._idempotency_ref(uid, key)

        @transactional
        def _release(transaction: Transaction) -> bool:
            snap = ref.get(transaction=transaction)
            data = snap.to_dict() if snap.exists else None
            if data is None or data.get("claim_id") != claim_id or data.get("status") != IDEMPOTENCY_PENDING:
                return False
            transaction.delete(ref)
            return True

        return _release(get_firestore_client().transaction())


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_store() -> ProgressStore:
    """Return a new store whose backend depends on mock mode."""
    if is_mock_mode():
        logger.info("Using InMemoryProgressStore (mock mode)")
        return InMemoryProgressStore()
    logger.info("Using FirestoreProgressStore")
    return FirestoreProgressStore()
