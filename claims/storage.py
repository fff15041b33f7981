import copy
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional
from uuid import UUID

from .exceptions import NotFoundError, StorageUnavailableError
from .models import ClaimStatus, EcoLevel, RewardCategory, UserRole, VerificationStatus

logger = logging.getLogger(__name__)

COLLECTIONS = ("users", "partners", "rewards", "qr_codes", "claims", "activities", "leaderboard")

Predicate = Callable[[dict], bool]


class DuplicateKeyError(Exception):
    def __init__(self, collection: str, key: Any, existing_id: Optional[UUID] = None):
        self.collection = collection
        self.key = key
        self.existing_id = existing_id
        super().__init__(f"Duplicate key {key!r} in {collection}")


# Seed identifiers, shared with the test-suite and the demo API
DEMO_USER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
DEMO_SECOND_USER_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
DEMO_ADMIN_ID = UUID("770e8400-e29b-41d4-a716-446655440002")
DEMO_PARTNER_ID = UUID("11111111-1111-1111-1111-111111111111")
DEMO_REWARD_ID = UUID("22222222-2222-2222-2222-222222222222")
DEMO_QR_ID = UUID("33333333-3333-3333-3333-333333333333")
DEMO_SECOND_QR_ID = UUID("44444444-4444-4444-4444-444444444444")
DEMO_QR_CODE = "qr_3f1c9a6e-6f0b-4b3e-9d55-7c1a2b3c4d5e"
DEMO_SECOND_QR_CODE = "qr_8a2d4c1b-0e9f-4c7a-b1d2-e3f4a5b6c7d8"


class InMemoryStorage:
    def __init__(self, timeout: float = 5.0, seed: bool = True):
        self.timeout = timeout
        self._lock = threading.RLock()
        self._depth = 0

        self.users: dict[UUID, dict] = {}
        self.partners: dict[UUID, dict] = {}
        self.rewards: dict[UUID, dict] = {}
        self.qr_codes: dict[UUID, dict] = {}
        self.claims: dict[UUID, dict] = {}
        self.activities: dict[UUID, dict] = {}
        self.leaderboard: dict[UUID, dict] = {}

        # unique indexes
        self.qr_code_index: dict[str, UUID] = {}
        self.referral_index: dict[str, UUID] = {}
        self.leaderboard_index: dict[UUID, UUID] = {}
        self.live_claim_index: dict[tuple[UUID, UUID], UUID] = {}

        # ConsistencyRepairNeeded records; survive rollbacks
        self.pending_repairs: list[dict] = []
        self.closed = False

        if seed:
            self._seed_data()

    # ------------------------------------------------------------------
    # locking and transactions
    # ------------------------------------------------------------------

    def _acquire(self) -> None:
        if self.closed:
            raise StorageUnavailableError("Storage client is closed")
        if not self._lock.acquire(timeout=self.timeout):
            logger.error("Storage lock not acquired within %.2fs", self.timeout)
            raise StorageUnavailableError(
                "Storage did not respond in time, please retry",
                {"timeout_seconds": self.timeout},
            )

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self._acquire()
        try:
            yield
        finally:
            self._lock.release()

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStorage"]:
        """
        Run a block as one all-or-nothing unit.

        Nested transactions join the outermost one. If the block raises, every
        collection and index is restored to its state at the outermost entry.
        """
        self._acquire()
        snapshot = self._snapshot() if self._depth == 0 else None
        self._depth += 1
        try:
            yield self
        except Exception:
            if snapshot is not None:
                self._restore(snapshot)
                logger.debug("Transaction rolled back")
            raise
        finally:
            self._depth -= 1
            self._lock.release()

    def _snapshot(self) -> dict:
        state = {name: getattr(self, name) for name in COLLECTIONS}
        state.update({
            "qr_code_index": self.qr_code_index,
            "referral_index": self.referral_index,
            "leaderboard_index": self.leaderboard_index,
            "live_claim_index": self.live_claim_index,
        })
        return copy.deepcopy(state)

    def _restore(self, snapshot: dict) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    def close(self) -> None:
        with self._locked():
            self.closed = True
        logger.info("Storage client closed")

    # ------------------------------------------------------------------
    # generic document operations
    # ------------------------------------------------------------------

    def _collection(self, name: str) -> dict[UUID, dict]:
        if name not in COLLECTIONS:
            raise ValueError(f"Unknown collection {name}")
        return getattr(self, name)

    def insert(self, collection: str, record: dict) -> dict:
        with self._locked():
            docs = self._collection(collection)
            record_id = record["id"]
            if record_id in docs:
                raise DuplicateKeyError(collection, record_id, record_id)
            self._check_unique(collection, record)
            docs[record_id] = copy.deepcopy(record)
            self._index(collection, record)
            return copy.deepcopy(record)

    def get(self, collection: str, record_id: UUID) -> Optional[dict]:
        with self._locked():
            record = self._collection(collection).get(record_id)
            return copy.deepcopy(record) if record is not None else None

    def find(self, collection: str, predicate: Optional[Predicate] = None) -> list[dict]:
        with self._locked():
            return [
                copy.deepcopy(doc) for doc in self._collection(collection).values()
                if predicate is None or predicate(doc)
            ]

    def find_one(self, collection: str, predicate: Predicate) -> Optional[dict]:
        with self._locked():
            for doc in self._collection(collection).values():
                if predicate(doc):
                    return copy.deepcopy(doc)
            return None

    def count(self, collection: str, predicate: Optional[Predicate] = None) -> int:
        with self._locked():
            docs = self._collection(collection).values()
            if predicate is None:
                return len(docs)
            return sum(1 for doc in docs if predicate(doc))

    def update(self, collection: str, record_id: UUID, changes: dict) -> dict:
        with self._locked():
            doc = self._require(collection, record_id)
            before = copy.deepcopy(doc)
            doc.update(copy.deepcopy(changes))
            self._reindex(collection, before, doc)
            return copy.deepcopy(doc)

    def increment(self, collection: str, record_id: UUID, field: str, amount: int = 1,
                  minimum: Optional[int] = None) -> int:
        """Atomically add ``amount`` to a numeric field and return the new value."""
        with self._locked():
            doc = self._require(collection, record_id)
            value = doc.get(field, 0) + amount
            if minimum is not None and value < minimum:
                logger.warning(
                    "%s %s.%s would drop to %d, clamped to %d",
                    collection, record_id, field, value, minimum,
                )
                value = minimum
            doc[field] = value
            return value

    def push(self, collection: str, record_id: UUID, field: str, item: Any) -> int:
        with self._locked():
            doc = self._require(collection, record_id)
            doc.setdefault(field, []).append(copy.deepcopy(item))
            return len(doc[field])

    def bulk_update(self, collection: str, updates: list[tuple[UUID, dict]]) -> int:
        with self.transaction():
            for record_id, changes in updates:
                self.update(collection, record_id, changes)
            return len(updates)

    def _require(self, collection: str, record_id: UUID) -> dict:
        doc = self._collection(collection).get(record_id)
        if doc is None:
            raise NotFoundError(f"{collection} record {record_id} not found")
        return doc

    # ------------------------------------------------------------------
    # unique indexes
    # ------------------------------------------------------------------

    def _unique_keys(self, collection: str, doc: dict) -> list[tuple[dict, Any]]:
        if collection == "qr_codes":
            return [(self.qr_code_index, doc["qr_code"])]
        if collection == "users":
            return [(self.referral_index, doc["referral_code"])]
        if collection == "leaderboard":
            return [(self.leaderboard_index, doc["user_id"])]
        if collection == "claims" and doc["status"] != ClaimStatus.REVERSED:
            return [(self.live_claim_index, (doc["user_id"], doc["qr_code_id"]))]
        return []

    def _check_unique(self, collection: str, doc: dict) -> None:
        for index, key in self._unique_keys(collection, doc):
            existing = index.get(key)
            if existing is not None and existing != doc["id"]:
                raise DuplicateKeyError(collection, key, existing)

    def _index(self, collection: str, doc: dict) -> None:
        for index, key in self._unique_keys(collection, doc):
            index[key] = doc["id"]

    def _unindex(self, collection: str, doc: dict) -> None:
        for index, key in self._unique_keys(collection, doc):
            if index.get(key) == doc["id"]:
                del index[key]

    def _reindex(self, collection: str, before: dict, after: dict) -> None:
        self._unindex(collection, before)
        try:
            self._check_unique(collection, after)
        except DuplicateKeyError:
            self._collection(collection)[before["id"]] = before
            self._index(collection, before)
            raise
        self._index(collection, after)

    # ------------------------------------------------------------------
    # lookups backed by indexes
    # ------------------------------------------------------------------

    def get_qr_code_by_token(self, token: str) -> Optional[dict]:
        with self._locked():
            qr_id = self.qr_code_index.get(token)
            return self.get("qr_codes", qr_id) if qr_id else None

    def get_live_claim(self, user_id: UUID, qr_code_id: UUID) -> Optional[dict]:
        with self._locked():
            claim_id = self.live_claim_index.get((user_id, qr_code_id))
            return self.get("claims", claim_id) if claim_id else None

    def get_leaderboard_entry(self, user_id: UUID) -> Optional[dict]:
        with self._locked():
            entry_id = self.leaderboard_index.get(user_id)
            return self.get("leaderboard", entry_id) if entry_id else None

    # ------------------------------------------------------------------
    # repair queue
    # ------------------------------------------------------------------

    def record_repair(self, repair: dict) -> None:
        with self._locked():
            self.pending_repairs.append(dict(repair))

    def drain_repairs(self) -> list[dict]:
        with self._locked():
            drained, self.pending_repairs = self.pending_repairs, []
            return drained

    # ------------------------------------------------------------------
    # seed data
    # ------------------------------------------------------------------

    def _seed_data(self):
        now = datetime.now(timezone.utc)

        for user_id, name, email, role, code in (
            (DEMO_USER_ID, "Asha Green", "asha@example.com", UserRole.USER, "ECO_ASHA01"),
            (DEMO_SECOND_USER_ID, "Ravi Leaf", "ravi@example.com", UserRole.USER, "ECO_RAVI02"),
            (DEMO_ADMIN_ID, "Admin", "admin@example.com", UserRole.ADMIN, "ECO_ADMIN0"),
        ):
            self.insert("users", {
                "id": user_id, "name": name, "email": email, "role": role,
                "points": 0, "eco_level": EcoLevel.BEGINNER, "claimed_rewards": [],
                "referral_code": code, "created_at": now,
            })

        self.insert("partners", {
            "id": DEMO_PARTNER_ID, "name": "GreenTech Recycling", "category": "recycling",
            "logo": None, "verification_status": VerificationStatus.VERIFIED,
            "is_active": True, "total_rewards": 1, "total_scans": 0, "created_at": now,
        })

        self.insert("rewards", {
            "id": DEMO_REWARD_ID, "partner_id": DEMO_PARTNER_ID,
            "title": "Recycle 5 Plastic Bottles",
            "description": "Bring 5 plastic bottles to our recycling center",
            "category": RewardCategory.RECYCLING, "points": 25,
            "max_claims_per_user": 1, "total_max_claims": None, "current_claims": 0,
            "expiry_date": None, "is_active": True, "created_at": now,
        })

        for qr_id, token in ((DEMO_QR_ID, DEMO_QR_CODE), (DEMO_SECOND_QR_ID, DEMO_SECOND_QR_CODE)):
            self.insert("qr_codes", {
                "id": qr_id, "qr_code": token, "partner_id": DEMO_PARTNER_ID,
                "reward_id": DEMO_REWARD_ID, "batch_id": "batch_demo",
                "scan_count": 0, "unique_scans": 0, "successful_claims": 0,
                "is_active": True, "location": {"name": "GreenTech Center"},
                "last_scanned_at": None, "last_scanned_by": None, "created_at": now,
            })
