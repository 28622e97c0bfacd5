import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from postgrest.exceptions import APIError as PostgrestAPIError
from supabase import create_client


class RepositoryError(Exception):
    """Any failure talking to the backing store."""


class DuplicateRecordError(RepositoryError):
    """A unique constraint rejected the write (email, follow, open request...)."""


class StaleRecordError(RepositoryError):
    """A compare-and-swap update found the row in a different state."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# --------------------------------------------------------
# ---------------------- Interface  ----------------------
# --------------------------------------------------------

class Repository(ABC):
    """
    Capability set used by the HTTP handlers.

    Every mutation that depends on a previous state (bet settlement,
    prediction result, request approval/activation) goes through a
    transition_* / settle_* method taking the expected current status, so the
    store can reject concurrent or repeated updates instead of overwriting.
    """

    name = "abstract"

    # ---- users ----
    @abstractmethod
    def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def insert_user(self, row: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def list_users(self) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def update_user_role(self, user_id: str, role: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def update_user_password(self, user_id: str, password_hash: str) -> None:
        pass

    # ---- predictions ----
    @abstractmethod
    def insert_prediction(self, row: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def get_prediction(self, prediction_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def get_predictions(self, prediction_ids: Iterable[str]) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def list_predictions(self, sport: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def transition_prediction_status(self, prediction_id: str, expected: str, new: str,
                                     fields: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        pass

    # ---- follows ----
    @abstractmethod
    def insert_follow(self, row: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def delete_follow(self, user_id: str, prediction_id: str) -> bool:
        pass

    @abstractmethod
    def list_follows(self, user_id: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def list_followers(self, prediction_id: str) -> List[str]:
        pass

    # ---- bets ----
    @abstractmethod
    def insert_bet(self, row: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def get_bet(self, bet_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def list_bets(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def list_bettors(self, prediction_id: str) -> List[str]:
        pass

    @abstractmethod
    def settle_bet(self, bet_id: str, expected: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        pass

    # ---- notifications ----
    @abstractmethod
    def insert_notifications(self, rows: List[Dict[str, Any]]) -> int:
        pass

    @abstractmethod
    def list_notifications(self, user_id: str, unread_only: bool = False) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def mark_notification_read(self, notification_id: str, user_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def mark_all_notifications_read(self, user_id: str) -> int:
        pass

    # ---- registration requests ----
    @abstractmethod
    def insert_registration_request(self, row: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def get_registration_request(self, request_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def find_open_registration_request(self, email: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def list_registration_requests(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def transition_registration_request(self, request_id: str, expected: Iterable[str], new: str,
                                        fields: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        pass

    # ---- password resets ----
    @abstractmethod
    def insert_password_reset(self, row: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def find_password_reset(self, token_hash: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def consume_password_reset(self, reset_id: str) -> None:
        pass


OPEN_REQUEST_STATUSES = ("pending", "approved")


# --------------------------------------------------------
# ---------------------- Supabase  -----------------------
# --------------------------------------------------------

class SupabaseRepository(Repository):
    """
    Postgres through supabase-py. Constraints live in schema.sql; a 23505
    unique violation surfaces as DuplicateRecordError.
    """

    name = "supabase"

    def __init__(self, url: str, key: str, client=None):
        self.client = client or create_client(url, key)

    def _table(self, name):
        return self.client.table(name)

    def _run(self, query):
        try:
            return query.execute().data or []
        except PostgrestAPIError as e:
            if getattr(e, "code", None) == "23505":
                raise DuplicateRecordError(getattr(e, "message", None) or "duplicate key value") from e
            raise RepositoryError(type(e).__name__) from e

    def _first(self, query):
        rows = self._run(query.limit(1))
        return rows[0] if rows else None

    # ---- users ----
    def find_user_by_email(self, email):
        return self._first(self._table("users").select("*").eq("email", email))

    def get_user(self, user_id):
        return self._first(self._table("users").select("*").eq("id", user_id))

    def insert_user(self, row):
        return self._run(self._table("users").insert(row))[0]

    def list_users(self):
        return self._run(self._table("users").select("*").order("created_at", desc=True))

    def update_user_role(self, user_id, role):
        rows = self._run(self._table("users").update({"role": role}).eq("id", user_id))
        return rows[0] if rows else None

    def update_user_password(self, user_id, password_hash):
        self._run(self._table("users").update({"password": password_hash}).eq("id", user_id))

    # ---- predictions ----
    def insert_prediction(self, row):
        return self._run(self._table("predictions").insert(row))[0]

    def get_prediction(self, prediction_id):
        return self._first(self._table("predictions").select("*").eq("id", prediction_id))

    def get_predictions(self, prediction_ids):
        ids = list(prediction_ids)
        if not ids:
            return []
        return self._run(self._table("predictions").select("*").in_("id", ids))

    def list_predictions(self, sport=None, status=None):
        q = self._table("predictions").select("*")
        if sport:
            q = q.eq("sport", sport)
        if status:
            q = q.eq("status", status)
        return self._run(q.order("created_at", desc=True))

    def transition_prediction_status(self, prediction_id, expected, new, fields=None):
        patch = dict(fields or {})
        patch["status"] = new
        rows = self._run(
            self._table("predictions")
            .update(patch)
            .eq("id", prediction_id)
            .eq("status", expected)
        )
        if not rows:
            raise StaleRecordError(f"prediction {prediction_id} is no longer {expected}")
        return rows[0]

    # ---- follows ----
    def insert_follow(self, row):
        return self._run(self._table("follows").insert(row))[0]

    def delete_follow(self, user_id, prediction_id):
        rows = self._run(
            self._table("follows")
            .delete()
            .eq("user_id", user_id)
            .eq("prediction_id", prediction_id)
        )
        return bool(rows)

    def list_follows(self, user_id):
        return self._run(
            self._table("follows").select("*").eq("user_id", user_id).order("created_at", desc=True)
        )

    def list_followers(self, prediction_id):
        rows = self._run(self._table("follows").select("user_id").eq("prediction_id", prediction_id))
        return [r["user_id"] for r in rows]

    # ---- bets ----
    def insert_bet(self, row):
        return self._run(self._table("bets").insert(row))[0]

    def get_bet(self, bet_id):
        return self._first(self._table("bets").select("*").eq("id", bet_id))

    def list_bets(self, user_id=None):
        q = self._table("bets").select("*")
        if user_id:
            q = q.eq("user_id", user_id)
        return self._run(q.order("placed_at", desc=True))

    def list_bettors(self, prediction_id):
        # prediction_ids is a uuid[] column
        rows = self._run(
            self._table("bets").select("user_id").contains("prediction_ids", [prediction_id])
        )
        return list({r["user_id"] for r in rows})

    def settle_bet(self, bet_id, expected, fields):
        rows = self._run(
            self._table("bets")
            .update(fields)
            .eq("id", bet_id)
            .eq("status", expected)
        )
        if not rows:
            raise StaleRecordError(f"bet {bet_id} is no longer {expected}")
        return rows[0]

    # ---- notifications ----
    def insert_notifications(self, rows):
        if not rows:
            return 0
        return len(self._run(self._table("notifications").insert(rows)))

    def list_notifications(self, user_id, unread_only=False):
        q = self._table("notifications").select("*").eq("user_id", user_id)
        if unread_only:
            q = q.eq("read", False)
        return self._run(q.order("created_at", desc=True))

    def mark_notification_read(self, notification_id, user_id):
        rows = self._run(
            self._table("notifications")
            .update({"read": True})
            .eq("id", notification_id)
            .eq("user_id", user_id)
        )
        return rows[0] if rows else None

    def mark_all_notifications_read(self, user_id):
        rows = self._run(
            self._table("notifications")
            .update({"read": True})
            .eq("user_id", user_id)
            .eq("read", False)
        )
        return len(rows)

    # ---- registration requests ----
    def insert_registration_request(self, row):
        return self._run(self._table("pre_registration_requests").insert(row))[0]

    def get_registration_request(self, request_id):
        return self._first(self._table("pre_registration_requests").select("*").eq("id", request_id))

    def find_open_registration_request(self, email):
        return self._first(
            self._table("pre_registration_requests")
            .select("*")
            .eq("email", email)
            .in_("status", list(OPEN_REQUEST_STATUSES))
        )

    def list_registration_requests(self, status=None):
        q = self._table("pre_registration_requests").select("*")
        if status:
            q = q.eq("status", status)
        return self._run(q.order("created_at", desc=True))

    def transition_registration_request(self, request_id, expected, new, fields=None):
        expected = list(expected)
        patch = dict(fields or {})
        patch["status"] = new
        rows = self._run(
            self._table("pre_registration_requests")
            .update(patch)
            .eq("id", request_id)
            .in_("status", expected)
        )
        if not rows:
            raise StaleRecordError(f"registration request {request_id} is not in {expected}")
        return rows[0]

    # ---- password resets ----
    def insert_password_reset(self, row):
        return self._run(self._table("password_resets").insert(row))[0]

    def find_password_reset(self, token_hash):
        return self._first(self._table("password_resets").select("*").eq("token_hash", token_hash))

    def consume_password_reset(self, reset_id):
        rows = self._run(
            self._table("password_resets")
            .update({"used": True})
            .eq("id", reset_id)
            .eq("used", False)
        )
        if not rows:
            raise StaleRecordError(f"password reset {reset_id} already used")


# --------------------------------------------------------
# ----------------------- Memory  ------------------------
# --------------------------------------------------------

class MemoryRepository(Repository):
    """
    Process-local store for tests and local development.

    All reads and writes go through one lock, and it mirrors the unique
    constraints of schema.sql. Data does not survive a restart and is not
    shared between worker processes.
    """

    name = "memory"

    def __init__(self):
        self._lock = threading.Lock()
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {
            "users": {},
            "predictions": {},
            "follows": {},
            "bets": {},
            "notifications": {},
            "pre_registration_requests": {},
            "password_resets": {},
        }

    def _insert(self, table, row):
        record = dict(row)
        record.setdefault("id", str(uuid.uuid4()))
        record.setdefault("created_at", _now_iso())
        self._tables[table][record["id"]] = record
        return dict(record)

    def _rows(self, table, **match):
        out = []
        for r in self._tables[table].values():
            if all(r.get(k) == v for k, v in match.items()):
                out.append(dict(r))
        return out

    @staticmethod
    def _newest_first(rows, key="created_at"):
        return sorted(rows, key=lambda r: r.get(key) or "", reverse=True)

    # ---- users ----
    def find_user_by_email(self, email):
        with self._lock:
            rows = self._rows("users", email=email)
        return rows[0] if rows else None

    def get_user(self, user_id):
        with self._lock:
            r = self._tables["users"].get(user_id)
            return dict(r) if r else None

    def insert_user(self, row):
        with self._lock:
            if self._rows("users", email=row.get("email")):
                raise DuplicateRecordError("users_email_key")
            return self._insert("users", row)

    def list_users(self):
        with self._lock:
            return self._newest_first(self._rows("users"))

    def update_user_role(self, user_id, role):
        with self._lock:
            r = self._tables["users"].get(user_id)
            if not r:
                return None
            r["role"] = role
            return dict(r)

    def update_user_password(self, user_id, password_hash):
        with self._lock:
            r = self._tables["users"].get(user_id)
            if r:
                r["password"] = password_hash

    # ---- predictions ----
    def insert_prediction(self, row):
        with self._lock:
            return self._insert("predictions", row)

    def get_prediction(self, prediction_id):
        with self._lock:
            r = self._tables["predictions"].get(prediction_id)
            return dict(r) if r else None

    def get_predictions(self, prediction_ids):
        wanted = set(prediction_ids)
        with self._lock:
            return [dict(r) for pid, r in self._tables["predictions"].items() if pid in wanted]

    def list_predictions(self, sport=None, status=None):
        match = {}
        if sport:
            match["sport"] = sport
        if status:
            match["status"] = status
        with self._lock:
            return self._newest_first(self._rows("predictions", **match))

    def transition_prediction_status(self, prediction_id, expected, new, fields=None):
        with self._lock:
            r = self._tables["predictions"].get(prediction_id)
            if not r or r.get("status") != expected:
                raise StaleRecordError(f"prediction {prediction_id} is no longer {expected}")
            r.update(fields or {})
            r["status"] = new
            return dict(r)

    # ---- follows ----
    def insert_follow(self, row):
        with self._lock:
            if self._rows("follows", user_id=row.get("user_id"), prediction_id=row.get("prediction_id")):
                raise DuplicateRecordError("follows_user_id_prediction_id_key")
            return self._insert("follows", row)

    def delete_follow(self, user_id, prediction_id):
        with self._lock:
            rows = self._rows("follows", user_id=user_id, prediction_id=prediction_id)
            for r in rows:
                del self._tables["follows"][r["id"]]
            return bool(rows)

    def list_follows(self, user_id):
        with self._lock:
            return self._newest_first(self._rows("follows", user_id=user_id))

    def list_followers(self, prediction_id):
        with self._lock:
            return [r["user_id"] for r in self._rows("follows", prediction_id=prediction_id)]

    # ---- bets ----
    def insert_bet(self, row):
        with self._lock:
            return self._insert("bets", row)

    def get_bet(self, bet_id):
        with self._lock:
            r = self._tables["bets"].get(bet_id)
            return dict(r) if r else None

    def list_bets(self, user_id=None):
        match = {"user_id": user_id} if user_id else {}
        with self._lock:
            return self._newest_first(self._rows("bets", **match), key="placed_at")

    def list_bettors(self, prediction_id):
        with self._lock:
            return list({
                r["user_id"] for r in self._tables["bets"].values()
                if prediction_id in (r.get("prediction_ids") or [])
            })

    def settle_bet(self, bet_id, expected, fields):
        with self._lock:
            r = self._tables["bets"].get(bet_id)
            if not r or r.get("status") != expected:
                raise StaleRecordError(f"bet {bet_id} is no longer {expected}")
            r.update(fields)
            return dict(r)

    # ---- notifications ----
    def insert_notifications(self, rows):
        with self._lock:
            for row in rows:
                self._insert("notifications", row)
        return len(rows)

    def list_notifications(self, user_id, unread_only=False):
        with self._lock:
            rows = self._rows("notifications", user_id=user_id)
        if unread_only:
            rows = [r for r in rows if not r.get("read")]
        return self._newest_first(rows)

    def mark_notification_read(self, notification_id, user_id):
        with self._lock:
            r = self._tables["notifications"].get(notification_id)
            if not r or r.get("user_id") != user_id:
                return None
            r["read"] = True
            return dict(r)

    def mark_all_notifications_read(self, user_id):
        count = 0
        with self._lock:
            for r in self._tables["notifications"].values():
                if r.get("user_id") == user_id and not r.get("read"):
                    r["read"] = True
                    count += 1
        return count

    # ---- registration requests ----
    def insert_registration_request(self, row):
        with self._lock:
            for r in self._tables["pre_registration_requests"].values():
                if r.get("email") == row.get("email") and r.get("status") in OPEN_REQUEST_STATUSES:
                    raise DuplicateRecordError("pre_registration_requests_open_email_idx")
            return self._insert("pre_registration_requests", row)

    def get_registration_request(self, request_id):
        with self._lock:
            r = self._tables["pre_registration_requests"].get(request_id)
            return dict(r) if r else None

    def find_open_registration_request(self, email):
        with self._lock:
            rows = [
                r for r in self._rows("pre_registration_requests", email=email)
                if r.get("status") in OPEN_REQUEST_STATUSES
            ]
        return rows[0] if rows else None

    def list_registration_requests(self, status=None):
        match = {"status": status} if status else {}
        with self._lock:
            return self._newest_first(self._rows("pre_registration_requests", **match))

    def transition_registration_request(self, request_id, expected, new, fields=None):
        expected = list(expected)
        with self._lock:
            r = self._tables["pre_registration_requests"].get(request_id)
            if not r or r.get("status") not in expected:
                raise StaleRecordError(f"registration request {request_id} is not in {expected}")
            r.update(fields or {})
            r["status"] = new
            return dict(r)

    # ---- password resets ----
    def insert_password_reset(self, row):
        with self._lock:
            record = dict(row)
            record.setdefault("used", False)
            return self._insert("password_resets", record)

    def find_password_reset(self, token_hash):
        with self._lock:
            rows = self._rows("password_resets", token_hash=token_hash)
        return rows[0] if rows else None

    def consume_password_reset(self, reset_id):
        with self._lock:
            r = self._tables["password_resets"].get(reset_id)
            if not r or r.get("used"):
                raise StaleRecordError(f"password reset {reset_id} already used")
            r["used"] = True


def build_repository(backend: str, supabase_url: Optional[str] = None, supabase_key: Optional[str] = None) -> Repository:
    """
    Select the store from configuration.
      - "supabase" (default): requires URL + key, raises RuntimeError otherwise
      - "memory": local dev / tests only
    """
    backend = (backend or "supabase").strip().lower()
    if backend == "memory":
        return MemoryRepository()
    if backend == "supabase":
        if not supabase_url or not supabase_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_KEY must be set in .env")
        return SupabaseRepository(supabase_url, supabase_key)
    raise RuntimeError(f"Unknown TIPS_STORE backend: {backend}")
