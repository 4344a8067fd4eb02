"""Embedded document store for the till (SQLite backed).

Documents are JSON objects keyed by ``_id`` with a ``_rev`` revision token
(``<generation>-<digest>``). Writes must quote the current revision; a stale
or missing revision raises ConflictError. Deleted documents are kept as
tombstones so deletions replicate.

The same ``changes``/``bulk_docs`` pair the remote client exposes is
implemented here, which is all replication needs.
"""
import hashlib
import json
import logging
import re
import sqlite3
import threading
import time
import datetime as dt
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional, Tuple

import documents
from pos_errors import ConflictError, NotFoundError, StoreWriteError, ValidationError

log = logging.getLogger(__name__)

REQUIRED_INDEXES: Tuple[Tuple[str, ...], ...] = (("type",), ("type", "status"))

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_COLUMN_FOR_FIELD = {"_id": "doc_id", "type": "doc_type", "status": "status"}


def iso_now() -> str:
    return dt.datetime.utcnow().replace(microsecond=0).isoformat() + "Z"


def connect(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    _ensure_schema(conn)
    return conn


def _ensure_schema(conn: sqlite3.Connection):
    conn.execute("""
    CREATE TABLE IF NOT EXISTS docs (
      doc_id    TEXT PRIMARY KEY,
      rev       TEXT NOT NULL,
      doc_type  TEXT,
      status    TEXT,
      deleted   INTEGER NOT NULL DEFAULT 0,
      seq       INTEGER NOT NULL,
      body_json TEXT NOT NULL
    )
    """)
    conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_docs_seq ON docs(seq)")
    conn.execute("""
    CREATE TABLE IF NOT EXISTS replication_checkpoints (
      rep_id      TEXT PRIMARY KEY,
      last_seq    TEXT,
      updated_utc TEXT
    )
    """)
    conn.execute("""
    CREATE TABLE IF NOT EXISTS sync_leases (
      lease_key  TEXT PRIMARY KEY,
      holder     TEXT NOT NULL,
      expires_at REAL NOT NULL
    )
    """)
    conn.commit()


def rev_generation(rev: Optional[str]) -> int:
    if not rev:
        return 0
    try:
        return int(str(rev).split("-", 1)[0])
    except ValueError:
        return 0


def _rev_key(rev: Optional[str]) -> Tuple[int, str]:
    text = str(rev or "")
    return rev_generation(text), text.split("-", 1)[1] if "-" in text else ""


def rev_wins(candidate: Optional[str], current: Optional[str]) -> bool:
    """Deterministic winner between two revisions of one document."""
    return _rev_key(candidate) > _rev_key(current)


def _body_digest(doc: Dict[str, Any]) -> str:
    body = {k: v for k, v in doc.items() if k != "_rev"}
    raw = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5(raw.encode("utf-8")).hexdigest()


def _field_expr(field: str) -> str:
    if not _FIELD_RE.match(field or ""):
        raise ValidationError(f"Unsupported selector field {field!r}", rule="selector")
    column = _COLUMN_FOR_FIELD.get(field)
    if column:
        return column
    return f"json_extract(body_json, '$.{field}')"


class LocalDocStore:
    """Document store over one SQLite database file."""

    def __init__(self, db_path: str, name: Optional[str] = None):
        self.db_path = db_path
        self.name = name or db_path
        self._lock = threading.RLock()
        self.conn = connect(db_path)

    def close(self):
        with self._lock:
            self.conn.close()

    # ---------- reads ----------
    def _row(self, doc_id: str) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT doc_id, rev, deleted, seq, body_json FROM docs WHERE doc_id=?", (doc_id,)
        ).fetchone()

    def get(self, doc_id: str) -> Dict[str, Any]:
        with self._lock:
            row = self._row(doc_id)
        if not row or row["deleted"]:
            raise NotFoundError(f"Document {doc_id} not found", detail="deleted" if row else "missing")
        return json.loads(row["body_json"])

    def all_docs(self, include_deleted: bool = False) -> List[Dict[str, Any]]:
        sql = "SELECT body_json FROM docs"
        if not include_deleted:
            sql += " WHERE deleted=0"
        with self._lock:
            rows = self.conn.execute(sql + " ORDER BY doc_id").fetchall()
        return [json.loads(r["body_json"]) for r in rows]

    def find(self, selector: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Equality match on every selector field."""
        clauses = ["deleted=0"]
        params: List[Any] = []
        for field, value in (selector or {}).items():
            expr = _field_expr(field)
            if value is None:
                clauses.append(f"{expr} IS NULL")
                continue
            if isinstance(value, (dict, list)):
                raise ValidationError(f"Selector for {field} must be a plain value", rule="selector")
            if isinstance(value, bool):
                value = 1 if value else 0
            clauses.append(f"{expr} = ?")
            params.append(value)
        sql = "SELECT body_json FROM docs WHERE " + " AND ".join(clauses) + " ORDER BY doc_id"
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [json.loads(r["body_json"]) for r in rows]

    def info(self) -> Dict[str, Any]:
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) AS n, (SELECT COALESCE(MAX(seq),0) FROM docs) AS s FROM docs WHERE deleted=0"
            ).fetchone()
        return {"db_name": self.name, "doc_count": row["n"], "update_seq": row["s"]}

    # ---------- writes ----------
    @contextmanager
    def _write_transaction(self, failure: str):
        """Hold the database write lock from the first read to commit.

        Other handles on the same file (sync worker, background sync) wait
        on the busy timeout instead of racing for the next seq.
        """
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise StoreWriteError(f"{failure}: {exc}") from exc
            try:
                yield
                self.conn.commit()
            except sqlite3.Error as exc:
                self.conn.rollback()
                raise StoreWriteError(f"{failure}: {exc}") from exc
            except BaseException:
                self.conn.rollback()
                raise

    def _next_seq(self) -> int:
        row = self.conn.execute("SELECT COALESCE(MAX(seq),0)+1 AS s FROM docs").fetchone()
        return int(row["s"])

    def _write(self, doc: Dict[str, Any], rev: str, exists: bool):
        body = dict(doc)
        body["_rev"] = rev
        deleted = 1 if body.get("_deleted") else 0
        params = (
            rev,
            None if deleted else body.get("type"),
            None if deleted else body.get("status"),
            deleted,
            self._next_seq(),
            json.dumps(body, separators=(",", ":"), default=str),
            body["_id"],
        )
        if exists:
            self.conn.execute(
                "UPDATE docs SET rev=?, doc_type=?, status=?, deleted=?, seq=?, body_json=? WHERE doc_id=?",
                params,
            )
        else:
            self.conn.execute(
                "INSERT INTO docs (rev, doc_type, status, deleted, seq, body_json, doc_id) VALUES (?,?,?,?,?,?,?)",
                params,
            )

    def put(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        documents.validate_doc(doc)
        doc_id = doc["_id"]
        given = doc.get("_rev")
        with self._write_transaction(f"Failed to write {doc_id}"):
            row = self._row(doc_id)
            live = bool(row) and not row["deleted"]
            if live and given != row["rev"]:
                raise ConflictError(f"Document update conflict for {doc_id}", detail=row["rev"])
            if not live and given and (not row or given != row["rev"]):
                raise ConflictError(f"Document update conflict for {doc_id}", detail="missing")
            if live:
                documents.check_submitted_unchanged(json.loads(row["body_json"]), doc)
            rev = f"{rev_generation(row['rev'] if row else None) + 1}-{_body_digest(doc)}"
            self._write(doc, rev, exists=bool(row))
        return {"ok": True, "id": doc_id, "rev": rev}

    def remove(self, doc_id: str, rev: str) -> Dict[str, Any]:
        return self.put({"_id": doc_id, "_rev": rev, "_deleted": True})

    # ---------- indexes ----------
    def create_index(self, fields: Iterable[str], name: Optional[str] = None) -> Dict[str, str]:
        fields = list(fields)
        if not fields:
            raise ValidationError("Index needs at least one field", rule="index")
        exprs = [_field_expr(f) for f in fields]
        index_name = name or "idx_docs_" + "_".join(f.strip("_") for f in fields)
        if not _FIELD_RE.match(index_name):
            raise ValidationError(f"Invalid index name {index_name!r}", rule="index")
        with self._lock:
            exists = self.conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type='index' AND name=?", (index_name,)
            ).fetchone()
            if exists:
                return {"result": "exists", "name": index_name}
            self.conn.execute(f"CREATE INDEX IF NOT EXISTS {index_name} ON docs ({', '.join(exprs)})")
            self.conn.commit()
        return {"result": "created", "name": index_name}

    def ensure_required_indexes(self) -> List[Dict[str, str]]:
        return [self.create_index(fields) for fields in REQUIRED_INDEXES]

    # ---------- replication ----------
    def changes(self, since: Any = 0, limit: Optional[int] = None, timeout: Optional[float] = None) -> Dict[str, Any]:
        try:
            since_seq = int(since or 0)
        except (TypeError, ValueError):
            since_seq = 0
        sql = "SELECT doc_id, rev, deleted, seq, body_json FROM docs WHERE seq > ? ORDER BY seq"
        params: List[Any] = [since_seq]
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        results = [{
            "seq": r["seq"],
            "id": r["doc_id"],
            "rev": r["rev"],
            "deleted": bool(r["deleted"]),
            "doc": json.loads(r["body_json"]),
        } for r in rows]
        last_seq = results[-1]["seq"] if results else since_seq
        return {"results": results, "last_seq": last_seq}

    def bulk_docs(self, docs: List[Dict[str, Any]], new_edits: bool = False,
                  timeout: Optional[float] = None) -> int:
        """Store replicated revisions as-is, keeping the winning revision per doc."""
        if new_edits:
            written = 0
            for doc in docs:
                self.put(doc)
                written += 1
            return written
        written = 0
        with self._write_transaction("Failed to apply replicated docs"):
            for doc in docs:
                doc_id = doc.get("_id")
                rev = doc.get("_rev")
                if not doc_id or not rev or str(doc_id).startswith("_design/"):
                    continue
                try:
                    documents.validate_doc(doc)
                except ValidationError as exc:
                    log.warning("Skipping replicated doc %s: %s", doc_id, exc.message)
                    continue
                row = self._row(doc_id)
                if row and (row["rev"] == rev or not rev_wins(rev, row["rev"])):
                    continue
                self._write(doc, rev, exists=bool(row))
                written += 1
        return written

    def get_checkpoint(self, rep_id: str) -> Optional[str]:
        with self._lock:
            row = self.conn.execute(
                "SELECT last_seq FROM replication_checkpoints WHERE rep_id=?", (rep_id,)
            ).fetchone()
        return row["last_seq"] if row else None

    def set_checkpoint(self, rep_id: str, last_seq: Any):
        with self._lock:
            self.conn.execute("""
                INSERT INTO replication_checkpoints (rep_id, last_seq, updated_utc) VALUES (?,?,?)
                ON CONFLICT(rep_id) DO UPDATE SET last_seq=excluded.last_seq, updated_utc=excluded.updated_utc
            """, (rep_id, str(last_seq), iso_now()))
            self.conn.commit()

    # ---------- sync leases ----------
    def acquire_lease(self, key: str, holder: str, ttl: float) -> bool:
        """Take ``key`` for ``holder`` unless another live holder has it.

        Leases live in the database file, so every process with a handle on
        it sees them. An expired lease is taken over.
        """
        now = time.time()
        with self._write_transaction(f"Failed to take lease {key}"):
            self.conn.execute("DELETE FROM sync_leases WHERE lease_key=? AND expires_at<=?", (key, now))
            cur = self.conn.execute(
                "INSERT OR IGNORE INTO sync_leases (lease_key, holder, expires_at) VALUES (?,?,?)",
                (key, holder, now + ttl),
            )
            taken = cur.rowcount == 1
        return taken

    def release_lease(self, key: str, holder: str):
        with self._write_transaction(f"Failed to release lease {key}"):
            self.conn.execute("DELETE FROM sync_leases WHERE lease_key=? AND holder=?", (key, holder))
