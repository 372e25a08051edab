"""Durable session snapshots and the audit event log.

One record per session (``sessions/<id>.json``) holds the full snapshot with its
version stamp; one index per owner (``owners/<owner>.json``) points at the
owner's active session. S3 is used when a bucket is configured, otherwise the
local filesystem. Both back-ends replace a record in a single write, so a
reader sees either the previous snapshot or the new one.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any
from urllib.parse import quote

from pydantic import ValidationError as SchemaValidationError

from sihat_tcm.config import Settings
from sihat_tcm.errors import ConcurrentModification, PersistenceError, SessionNotFound
from sihat_tcm.schemas import SessionState
from sihat_tcm.utils import utc_now

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_OWNER_INDEX_ATTEMPTS = 3


class _PreconditionFailed(Exception):
    pass


class _LocalBackend:
    def __init__(self, root: Path):
        self._root = root

    def read(self, key: str) -> tuple[bytes, str | None] | None:
        path = self._root / key
        if not path.exists():
            return None
        return path.read_bytes(), None

    def write(self, key: str, data: bytes, *, token: str | None, create: bool) -> None:
        path = self._root / key
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as fp:
                fp.write(data)
                fp.flush()
                os.fsync(fp.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class _S3Backend:
    def __init__(self, client: Any, bucket: str, prefix: str):
        self._client = client
        self._bucket = bucket
        self._prefix = prefix.strip("/")

    def _key(self, key: str) -> str:
        return f"{self._prefix}/{key}" if self._prefix else key

    def read(self, key: str) -> tuple[bytes, str | None] | None:
        from botocore.exceptions import ClientError

        try:
            response = self._client.get_object(Bucket=self._bucket, Key=self._key(key))
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in {"NoSuchKey", "404"}:
                return None
            raise
        return response["Body"].read(), response.get("ETag")

    def write(self, key: str, data: bytes, *, token: str | None, create: bool) -> None:
        from botocore.exceptions import ClientError

        conditions: dict[str, str] = {}
        if create:
            conditions["IfNoneMatch"] = "*"
        elif token:
            conditions["IfMatch"] = token
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=self._key(key),
                Body=data,
                ContentType="application/json",
                **conditions,
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in {"PreconditionFailed", "ConditionalRequestConflict"}:
                raise _PreconditionFailed(key) from exc
            raise


class SessionStore:
    def __init__(self, settings: Settings):
        self._settings = settings
        self._root = Path(settings.local_storage_dir)
        (self._root / "logs").mkdir(parents=True, exist_ok=True)
        self._events_file = self._root / "logs" / "events.jsonl"
        # Serializes check-and-write within this process; S3 conditional
        # writes cover writers in other processes.
        self._lock = threading.Lock()

        if settings.s3_bucket:
            import boto3

            self._backend: _LocalBackend | _S3Backend = _S3Backend(
                boto3.client("s3", region_name=settings.s3_region),
                settings.s3_bucket,
                settings.s3_prefix,
            )
        else:
            self._backend = _LocalBackend(self._root)

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"sessions/{session_id}.json"

    @staticmethod
    def _owner_key(owner_ref: str) -> str:
        return f"owners/{quote(owner_ref, safe='')}.json"

    @staticmethod
    def _encode(payload: dict[str, Any]) -> bytes:
        return json.dumps(payload, ensure_ascii=True, indent=2, default=str).encode("utf-8")

    def _read_session(self, session_id: str) -> tuple[SessionState, str | None] | None:
        if not _SESSION_ID_RE.match(session_id):
            return None
        try:
            raw = self._backend.read(self._session_key(session_id))
        except Exception as exc:
            raise PersistenceError(f"Failed to read session {session_id}: {exc}") from exc
        if raw is None:
            return None
        data, token = raw
        try:
            return SessionState.model_validate_json(data), token
        except SchemaValidationError as exc:
            raise PersistenceError(f"Stored snapshot for {session_id} is unreadable") from exc

    def _fetch_owner_index(self, owner_ref: str) -> tuple[dict[str, Any], str | None, bool]:
        try:
            raw = self._backend.read(self._owner_key(owner_ref))
        except Exception as exc:
            raise PersistenceError(f"Failed to read owner index: {exc}") from exc
        if raw is None:
            return {"owner_ref": owner_ref, "active_session_id": None, "session_ids": []}, None, False
        return json.loads(raw[0]), raw[1], True

    def _read_owner_index(self, owner_ref: str) -> dict[str, Any]:
        return self._fetch_owner_index(owner_ref)[0]

    def _sync_owner_index(self, session: SessionState) -> None:
        # Conditional read-modify-write; a concurrent writer forces a re-read
        # so no session id is ever dropped from the index.
        for _ in range(_OWNER_INDEX_ATTEMPTS):
            index, token, exists = self._fetch_owner_index(session.owner_ref)
            before = json.dumps(index, sort_keys=True)
            if session.session_id not in index["session_ids"]:
                index["session_ids"].append(session.session_id)
            if session.status == "active":
                index["active_session_id"] = session.session_id
            elif index.get("active_session_id") == session.session_id:
                index["active_session_id"] = None
            if json.dumps(index, sort_keys=True) == before:
                return
            try:
                self._backend.write(
                    self._owner_key(session.owner_ref),
                    self._encode(index),
                    token=token,
                    create=not exists,
                )
                return
            except _PreconditionFailed:
                logger.info("owner_index_conflict owner=%s session=%s", session.owner_ref, session.session_id)
        raise ConcurrentModification(session.session_id, session.version, None)

    def _active_conflict(self, session: SessionState) -> SessionState | None:
        index = self._read_owner_index(session.owner_ref)
        active_id = index.get("active_session_id")
        if not active_id or active_id == session.session_id:
            return None
        current = self._read_session(active_id)
        if current is not None and current[0].status == "active":
            return current[0]
        return None

    def _save_locked(self, session: SessionState) -> SessionState:
        existing = self._read_session(session.session_id)
        if existing is None:
            if session.version != 0:
                raise ConcurrentModification(session.session_id, session.version, None)
            other = self._active_conflict(session)
            if other is not None:
                raise ConcurrentModification(other.session_id, None, other.version)
            token = None
        else:
            stored, token = existing
            if stored.version != session.version:
                raise ConcurrentModification(session.session_id, session.version, stored.version)

        persisted = session.model_copy(
            update={"version": session.version + 1, "last_persisted_at": utc_now()},
            deep=True,
        )

        # An active session is indexed before its snapshot lands, so a failed
        # index write leaves nothing durable behind. Readers verify the
        # snapshot status, which makes a stale pointer harmless.
        if persisted.status == "active":
            try:
                self._sync_owner_index(persisted)
            except (PersistenceError, ConcurrentModification):
                raise
            except Exception as exc:
                raise PersistenceError(f"Failed to update owner index for {session.owner_ref}: {exc}") from exc

        try:
            self._backend.write(
                self._session_key(persisted.session_id),
                self._encode(persisted.model_dump(mode="json")),
                token=token,
                create=existing is None,
            )
        except _PreconditionFailed as exc:
            raise ConcurrentModification(session.session_id, session.version, None) from exc
        except Exception as exc:
            raise PersistenceError(f"Failed to write session {session.session_id}: {exc}") from exc

        if persisted.status != "active":
            try:
                self._sync_owner_index(persisted)
            except Exception as exc:
                logger.warning(
                    "owner_index_stale owner=%s session=%s error=%s",
                    persisted.owner_ref,
                    persisted.session_id,
                    exc,
                )
        return persisted

    async def save(self, session: SessionState) -> SessionState:
        """Write ``session`` if the stored version still matches ``session.version``.

        Returns the persisted snapshot with its new version and timestamp.
        """
        with self._lock:
            persisted = self._save_locked(session)
        logger.debug("session_saved id=%s version=%s", persisted.session_id, persisted.version)
        return persisted

    async def load(self, session_id: str) -> SessionState:
        found = self._read_session(session_id)
        if found is None:
            raise SessionNotFound(session_id)
        return found[0]

    async def load_active_by_owner(self, owner_ref: str) -> SessionState | None:
        index = self._read_owner_index(owner_ref)
        active_id = index.get("active_session_id")
        if not active_id:
            return None
        found = self._read_session(active_id)
        if found is None:
            return None
        session = found[0]
        # The index can lag behind the snapshot; trust the snapshot.
        if session.status != "active" or session.owner_ref != owner_ref:
            return None
        return session

    async def list_by_owner(self, owner_ref: str) -> list[SessionState]:
        index = self._read_owner_index(owner_ref)
        sessions: list[SessionState] = []
        for session_id in index.get("session_ids", []):
            found = self._read_session(session_id)
            if found is not None and found[0].owner_ref == owner_ref:
                sessions.append(found[0])
        return sessions

    async def mark_abandoned(self, session_id: str) -> SessionState:
        with self._lock:
            found = self._read_session(session_id)
            if found is None:
                raise SessionNotFound(session_id)
            current = found[0]
            if current.status == "abandoned":
                return current
            persisted = self._save_locked(current.model_copy(update={"status": "abandoned"}))
        logger.info("session_abandoned id=%s owner=%s", session_id, persisted.owner_ref)
        return persisted

    async def append_event(self, event_name: str, payload: dict[str, Any]) -> None:
        envelope = {
            "timestamp": utc_now().isoformat(),
            "event": event_name,
            "payload": payload,
        }
        with self._events_file.open("a", encoding="utf-8") as fp:
            fp.write(json.dumps(envelope, ensure_ascii=True, default=str) + "\n")
