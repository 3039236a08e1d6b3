"""
Sync Peers
==========
The remote side of replication.

    - SyncPeer: abstract push/pull contract
    - HttpSyncPeer: talks to a sync server over HTTP (aiohttp)
    - InMemorySyncPeer: a complete server-side implementation kept in
      process; used for local multi-client setups and tests

Both operations must be idempotent: redelivering the same push (same
entity content, same base version) or repeating a pull with the same
``last_sync_version`` yields the same outcome.
"""

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from unimem.core.exceptions import SyncError
from unimem.core.http import RetryConfig, request_json
from unimem.sync.protocol import (
    PullRequest,
    PullResponse,
    PushConflict,
    PushRequest,
    PushResponse,
)


class SyncPeer(ABC):
    """Remote replication endpoint."""

    @abstractmethod
    async def push(self, request: PushRequest) -> PushResponse:
        """Send local changes; the response lists accepted versions and conflicts."""

    @abstractmethod
    async def pull(self, request: PullRequest) -> PullResponse:
        """Fetch changes made by other clients after ``last_sync_version``."""

    async def close(self) -> None:
        """Release network resources."""


class HttpSyncPeer(SyncPeer):
    """
    HTTP client for a sync server.

    Endpoints (relative to ``server_url``):
        POST /api/sync/push   JSON body
        GET  /api/sync/pull   query string
    An optional auth token is sent as ``Authorization: Bearer <token>``.
    """

    PUSH_PATH = "/api/sync/push"
    PULL_PATH = "/api/sync/pull"

    def __init__(
        self,
        server_url: str,
        auth_token: Optional[str] = None,
        retry: Optional[RetryConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.server_url = server_url.rstrip("/")
        self._auth_token = auth_token
        self._retry = retry or RetryConfig()
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _headers(self) -> Dict[str, str]:
        headers = {"User-Agent": "Unimem-Sync/1.0"}
        if self._auth_token:
            headers["Authorization"] = f"Bearer {self._auth_token}"
        return headers

    @staticmethod
    def _error_factory(operation: str):
        def _make(reason: str, context: dict) -> SyncError:
            return SyncError(operation, reason, context)
        return _make

    async def push(self, request: PushRequest) -> PushResponse:
        data = await request_json(
            self._get_session(),
            "POST",
            f"{self.server_url}{self.PUSH_PATH}",
            self._retry,
            self._error_factory("push"),
            json_body=request.to_wire(),
            headers=self._headers(),
        )
        try:
            return PushResponse.model_validate(data)
        except PydanticValidationError as exc:
            raise SyncError("push", f"malformed response: {exc.error_count()} validation error(s)") from exc

    async def pull(self, request: PullRequest) -> PullResponse:
        data = await request_json(
            self._get_session(),
            "GET",
            f"{self.server_url}{self.PULL_PATH}",
            self._retry,
            self._error_factory("pull"),
            params=request.to_query(),
            headers=self._headers(),
        )
        try:
            return PullResponse.model_validate(data)
        except PydanticValidationError as exc:
            raise SyncError("pull", f"malformed response: {exc.error_count()} validation error(s)") from exc

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


@dataclass
class _ServerRecord:
    data: Optional[Dict[str, Any]]  # None marks a deletion
    version: int
    client_id: str


def _without_embedding(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if k != "embedding"}


def _same_content(a: Optional[Dict[str, Any]], b: Optional[Dict[str, Any]]) -> bool:
    if a is None or b is None:
        return a is b
    # Embeddings depend on the client's provider; compare the rest
    return _without_embedding(a) == _without_embedding(b)


class InMemorySyncPeer(SyncPeer):
    """
    In-process sync server with integer versions.

    A pushed change conflicts when the server holds a newer version of the
    entity, written by another client, than the base version the pushing
    client last reconciled against. Pushing content identical to what the
    server already holds is accepted without creating a new version.
    """

    def __init__(self):
        self._version = 0
        self._records: Dict[str, _ServerRecord] = {}
        self.push_count = 0
        self.pull_count = 0

    @property
    def version(self) -> int:
        return self._version

    def snapshot(self, entity_id: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(entity_id)
        return copy.deepcopy(record.data) if record else None

    def _conflicts(self, entity_id: str, client_id: str, base: Optional[int]) -> Optional[_ServerRecord]:
        current = self._records.get(entity_id)
        if current is None or current.client_id == client_id:
            return None
        if base is not None and current.version <= base:
            return None
        return current

    def _write(self, entity_id: str, data: Optional[Dict[str, Any]], client_id: str) -> int:
        self._version += 1
        self._records[entity_id] = _ServerRecord(copy.deepcopy(data), self._version, client_id)
        return self._version

    async def push(self, request: PushRequest) -> PushResponse:
        self.push_count += 1
        conflicts: List[PushConflict] = []
        accepted: Dict[str, int] = {}

        changes = [(e["id"], e) for e in request.entities] + [(eid, None) for eid in request.deletions]
        for entity_id, data in changes:
            current = self._records.get(entity_id)
            if current is not None and _same_content(current.data, data):
                accepted[entity_id] = current.version
                continue

            clash = self._conflicts(entity_id, request.client_id, request.base_versions.get(entity_id))
            if clash is not None:
                conflicts.append(
                    PushConflict(
                        entity_id=entity_id,
                        server_version=copy.deepcopy(clash.data),
                        server_sync_version=clash.version,
                    )
                )
                continue

            if data is None and current is None:
                # Never reached the server; nothing to delete
                accepted[entity_id] = self._version
                continue
            accepted[entity_id] = self._write(entity_id, data, request.client_id)

        logger.debug(
            f"[InMemorySyncPeer] push from {request.client_id}: "
            f"{len(accepted)} accepted, {len(conflicts)} conflicts (version {self._version})"
        )
        return PushResponse(success=True, sync_version=self._version, conflicts=conflicts, accepted=accepted)

    async def pull(self, request: PullRequest) -> PullResponse:
        self.pull_count += 1
        since = request.last_sync_version or 0
        changes = sorted(
            (
                (entity_id, record)
                for entity_id, record in self._records.items()
                if record.version > since and record.client_id != request.client_id
            ),
            key=lambda item: item[1].version,
        )
        page = changes[: request.limit]
        has_more = len(changes) > request.limit

        entities, deleted, versions = [], [], {}
        for entity_id, record in page:
            if record.data is None:
                deleted.append(entity_id)
            else:
                entities.append(copy.deepcopy(record.data))
            versions[entity_id] = record.version

        # Mid-stream pages resume after the last delivered change
        sync_version = page[-1][1].version if has_more else max(self._version, since)
        return PullResponse(
            entities=entities,
            deleted=deleted,
            sync_version=sync_version,
            has_more=has_more,
            entity_versions=versions,
        )
