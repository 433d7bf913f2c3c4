from __future__ import annotations

import asyncio
import contextlib
import hashlib
import os
from datetime import datetime, timezone
from typing import Any, Awaitable

from google.cloud import firestore

from bridge_solver.common import guarded_call, log_event

from .settings import ConfigUpdateHandler


class FirestoreStorageOps:
    @staticmethod
    def _normalize_doc_path(doc_path: str, leaf_doc_id: str) -> tuple[str, bool]:
        normalized = doc_path.strip("/")
        if not normalized:
            raise ValueError("FIRESTORE_CONFIG_DOC must not be empty.")

        segments = [part for part in normalized.split("/") if part]
        if len(segments) % 2 == 0:
            return normalized, False

        return f"{normalized}/{leaf_doc_id}", True

    @staticmethod
    def _doc_id_from_text(value: str) -> str:
        normalized = value.strip().replace("/", "_")
        if not normalized:
            raise ValueError("Document id source must not be empty.")

        if len(normalized) <= 128:
            return normalized

        digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]
        return f"{normalized[:96]}-{digest}"

    async def mark_run_stopped(self, *, reason: str) -> None:
        if self._run_doc_ref is None:
            return

        payload = {
            "status": "stopped",
            "stop_reason": reason,
            "stopped_at": firestore.SERVER_TIMESTAMP,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }
        await guarded_call(
            lambda: asyncio.to_thread(self._run_doc_ref.set, payload, merge=True),
            logger=self._logger,
            event="run_status_update_failed",
            message="Failed to update run status",
        )

    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        if self._firestore is None or self._events_collection_ref is None:
            log_event(
                self._logger,
                level="warning",
                event="publish_skipped",
                message="Skipping Firestore event because client is not ready",
                skipped_event=event,
            )
            return

        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc),
            "server_timestamp": firestore.SERVER_TIMESTAMP,
            "level": level,
            "event": event,
            "message": message,
            "bot_id": self.settings.bot_id,
            "run_id": self.settings.bot_run_id,
            "env": self.settings.bot_env,
            "schema_version": self.settings.config_schema_version,
        }
        if details:
            payload["details"] = details

        async def write_event() -> None:
            if event_id:
                event_ref = self._events_collection_ref.document(self._doc_id_from_text(event_id))
                await asyncio.to_thread(event_ref.set, payload, merge=True)
                return

            await asyncio.to_thread(self._events_collection_ref.add, payload)

        await guarded_call(
            write_event,
            logger=self._logger,
            event="publish_failed",
            message="Failed to publish Firestore event",
            level="error",
        )

    async def record_order_outcome(self, summary: dict[str, Any]) -> None:
        """Persist a final order outcome and bump the per-state counters."""
        if self._firestore is None or self._settlements_collection_ref is None:
            log_event(
                self._logger,
                level="warning",
                event="outcome_persist_skipped",
                message="Skipping order outcome because Firestore client is not ready",
                order_id=summary.get("order_id"),
            )
            return

        order_id = str(summary.get("order_id") or "")
        state = str(summary.get("state") or "unknown")
        payload = dict(summary)
        payload.update(
            {
                "bot_id": self.settings.bot_id,
                "run_id": self.settings.bot_run_id,
                "env": self.settings.bot_env,
                "schema_version": self.settings.config_schema_version,
                "updated_at": firestore.SERVER_TIMESTAMP,
            }
        )
        outcome_ref = self._settlements_collection_ref.document(self._doc_id_from_text(order_id))
        counters = {
            f"{state}_count": firestore.Increment(1),
            "last_order_id": order_id,
            "last_state": state,
            "run_id": self.settings.bot_run_id,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }

        async def write_outcome() -> None:
            await asyncio.gather(
                asyncio.to_thread(outcome_ref.set, payload, merge=True),
                asyncio.to_thread(self._metrics_doc_ref.set, counters, merge=True),
            )

        await guarded_call(
            write_outcome,
            logger=self._logger,
            event="outcome_persist_failed",
            message="Failed to persist order outcome",
            level="error",
            order_id=order_id,
        )

    def start_config_listener(
        self,
        loop: asyncio.AbstractEventLoop,
        on_update: ConfigUpdateHandler | None = None,
    ) -> None:
        if self._config_doc_ref is None:
            raise RuntimeError("StorageGateway is not connected.")
        if self._watch is not None:
            return

        def schedule(coro: Awaitable[None]) -> None:
            task = asyncio.ensure_future(coro)

            def on_done(done_task: asyncio.Future[None]) -> None:
                with contextlib.suppress(asyncio.CancelledError):
                    error = done_task.exception()
                    if error:
                        log_event(
                            self._logger,
                            level="error",
                            event="config_sync_failed",
                            message="Config sync task failed",
                            error=str(error),
                        )

            task.add_done_callback(on_done)

        def on_snapshot(doc_snapshot: list[Any], _changes: list[Any], _read_time: Any) -> None:
            if not doc_snapshot or loop.is_closed():
                return
            snapshot = doc_snapshot[0]
            data = (snapshot.to_dict() if snapshot.exists else {}) or {}
            loop.call_soon_threadsafe(schedule, self._handle_config_update(data, on_update))

        self._watch = self._config_doc_ref.on_snapshot(on_snapshot)
        log_event(
            self._logger,
            level="info",
            event="config_watch_started",
            message="Config watcher started",
        )

    async def _handle_config_update(
        self,
        config: dict[str, Any],
        on_update: ConfigUpdateHandler | None,
    ) -> None:
        await self.sync_config_to_redis(config, source="snapshot")
        if on_update:
            await on_update(config)

    async def _ensure_bot_namespace(self) -> None:
        if self._bot_doc_ref is None or self._run_doc_ref is None:
            raise RuntimeError("Firestore namespace references are not initialized.")

        bot_payload: dict[str, Any] = {
            "bot_id": self.settings.bot_id,
            "env": self.settings.bot_env,
            "schema_version": self.settings.config_schema_version,
            "config_doc": self._resolved_firestore_config_doc,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }
        run_payload: dict[str, Any] = {
            "run_id": self.settings.bot_run_id,
            "bot_id": self.settings.bot_id,
            "env": self.settings.bot_env,
            "status": "running",
            "pid": os.getpid(),
            "started_at": firestore.SERVER_TIMESTAMP,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }

        await asyncio.gather(
            asyncio.to_thread(self._bot_doc_ref.set, bot_payload, merge=True),
            asyncio.to_thread(self._run_doc_ref.set, run_payload, merge=True),
        )

    def _initialize_namespace_refs(self) -> None:
        firestore_client = self._require_firestore()

        self._bot_doc_ref = firestore_client.document(f"{self.settings.bot_collection}/{self.settings.bot_id}")
        self._run_doc_ref = self._bot_doc_ref.collection(self.settings.bot_runs_collection).document(
            self.settings.bot_run_id
        )
        self._events_collection_ref = self._run_doc_ref.collection(self.settings.bot_events_collection)
        self._settlements_collection_ref = self._bot_doc_ref.collection(self.settings.bot_settlements_collection)
        self._metrics_doc_ref = self._bot_doc_ref.collection(self.settings.bot_metrics_collection).document(
            self.settings.bot_metrics_doc_id
        )

    def _require_firestore(self) -> firestore.Client:
        if self._firestore is None:
            raise RuntimeError("Firestore client is not initialized.")
        return self._firestore
