"""
Runtime state helpers for the memory backend.

This module provides:
1) Logged background tasks (fire-and-forget work that must not fail silently).
2) The in-process approval notification queue.
3) Maintenance coordination (serialized passes, daily decay guard).
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Optional, Set

from loguru import logger

_BACKGROUND_TASKS: Set[asyncio.Task] = set()
_MAX_BACKGROUND_TASKS = 1000


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _prune_done_tasks() -> None:
    done_tasks = {task for task in _BACKGROUND_TASKS if task.done()}
    if done_tasks:
        _BACKGROUND_TASKS.difference_update(done_tasks)


def create_logged_task(coro: Coroutine[Any, Any, Any], label: str) -> asyncio.Task:
    """Schedule `coro`, hold a strong reference, and log its failure instead of losing it."""
    task = asyncio.create_task(coro)
    _BACKGROUND_TASKS.add(task)
    if len(_BACKGROUND_TASKS) > _MAX_BACKGROUND_TASKS:
        _prune_done_tasks()
        if len(_BACKGROUND_TASKS) > _MAX_BACKGROUND_TASKS:
            logger.warning(
                f"[runtime] too many background tasks ({len(_BACKGROUND_TASKS)}), latest={label}"
            )

    def _on_done(done_task: asyncio.Task) -> None:
        _BACKGROUND_TASKS.discard(done_task)
        try:
            done_task.result()
        except asyncio.CancelledError:
            logger.debug(f"[runtime] background task cancelled: {label}")
        except Exception as exc:
            logger.warning(f"[runtime] background task failed ({label}): {exc}")

    task.add_done_callback(_on_done)
    return task


async def drain_background_tasks() -> int:
    """Wait for every pending background task on the running loop."""
    loop = asyncio.get_running_loop()
    pending = [
        task for task in _BACKGROUND_TASKS if not task.done() and task.get_loop() is loop
    ]
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    return len(pending)


@dataclass
class ApprovalNotification:
    memory_id: str
    title: str
    preview: str
    link: str
    created_at: str = field(default_factory=_utc_iso_now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memory_id": self.memory_id,
            "title": self.title,
            "preview": self.preview,
            "link": self.link,
            "created_at": self.created_at,
            "metadata": dict(self.metadata),
        }


class NotificationQueue:
    """Pending approval notifications, at most one per memory id."""

    def __init__(self) -> None:
        self._items: Dict[str, ApprovalNotification] = {}
        self._emitted = 0

    def notify(
        self,
        memory_id: str,
        title: str,
        preview: str,
        link: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        if memory_id in self._items:
            return False
        self._items[memory_id] = ApprovalNotification(
            memory_id=memory_id,
            title=title,
            preview=preview,
            link=link,
            metadata=dict(metadata or {}),
        )
        self._emitted += 1
        logger.info(f"[ingest] approval requested for memory {memory_id}")
        return True

    def dismiss(self, memory_id: str) -> bool:
        return self._items.pop(memory_id, None) is not None

    def exists(self, memory_id: str) -> bool:
        return memory_id in self._items

    def list_pending(self) -> List[Dict[str, Any]]:
        return [item.to_dict() for item in self._items.values()]

    def clear(self) -> None:
        self._items.clear()
        self._emitted = 0

    def status(self) -> Dict[str, Any]:
        return {"pending": len(self._items), "emitted_total": self._emitted}


class MaintenanceCoordinator:
    """
    Single-flight wrapper around maintenance passes.

    Passes run one at a time. A failing pass is logged and recorded, and the
    coordinator stays usable for the next run. Decay runs at most once per UTC
    day unless forced.
    """

    def __init__(self) -> None:
        self._guard = asyncio.Lock()
        self._last_decay_day: Optional[str] = None
        self._last_results: Dict[str, Dict[str, Any]] = {}
        self._last_errors: Dict[str, Dict[str, Any]] = {}
        self._runs: Dict[str, int] = {}

    async def run_pass(
        self,
        name: str,
        operation: Callable[[], Awaitable[Dict[str, Any]]],
        *,
        reason: str = "runtime",
    ) -> Dict[str, Any]:
        async with self._guard:
            return await self._run_locked(name, operation, reason)

    async def _run_locked(
        self,
        name: str,
        operation: Callable[[], Awaitable[Dict[str, Any]]],
        reason: str,
    ) -> Dict[str, Any]:
        started_at = _utc_iso_now()
        self._runs[name] = self._runs.get(name, 0) + 1
        try:
            result = await operation()
        except Exception as exc:
            logger.exception(f"[maintenance] {name} pass failed ({reason}): {exc}")
            self._last_errors[name] = {
                "error": f"{type(exc).__name__}: {exc}",
                "reason": reason,
                "failed_at": _utc_iso_now(),
            }
            return {"ok": False, "pass": name, "error": str(exc), "reason": reason}

        payload = {
            "ok": True,
            "pass": name,
            "reason": reason,
            "started_at": started_at,
            "finished_at": _utc_iso_now(),
            **(result if isinstance(result, dict) else {"raw": result}),
        }
        self._last_results[name] = payload
        return dict(payload)

    async def run_decay(
        self,
        operation: Callable[[], Awaitable[Dict[str, Any]]],
        *,
        force: bool = False,
        reason: str = "runtime",
        today: Optional[str] = None,
    ) -> Dict[str, Any]:
        day = today or datetime.now(timezone.utc).strftime("%Y-%m-%d")
        async with self._guard:
            if not force and self._last_decay_day == day:
                return {
                    "ok": True,
                    "pass": "decay",
                    "applied": False,
                    "reason": "already_applied_today",
                    "day": day,
                }
            payload = await self._run_locked("decay", operation, reason)
            if payload.get("ok"):
                self._last_decay_day = day
                payload["applied"] = True
                payload["day"] = day
                self._last_results["decay"] = dict(payload)
            return payload

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            return {
                "last_decay_day": self._last_decay_day,
                "runs": dict(self._runs),
                "last_results": {name: dict(value) for name, value in self._last_results.items()},
                "last_errors": {name: dict(value) for name, value in self._last_errors.items()},
            }


class RuntimeState:
    def __init__(self) -> None:
        self.notifications = NotificationQueue()
        self.maintenance = MaintenanceCoordinator()
        self.startup_maintenance = _env_bool("RUNTIME_STARTUP_MAINTENANCE", True)

    async def ensure_started(self, service_factory: Callable[[], Any]) -> Dict[str, Any]:
        service = service_factory()
        payload: Dict[str, Any] = {"initialize": await service.initialize()}
        if self.startup_maintenance:
            payload["decay"] = await self.maintenance.run_decay(
                service.apply_decay, reason="runtime.ensure_started"
            )
            payload["expired"] = await self.maintenance.run_pass(
                "expired", service.clear_expired, reason="runtime.ensure_started"
            )
        return payload

    async def shutdown(self) -> None:
        drained = await drain_background_tasks()
        if drained:
            logger.debug(f"[runtime] drained {drained} background tasks on shutdown")


runtime_state = RuntimeState()
