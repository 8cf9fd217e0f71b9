"""HTTP client for the tracking endpoints, used by front-ends and integration jobs.

Tracking is best-effort telemetry: every public method returns ``None`` on failure
instead of raising, so the learner-facing completion action is never blocked.
"""

from __future__ import annotations

import logging
import random
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import requests

from cache import CacheKeys, ResponseCache
from retry_policy import RetryExhaustedError, RetryPolicy, RetryableResult, call_with_retry
from xapi import format_duration

LOGGER = logging.getLogger("fwp.tracking")

_TRANSIENT: tuple[type[Exception], ...] = (requests.RequestException, ValueError, RetryableResult)

MODULE_TRACKING_POLICY = RetryPolicy(max_attempts=3, base_delay=0.4, timeout=6.0, exceptions=_TRANSIENT)
FRAMEWORK_TRACKING_POLICY = RetryPolicy(max_attempts=4, base_delay=0.5, timeout=6.0, exceptions=_TRANSIENT)
QUIZ_TRACKING_POLICY = RetryPolicy(max_attempts=4, base_delay=0.5, timeout=6.0, exceptions=_TRANSIENT)
MODULE_LOOKUP_POLICY = RetryPolicy(max_attempts=3, base_delay=0.3, timeout=5.0, exceptions=_TRANSIENT)
MODULE_COMPLETION_POLICY = RetryPolicy(max_attempts=3, base_delay=0.5, timeout=10.0, exceptions=_TRANSIENT)
MODULE_FALLBACK_POLICY = RetryPolicy(max_attempts=3, base_delay=0.5, timeout=8.0, exceptions=_TRANSIENT)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
}


def _request_id(prefix: str, object_id: int) -> str:
    return f"{prefix}-{object_id}-{int(time.time() * 1000)}-{random.randint(0, 9999)}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class LearningTrackingClient:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        session: Optional[requests.Session] = None,
        cache: Optional[ResponseCache] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.cache = cache or ResponseCache(ttl=300)
        self._sleep = sleep
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    # -- transport ------------------------------------------------------------

    def _headers(self, request_id: str, **extra: str) -> Dict[str, str]:
        headers = dict(NO_CACHE_HEADERS)
        headers["X-Request-ID"] = request_id
        headers["X-Request-Time"] = _now_iso()
        headers.update(extra)
        return headers

    def _send(
        self,
        method: str,
        path: str,
        policy: RetryPolicy,
        request_id: str,
        payload: Optional[Dict[str, Any]] = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> Callable[[], Any]:
        """Build one attempt; a non-2xx status or an empty body counts as a failure."""

        def _attempt() -> Any:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers=self._headers(request_id, **(extra_headers or {})),
                timeout=policy.timeout,
            )
            response.raise_for_status()
            body = response.json() if response.content else None
            if not body:
                raise RetryableResult(f"empty response from {method} {path}")
            return body

        return _attempt

    def _post_statement(self, label: str, request_id: str, payload: Dict[str, Any], policy: RetryPolicy) -> Optional[Dict[str, Any]]:
        LOGGER.info("[%s] Starting xAPI tracking for %s", request_id, label)
        try:
            body = call_with_retry(
                self._send("POST", "/api/xapi/statements", policy, request_id, payload),
                policy,
                label=f"[{request_id}] {label} tracking",
                sleep=self._sleep,
            )
        except RetryExhaustedError as exc:
            LOGGER.error("[%s] %s tracking failed: %s (last error: %s)", request_id, label, exc, exc.__cause__)
            return None
        LOGGER.info("[%s] %s tracking succeeded", request_id, label)
        return body

    # -- xAPI tracking --------------------------------------------------------

    def track_module_completion(self, module_id: int, module_name: str, framework_id: int) -> Optional[Dict[str, Any]]:
        payload = {
            "verb": "completed",
            "object": module_name,
            "objectType": "module",
            "objectId": module_id,
            "result": {"completion": True, "success": True},
            "context": {"frameworkId": framework_id},
        }
        return self._post_statement(
            "module completion", _request_id("module", module_id), payload, MODULE_TRACKING_POLICY
        )

    def track_framework_completion(
        self,
        framework_id: int,
        framework_name: str,
        completed_modules: int,
        total_modules: int,
    ) -> Optional[Dict[str, Any]]:
        scaled = completed_modules / total_modules if total_modules > 0 else 0.0
        payload = {
            "verb": "completed",
            "object": framework_name,
            "objectType": "framework",
            "objectId": framework_id,
            "result": {
                "completion": True,
                "success": True,
                "score": {"scaled": scaled, "raw": completed_modules, "min": 0, "max": total_modules},
            },
        }
        return self._post_statement(
            "framework completion", _request_id("framework", framework_id), payload, FRAMEWORK_TRACKING_POLICY
        )

    def track_quiz_attempt(
        self,
        quiz_id: int,
        quiz_title: str,
        framework_id: int,
        score: float,
        max_score: float,
        passed: bool,
        time_taken: int,
    ) -> Optional[Dict[str, Any]]:
        scaled = score / max_score if max_score > 0 else 0.0
        payload = {
            "verb": "passed" if passed else "failed",
            "object": quiz_title,
            "objectType": "quiz",
            "objectId": quiz_id,
            "result": {
                "score": {"scaled": scaled, "raw": score, "min": 0, "max": max_score},
                "success": passed,
                "completion": True,
                "duration": format_duration(time_taken),
            },
            "context": {"frameworkId": framework_id},
        }
        return self._post_statement("quiz attempt", _request_id("quiz", quiz_id), payload, QUIZ_TRACKING_POLICY)

    # -- reads ----------------------------------------------------------------

    def get_module(self, module_id: int, *, refresh: bool = False) -> Optional[Dict[str, Any]]:
        key = CacheKeys.module(module_id)
        if refresh:
            self.cache.invalidate(key)
        request_id = _request_id("module-get", module_id)

        def _load() -> Optional[Dict[str, Any]]:
            try:
                return call_with_retry(
                    self._send("GET", f"/api/modules/{module_id}", MODULE_LOOKUP_POLICY, request_id),
                    MODULE_LOOKUP_POLICY,
                    label=f"[{request_id}] module lookup",
                    sleep=self._sleep,
                )
            except RetryExhaustedError:
                LOGGER.error("[%s] All attempts to fetch module %s failed", request_id, module_id)
                return None

        return self.cache.get_or_set(key, _load)

    def get_user_progress(self) -> Optional[Any]:
        def _load() -> Optional[Any]:
            try:
                response = self.session.get(
                    f"{self.base_url}/api/user/progress",
                    headers=self._headers(_request_id("progress", 0)),
                    timeout=MODULE_LOOKUP_POLICY.timeout,
                )
                response.raise_for_status()
                return response.json()
            except (requests.RequestException, ValueError) as exc:
                LOGGER.warning("Failed to load user progress: %s", exc)
                return None

        return self.cache.get_or_set("user:self:progress", _load)

    # -- module completion ----------------------------------------------------

    def complete_module_with_tracking(self, module_id: int, completed: bool = True) -> Optional[Dict[str, Any]]:
        """Complete a module through the tracking endpoint, falling back to the plain update."""
        operation_id = _request_id("module-complete", module_id)
        started = time.monotonic()

        module = self.get_module(module_id, refresh=True)
        framework_id = int((module or {}).get("framework_id") or (module or {}).get("frameworkId") or 0)
        if module is None:
            LOGGER.error("[%s] Continuing with limited data for module %s", operation_id, module_id)

        stale = [CacheKeys.module(module_id)]
        if framework_id:
            stale.append(CacheKeys.framework_modules(framework_id))
        self.cache.invalidate_many(stale)

        client_id = f"client-{operation_id}-{random.getrandbits(32):08x}"
        request_time = _now_iso()
        extra = {"X-Operation-ID": operation_id}
        primary_body = {
            "completed": completed,
            "requestTime": request_time,
            "clientId": client_id,
            "operationId": operation_id,
        }

        try:
            result = call_with_retry(
                self._send(
                    "PATCH",
                    f"/api/modules/{module_id}/complete",
                    MODULE_COMPLETION_POLICY,
                    client_id,
                    primary_body,
                    extra,
                ),
                MODULE_COMPLETION_POLICY,
                fallback=self._send(
                    "PATCH",
                    f"/api/modules/{module_id}",
                    MODULE_FALLBACK_POLICY,
                    client_id,
                    {"completed": completed},
                    extra,
                ),
                fallback_policy=MODULE_FALLBACK_POLICY,
                label=f"[{operation_id}] module completion",
                sleep=self._sleep,
            )
        except RetryExhaustedError as exc:
            LOGGER.error("[%s] All completion attempts failed: %s", operation_id, exc.__cause__ or exc)
            return None

        if framework_id:
            stale.append(CacheKeys.framework(framework_id))
        self.cache.invalidate_many(stale)
        self.cache.invalidate_pattern(":progress")
        LOGGER.info(
            "[%s] Module %s completion recorded in %.2fs",
            operation_id,
            module_id,
            time.monotonic() - started,
        )
        return result
