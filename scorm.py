"""Server half of a SCORM LMS: data-model storage, status judgement and the runtime API script."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional

import assets
import db
from env_validation import get_env_int
from schemas import ScormTrackingRecord

LOGGER = logging.getLogger("fwp.scorm")


class ScormDataModel:
    """Data-model element names read by the status checks."""

    # SCORM 1.2
    COMPLETION_STATUS = "cmi.core.lesson_status"
    SCORE_RAW = "cmi.core.score.raw"
    SCORE_MAX = "cmi.core.score.max"
    SCORE_MIN = "cmi.core.score.min"
    TOTAL_TIME = "cmi.core.total_time"
    SUSPEND_DATA = "cmi.suspend_data"
    INTERACTIONS = "cmi.interactions"

    # SCORM 2004 4th Edition
    SCORM2004_COMPLETION_STATUS = "cmi.completion_status"
    SCORM2004_SUCCESS_STATUS = "cmi.success_status"
    SCORM2004_SCORE_RAW = "cmi.score.raw"
    SCORM2004_SCORE_SCALED = "cmi.score.scaled"
    SCORM2004_SCORE_MAX = "cmi.score.max"
    SCORM2004_SCORE_MIN = "cmi.score.min"
    SCORM2004_TOTAL_TIME = "cmi.total_time"


_SCORM12_DONE_STATUSES = frozenset({"completed", "passed", "failed"})
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


class ScormVersion(str, Enum):
    SCORM_12 = "scorm1.2"
    SCORM_2004 = "scorm2004"


_API_NAMES: Dict[ScormVersion, Dict[str, str]] = {
    ScormVersion.SCORM_12: {
        "api_name": "API",
        "initialize": "LMSInitialize",
        "terminate": "LMSFinish",
        "get_value": "LMSGetValue",
        "set_value": "LMSSetValue",
        "commit": "LMSCommit",
        "get_last_error": "LMSGetLastError",
        "get_error_string": "LMSGetErrorString",
        "get_diagnostic": "LMSGetDiagnostic",
    },
    ScormVersion.SCORM_2004: {
        "api_name": "API_1484_11",
        "initialize": "Initialize",
        "terminate": "Terminate",
        "get_value": "GetValue",
        "set_value": "SetValue",
        "commit": "Commit",
        "get_last_error": "GetLastError",
        "get_error_string": "GetErrorString",
        "get_diagnostic": "GetDiagnostic",
    },
}


def parse_version(value: Optional[str]) -> ScormVersion:
    if not value:
        return ScormVersion.SCORM_2004
    try:
        return ScormVersion(value.strip().lower())
    except ValueError:
        allowed = ", ".join(v.value for v in ScormVersion)
        raise ValueError(f"Unsupported SCORM version '{value}'. Allowed versions: {allowed}") from None


class ScormService:
    """Stateless facade over the SCORM tracking tables.

    Every ``SetValue`` is appended to ``scorm_tracking_data`` and mirrored into
    ``scorm_latest_values``. With a positive ``history_limit`` the log keeps only
    that many rows per element.
    """

    def __init__(self, history_limit: Optional[int] = None):
        if history_limit is None:
            history_limit = get_env_int("SCORM_HISTORY_LIMIT", 50)
        self.history_limit = max(0, history_limit)

    # -- storage --------------------------------------------------------------

    def store_scorm_data(
        self,
        user_id: str,
        sco_id: str,
        element_name: str,
        element_value: str,
    ) -> Optional[ScormTrackingRecord]:
        try:
            row = db.insert_scorm_data(user_id, sco_id, element_name, str(element_value))
        except sqlite3.Error:
            LOGGER.exception("Error storing SCORM data %s for user %s sco %s", element_name, user_id, sco_id)
            return None

        if self.history_limit:
            try:
                removed = db.prune_scorm_history(user_id, sco_id, element_name, self.history_limit)
                if removed:
                    LOGGER.debug("Pruned %s SCORM history rows for %s/%s/%s", removed, user_id, sco_id, element_name)
            except sqlite3.Error:
                LOGGER.warning("Could not prune SCORM history for %s/%s/%s", user_id, sco_id, element_name, exc_info=True)
        return ScormTrackingRecord.model_validate(row)

    def get_scorm_data_by_sco(self, user_id: str, sco_id: str) -> list[ScormTrackingRecord]:
        try:
            rows = db.list_scorm_data(user_id, sco_id)
        except sqlite3.Error:
            LOGGER.exception("Error retrieving SCORM data for user %s sco %s", user_id, sco_id)
            return []
        return [ScormTrackingRecord.model_validate(row) for row in rows]

    def get_scorm_data_by_element(
        self,
        user_id: str,
        sco_id: str,
        element_name: str,
    ) -> Optional[ScormTrackingRecord]:
        try:
            row = db.latest_scorm_element(user_id, sco_id, element_name)
        except sqlite3.Error:
            LOGGER.exception("Error retrieving SCORM element %s for user %s sco %s", element_name, user_id, sco_id)
            return None
        return ScormTrackingRecord.model_validate(row) if row else None

    def get_lms_data(self, user_id: str, sco_id: str) -> Dict[str, str]:
        """Current LMS data model for one learner/SCO, read from the latest-value table."""
        return db.get_scorm_latest_values(user_id, sco_id)

    # -- data model -----------------------------------------------------------

    @staticmethod
    def transform_scorm_data_to_lms(rows: Iterable[ScormTrackingRecord]) -> Dict[str, str]:
        """Collapse a write log into ``{element: value}``, keeping each element's newest write."""
        latest: Dict[str, ScormTrackingRecord] = {}
        for row in rows:
            current = latest.get(row.element_name)
            if current is None or (row.timestamp, row.id) > (current.timestamp, current.id):
                latest[row.element_name] = row
        return {name: row.element_value for name, row in latest.items()}

    @staticmethod
    def is_complete(lms_data: Mapping[str, str]) -> bool:
        lesson_status = lms_data.get(ScormDataModel.COMPLETION_STATUS)
        if lesson_status:
            return lesson_status in _SCORM12_DONE_STATUSES
        completion_status = lms_data.get(ScormDataModel.SCORM2004_COMPLETION_STATUS)
        if completion_status:
            return completion_status == "completed"
        return False

    @staticmethod
    def is_passed(lms_data: Mapping[str, str]) -> bool:
        lesson_status = lms_data.get(ScormDataModel.COMPLETION_STATUS)
        if lesson_status:
            return lesson_status == "passed"
        success_status = lms_data.get(ScormDataModel.SCORM2004_SUCCESS_STATUS)
        if success_status:
            return success_status == "passed"
        return False

    @staticmethod
    def get_score(lms_data: Mapping[str, str]) -> int:
        raw = lms_data.get(ScormDataModel.SCORE_RAW) or lms_data.get(ScormDataModel.SCORM2004_SCORE_RAW)
        if not raw:
            return 0
        match = _LEADING_INT.match(str(raw))
        return int(match.group(1)) if match else 0

    def status_summary(self, lms_data: Mapping[str, str]) -> Dict[str, Any]:
        return {
            "complete": self.is_complete(lms_data),
            "passed": self.is_passed(lms_data),
            "score": self.get_score(lms_data),
        }

    # -- runtime --------------------------------------------------------------

    def handle_runtime_action(
        self,
        user_id: str,
        sco_id: str,
        action: str,
        params: Mapping[str, Any],
    ) -> Dict[str, Any]:
        """Apply one request posted by the generated API wrapper."""
        if action in ("initialize", "terminate"):
            LOGGER.info("SCORM %s for user %s sco %s (%s)", action, user_id, sco_id, params.get("version"))
            return {"success": True, "stored": 0}

        if action == "setValue":
            element = params.get("element")
            if not element:
                raise ValueError("setValue requires an element")
            record = self.store_scorm_data(user_id, sco_id, str(element), _as_text(params.get("value")))
            if record is None:
                raise RuntimeError("Failed to store SCORM data")
            return {"success": True, "stored": 1}

        if action == "commit":
            data = params.get("data") or {}
            if not isinstance(data, Mapping):
                raise ValueError("commit requires a data object")
            current = self.get_lms_data(user_id, sco_id)
            stored = 0
            for element, value in data.items():
                text = _as_text(value)
                if current.get(element) == text:
                    continue
                if self.store_scorm_data(user_id, sco_id, str(element), text) is None:
                    raise RuntimeError("Failed to store SCORM data")
                stored += 1
            return {"success": True, "stored": stored}

        raise ValueError(f"Unsupported SCORM runtime action: {action}")

    @staticmethod
    def get_scorm_api_wrapper_script(
        version: str = ScormVersion.SCORM_2004.value,
        api_endpoint: str = "/api/scorm/runtime",
        sco_id: str = "",
    ) -> str:
        """Render the JavaScript ``API``/``API_1484_11`` object for a content package."""
        resolved = parse_version(version)
        return assets.render(
            assets.SCORM_API_WRAPPER,
            version=resolved.value,
            api_endpoint=json.dumps(api_endpoint),
            sco_id=json.dumps(sco_id),
            **_API_NAMES[resolved],
        )


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
