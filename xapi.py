"""xAPI statement construction, local persistence and best-effort LRS delivery.

Domain events (module completed, quiz attempted, framework completed) become rows in
``xapi_statements``. When an LRS configuration is injected into :class:`XApiService`,
each new row is also translated into an xAPI 1.0.3 statement and POSTed to the LRS.
Delivery problems never reach the caller: the row simply keeps ``stored = False``.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Union

import requests

import db
from retry_policy import RetryExhaustedError, RetryPolicy, RetryableResult, call_with_retry
from schemas import LrsConfiguration, XapiStatementRecord

LOGGER = logging.getLogger("fwp.xapi")

XAPI_VERSION = "1.0.3"
ADL_VERB_BASE = "http://adlnet.gov/expapi/verbs/"
ADL_ACTIVITY_BASE = "http://adlnet.gov/expapi/activities/"
DISPLAY_LANGUAGE = "en-US"
DEFAULT_BASE_URL = "https://questionpro.ai"

# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------


class XApiVerb(str, Enum):
    """The ADL verbs this platform emits."""

    COMPLETED = "completed"
    EXPERIENCED = "experienced"
    ATTEMPTED = "attempted"
    ANSWERED = "answered"
    PASSED = "passed"
    FAILED = "failed"
    INTERACTED = "interacted"
    INITIALIZED = "initialized"
    TERMINATED = "terminated"

    @property
    def iri(self) -> str:
        return f"{ADL_VERB_BASE}{self.value}"

    @property
    def display(self) -> str:
        return self.value

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.iri, "display": {DISPLAY_LANGUAGE: self.display}}


@dataclass(frozen=True)
class CustomVerb:
    """A verb outside :class:`XApiVerb`, carried through as its raw text."""

    raw: str

    @property
    def iri(self) -> str:
        return f"{ADL_VERB_BASE}{self.raw}"

    @property
    def display(self) -> str:
        return self.raw

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.iri, "display": {DISPLAY_LANGUAGE: self.display}}


Verb = Union[XApiVerb, CustomVerb]


def resolve_verb(raw: str) -> Verb:
    """Map stored verb text onto the closed vocabulary, case-insensitively."""
    text = (raw or "").strip()
    try:
        return XApiVerb(text.lower())
    except ValueError:
        return CustomVerb(text)


class ActivityType(str, Enum):
    COURSE = f"{ADL_ACTIVITY_BASE}course"
    MODULE = f"{ADL_ACTIVITY_BASE}module"
    ASSESSMENT = f"{ADL_ACTIVITY_BASE}assessment"
    QUESTION = f"{ADL_ACTIVITY_BASE}question"
    ACTIVITY = f"{ADL_ACTIVITY_BASE}activity"


OBJECT_ACTIVITY_TYPES: Dict[str, ActivityType] = {
    "framework": ActivityType.COURSE,
    "module": ActivityType.MODULE,
    "quiz": ActivityType.ASSESSMENT,
}

# Activity IRIs use the REST collection names
_OBJECT_COLLECTIONS: Dict[str, str] = {
    "framework": "frameworks",
    "module": "modules",
    "quiz": "quizzes",
}


def format_duration(seconds: float) -> str:
    """Render ``seconds`` as an ISO 8601 duration such as ``PT1M35S``."""
    if seconds is None or seconds <= 0:
        return "PT0S"
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    parts = ["PT"]
    if hours:
        parts.append(f"{hours}H")
    if minutes:
        parts.append(f"{minutes}M")
    if secs:
        parts.append(f"{secs}S")
    text = "".join(parts)
    # Fractions of a second below 1 have no whole component to print
    return text if text != "PT" else "PT0S"


def _scaled(numerator: float, denominator: float) -> float:
    if not denominator or denominator <= 0:
        return 0.0
    return numerator / denominator


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Actor:
    name: str
    email: str

    def to_agent(self) -> Dict[str, Any]:
        return {"objectType": "Agent", "name": self.name, "mbox": f"mailto:{self.email}"}


@dataclass(frozen=True)
class ObjectInfo:
    name: str
    type: Union[ActivityType, str]
    description: Optional[str] = None

    @property
    def type_iri(self) -> str:
        return self.type.value if isinstance(self.type, ActivityType) else str(self.type)


@dataclass(frozen=True)
class NewStatement:
    """A statement before it has an id, timestamp or delivery flag."""

    user_id: str
    verb: str
    object: str
    object_type: str
    object_id: int
    result: Optional[str] = None
    context: Optional[str] = None


def _basic_auth_header(username: str, password: str) -> str:
    token = f"{username}:{password}".encode("utf-8")
    return "Basic " + base64.b64encode(token).decode("ascii")


def _load_json_block(value: Optional[str], field: str, statement_id: int) -> Optional[Dict[str, Any]]:
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        LOGGER.warning("Dropping malformed %s JSON on xAPI statement %s", field, statement_id)
        return None
    if not isinstance(parsed, dict):
        LOGGER.warning("Dropping non-object %s on xAPI statement %s", field, statement_id)
        return None
    return parsed


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class XApiService:
    """Stateless facade over ``xapi_statements`` and the configured LRS."""

    def __init__(
        self,
        lrs_config: Optional[LrsConfiguration] = None,
        *,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 10.0,
    ):
        self.lrs_config = lrs_config if lrs_config is None or lrs_config.is_active else None
        self.base_url = (base_url or os.getenv("BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=1,
            base_delay=0.5,
            timeout=timeout,
            exceptions=(requests.RequestException, RetryableResult),
        )

    def with_configuration(self, lrs_config: Optional[LrsConfiguration]) -> "XApiService":
        """Return a service bound to ``lrs_config`` that shares this one's transport."""
        return XApiService(
            lrs_config,
            base_url=self.base_url,
            session=self.session,
            retry_policy=self.retry_policy,
            timeout=self.timeout,
        )

    # -- IRIs -----------------------------------------------------------------

    def activity_iri(self, object_type: str, object_id: int) -> str:
        collection = _OBJECT_COLLECTIONS.get(object_type, object_type)
        return f"{self.base_url}/api/{collection}/{object_id}"

    def framework_context(self, framework_id: int) -> Dict[str, Any]:
        return {
            "contextActivities": {
                "parent": [
                    {"id": self.activity_iri("framework", framework_id), "objectType": "Activity"}
                ]
            }
        }

    # -- translation ----------------------------------------------------------

    def build_statement(
        self,
        record: XapiStatementRecord,
        actor: Actor,
        object_info: ObjectInfo,
    ) -> Dict[str, Any]:
        """Translate a stored row into an xAPI 1.0.3 statement."""
        definition: Dict[str, Any] = {
            "name": {DISPLAY_LANGUAGE: object_info.name},
            "type": object_info.type_iri,
        }
        if object_info.description:
            definition["description"] = {DISPLAY_LANGUAGE: object_info.description}

        statement: Dict[str, Any] = {
            "actor": actor.to_agent(),
            "verb": resolve_verb(record.verb).to_dict(),
            "object": {
                "id": self.activity_iri(record.object_type, record.object_id),
                "objectType": "Activity",
                "definition": definition,
            },
            "timestamp": record.timestamp.isoformat(),
        }
        result = _load_json_block(record.result, "result", record.id)
        if result is not None:
            statement["result"] = result
        context = _load_json_block(record.context, "context", record.id)
        if context is not None:
            statement["context"] = context
        return statement

    # -- delivery -------------------------------------------------------------

    def send_statement(self, statement: Dict[str, Any]) -> bool:
        """POST ``statement`` to the LRS; True only on HTTP 200/204."""
        config = self.lrs_config
        if config is None:
            return False

        headers = {
            "Content-Type": "application/json",
            "Authorization": _basic_auth_header(config.username, config.password),
            "X-Experience-API-Version": XAPI_VERSION,
        }

        def _post() -> int:
            response = self.session.post(
                config.statements_url,
                json=statement,
                headers=headers,
                timeout=self.retry_policy.timeout or self.timeout,
            )
            if response.status_code >= 500:
                raise RetryableResult(f"LRS responded with status {response.status_code}")
            return response.status_code

        try:
            status = call_with_retry(_post, self.retry_policy, label="LRS delivery")
        except RetryExhaustedError as exc:
            LOGGER.warning("Failed to send xAPI statement to LRS: %s", exc.__cause__ or exc)
            return False
        except Exception as exc:
            # The row is already committed; delivery stays best-effort
            LOGGER.warning("Unexpected error sending xAPI statement to LRS: %s", exc, exc_info=True)
            return False

        if status in (200, 204):
            return True
        LOGGER.warning("LRS rejected xAPI statement with status %s", status)
        return False

    def _deliver(self, record: XapiStatementRecord, actor: Actor, object_info: ObjectInfo) -> XapiStatementRecord:
        statement = self.build_statement(record, actor, object_info)
        if not self.send_statement(statement):
            return record
        try:
            db.mark_statement_stored(record.id)
        except sqlite3.Error:
            LOGGER.exception("Delivered xAPI statement %s but could not mark it stored", record.id)
            return record
        return record.model_copy(update={"stored": True})

    # -- persistence ----------------------------------------------------------

    def create_statement(
        self,
        statement: NewStatement,
        actor: Actor,
        object_info: ObjectInfo,
        send_to_lrs: bool = True,
    ) -> Optional[XapiStatementRecord]:
        """Persist ``statement`` and forward it to the LRS when one is configured.

        Returns None only when the local insert fails.
        """
        try:
            row = db.insert_xapi_statement(
                user_id=statement.user_id,
                verb=statement.verb,
                object_name=statement.object,
                object_type=statement.object_type,
                object_id=statement.object_id,
                result=statement.result,
                context=statement.context,
            )
        except sqlite3.Error:
            LOGGER.exception(
                "Error creating xAPI statement for user %s (%s %s:%s)",
                statement.user_id,
                statement.verb,
                statement.object_type,
                statement.object_id,
            )
            return None

        record = XapiStatementRecord.model_validate(row)
        if not send_to_lrs or self.lrs_config is None:
            return record
        return self._deliver(record, actor, object_info)

    def list_statements(
        self,
        user_id: str,
        limit: int = 100,
        object_type: Optional[str] = None,
    ) -> list[XapiStatementRecord]:
        rows = db.list_xapi_statements(user_id, limit=limit, object_type=object_type)
        return [XapiStatementRecord.model_validate(row) for row in rows]

    def resend_unstored(
        self,
        resolve: Callable[[XapiStatementRecord], Optional[Tuple[Actor, ObjectInfo]]],
        limit: int = 100,
    ) -> int:
        """Retry delivery of statements still marked unstored; returns how many succeeded."""
        if self.lrs_config is None:
            return 0
        delivered = 0
        for row in db.list_unstored_statements(limit):
            record = XapiStatementRecord.model_validate(row)
            resolved = resolve(record)
            if resolved is None:
                LOGGER.debug("Skipping xAPI statement %s: actor or object no longer resolvable", record.id)
                continue
            actor, object_info = resolved
            if self._deliver(record, actor, object_info).stored:
                delivered += 1
        LOGGER.info("Re-delivered %s unstored xAPI statements", delivered)
        return delivered

    # -- domain events --------------------------------------------------------

    def track_module_completion(
        self,
        user_id: str,
        module_id: int,
        module_name: str,
        framework_id: int,
        framework_name: str,
        actor: Actor,
    ) -> Optional[XapiStatementRecord]:
        result = {"completion": True, "success": True}
        return self.create_statement(
            NewStatement(
                user_id=user_id,
                verb=XApiVerb.COMPLETED.value,
                object=module_name,
                object_type="module",
                object_id=module_id,
                result=db.json_dumps(result),
                context=db.json_dumps(self.framework_context(framework_id)),
            ),
            actor,
            ObjectInfo(
                name=module_name,
                description=f"Module {module_name} in {framework_name} framework",
                type=ActivityType.MODULE,
            ),
        )

    def track_quiz_attempt(
        self,
        user_id: str,
        quiz_id: int,
        quiz_title: str,
        framework_id: int,
        framework_name: str,
        score: float,
        max_score: float,
        passed: bool,
        time_taken: float,
        actor: Actor,
    ) -> Optional[XapiStatementRecord]:
        verb = XApiVerb.PASSED if passed else XApiVerb.FAILED
        result = {
            "score": {
                "scaled": _scaled(score, max_score),
                "raw": score,
                "min": 0,
                "max": max_score,
            },
            "success": bool(passed),
            "completion": True,
            "duration": format_duration(time_taken),
        }
        return self.create_statement(
            NewStatement(
                user_id=user_id,
                verb=verb.value,
                object=quiz_title,
                object_type="quiz",
                object_id=quiz_id,
                result=db.json_dumps(result),
                context=db.json_dumps(self.framework_context(framework_id)),
            ),
            actor,
            ObjectInfo(
                name=quiz_title,
                description=f"Quiz {quiz_title} for {framework_name} framework",
                type=ActivityType.ASSESSMENT,
            ),
        )

    def track_framework_completion(
        self,
        user_id: str,
        framework_id: int,
        framework_name: str,
        completed_modules: int,
        total_modules: int,
        actor: Actor,
    ) -> Optional[XapiStatementRecord]:
        result = {
            "completion": True,
            "success": True,
            "score": {
                "scaled": _scaled(completed_modules, total_modules),
                "raw": completed_modules,
                "min": 0,
                "max": total_modules,
            },
        }
        return self.create_statement(
            NewStatement(
                user_id=user_id,
                verb=XApiVerb.COMPLETED.value,
                object=framework_name,
                object_type="framework",
                object_id=framework_id,
                result=db.json_dumps(result),
            ),
            actor,
            ObjectInfo(
                name=framework_name,
                description=f"Framework {framework_name}",
                type=ActivityType.COURSE,
            ),
        )


def expand_client_context(service: XApiService, context: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Turn the client's ``{"frameworkId": n}`` shorthand into a parent context activity."""
    if not context:
        return context
    expanded = dict(context)
    activities = expanded.get("contextActivities")
    if activities is not None and not isinstance(activities, dict):
        LOGGER.warning("Dropping non-object contextActivities from tracking context: %r", activities)
        del expanded["contextActivities"]
        activities = None

    framework_id = expanded.pop("frameworkId", None)
    if framework_id is not None and activities is None:
        try:
            expanded.update(service.framework_context(int(framework_id)))
        except (TypeError, ValueError):
            LOGGER.debug("Ignoring non-numeric frameworkId in tracking context: %r", framework_id)
    elif activities:
        parent = activities.get("parent")
        # Clients sometimes send a single parent object instead of a list
        if isinstance(parent, dict):
            expanded["contextActivities"] = dict(activities, parent=[parent])
    return expanded or None


def verbs_table() -> list[Dict[str, Any]]:
    """The verb vocabulary as served to clients."""
    return [verb.to_dict() for verb in XApiVerb]
