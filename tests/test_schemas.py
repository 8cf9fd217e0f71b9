import json

import pytest
from pydantic import ValidationError

from schemas import (
    LrsConfiguration,
    QuizAttemptBody,
    ScormDataBody,
    TrackingData,
    TrackingResult,
    dump_json_field,
)


def test_tracking_data_accepts_camel_case_and_strips_text():
    data = TrackingData.model_validate(
        {"verb": " completed ", "object": "Charts", "objectType": "module", "objectId": "10"}
    )
    assert data.verb == "completed"
    assert data.object_id == 10
    assert data.result is None


@pytest.mark.parametrize(
    "override",
    [
        {"verb": "   "},
        {"objectType": "lesson"},
        {"objectId": "ten"},
        {"result": {"score": {"scaled": 1.5, "raw": 15, "max": 10}}},
    ],
)
def test_tracking_data_rejects_invalid_fields(override):
    payload = {"verb": "completed", "object": "Charts", "objectType": "module", "objectId": 10}
    payload.update(override)
    with pytest.raises(ValidationError):
        TrackingData.model_validate(payload)


def test_dump_json_field_drops_unset_result_members():
    result = TrackingResult.model_validate({"completion": True, "duration": "PT5S"})
    assert json.loads(dump_json_field(result)) == {"completion": True, "duration": "PT5S"}
    assert dump_json_field(None) is None
    assert dump_json_field('{"raw":1}') == '{"raw":1}'


def test_scorm_body_stringifies_numbers():
    body = ScormDataBody.model_validate({"scoId": "sco-1", "elementName": "cmi.score.raw", "elementValue": 88})
    assert body.element_value == "88"
    with pytest.raises(ValidationError):
        ScormDataBody.model_validate({"scoId": "", "elementName": "cmi.score.raw", "elementValue": "1"})


def test_quiz_attempt_requires_positive_max_score():
    with pytest.raises(ValidationError):
        QuizAttemptBody.model_validate({"quizId": 1, "score": 1, "maxScore": 0})
    body = QuizAttemptBody.model_validate({"quizId": 1, "score": 3, "maxScore": 4})
    assert body.passed is None
    assert body.time_taken == 0


def test_lrs_configuration_normalises_endpoint():
    config = LrsConfiguration.model_validate(
        {"endpoint": " https://lrs.example.com/xapi/ ", "username": "k", "password": "", "isActive": False}
    )
    assert config.endpoint == "https://lrs.example.com/xapi"
    assert config.is_active is False
    assert config.masked()["password"] == ""
