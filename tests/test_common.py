import re

import pytest

from provisioning.common.fingerprint import build_fingerprint
from provisioning.common.run_id import generate_run_id
from provisioning.common.sanitize import SECRET_MASK, clip, maskSecrets
from provisioning.domain.error_codes import ErrorCode
from provisioning.domain.exceptions import NotFoundError, ValidationError
from provisioning.errors import AppError


def test_mask_secrets_in_resource_properties():
    resource = {
        "key": "HR",
        "connector": {
            "type": "rest",
            "properties": {"base_url": "https://hr", "username": "svc", "password": "p", "api_token": None},
        },
        "attrs": [{"userPassword": ["a", "b"]}],
    }

    masked = maskSecrets(resource)

    props = masked["connector"]["properties"]
    assert props == {"base_url": "https://hr", "username": "svc", "password": SECRET_MASK, "api_token": None}
    assert masked["attrs"] == [{"userPassword": [SECRET_MASK, SECRET_MASK]}]
    assert resource["connector"]["properties"]["password"] == "p"


def test_clip():
    assert clip(None) is None
    assert clip("short", limit=10) == "short"
    assert clip("x" * 20, limit=10) == "xxxxxxx..."


def test_run_ids_are_unique_and_file_safe():
    first, second = generate_run_id(), generate_run_id()

    assert first != second
    assert re.fullmatch(r"\d{8}T\d{6}-[0-9a-f]{8}", first)


def test_fingerprint_ignores_key_order():
    a = build_fingerprint({"type": "csv", "properties": {"path": "a.csv", "delimiter": ";"}})
    b = build_fingerprint({"properties": {"delimiter": ";", "path": "a.csv"}, "type": "csv"})
    c = build_fingerprint({"type": "csv", "properties": {"path": "b.csv", "delimiter": ";"}})

    assert a == b
    assert a != c


@pytest.mark.parametrize(
    "status,code",
    [
        (401, ErrorCode.UNAUTHORIZED),
        (403, ErrorCode.FORBIDDEN),
        (404, ErrorCode.OBJECT_NOT_FOUND),
        (408, ErrorCode.TIMEOUT),
        (409, ErrorCode.CONFLICT),
        (500, ErrorCode.HTTP_ERROR),
        (None, ErrorCode.HTTP_ERROR),
    ],
)
def test_error_code_from_http_status(status, code):
    assert ErrorCode.from_status(status) is code


def test_usage_errors_exit_with_code_two():
    assert ValidationError("bad", field="x").exit_code == 2
    assert NotFoundError("task", "t1").exit_code == 2
    error = AppError(category="runner", code=ErrorCode.TIMEOUT.value, message="too slow")
    assert error.exit_code == 1
    assert error.describe() == "TIMEOUT: too slow"
    assert str(error) == "too slow"
