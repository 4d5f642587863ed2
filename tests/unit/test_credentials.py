"""
Unit tests for credential parsing and identity extraction.
"""

import base64
import json

import pytest

from fleet.services.lifecycle.credentials import (
    decode_session_id, extract_identity, normalize_identity, parse, validate,
)
from fleet.services.shared.errors import ValidationError

from conftest import make_creds


def _session_id(payload: dict, prefix: str = "") -> str:
    return prefix + base64.b64encode(json.dumps(payload).encode()).decode()


class TestExtractIdentity:
    def test_nested_creds_me_id(self):
        assert extract_identity(make_creds("15551234567")) == "15551234567"

    def test_top_level_me_id(self):
        assert extract_identity(make_creds("447700900123", nested=False)) == "447700900123"

    def test_missing_device_suffix_is_not_an_identity(self):
        assert extract_identity({"me": {"id": "15551234567@s.whatsapp.net"}}) is None

    def test_no_me_block(self):
        assert extract_identity({"creds": {"noiseKey": "x"}}) is None


class TestNormalizeIdentity:
    def test_strips_plus_and_spaces(self):
        assert normalize_identity(" +1 555 123 4567 ") == "15551234567"

    def test_rejects_non_numeric(self):
        with pytest.raises(ValidationError):
            normalize_identity("not-a-number")


class TestParse:
    def test_dict_passthrough(self):
        blob = make_creds("111")
        assert parse(blob) is blob

    def test_json_string(self):
        assert parse(json.dumps(make_creds("222"))) == make_creds("222")

    def test_base64_session_id(self):
        assert parse(_session_id(make_creds("333"))) == make_creds("333")

    def test_prefixed_session_id(self):
        assert decode_session_id(_session_id(make_creds("444"), prefix="FLEET~")) == make_creds("444")

    def test_garbage_session_id(self):
        with pytest.raises(ValidationError):
            parse("%%%not-base64%%%")

    def test_json_array_rejected(self):
        with pytest.raises(ValidationError):
            parse("[1, 2, 3]")

    def test_empty_rejected(self):
        with pytest.raises(ValidationError):
            parse("   ")

    def test_none_rejected(self):
        with pytest.raises(ValidationError):
            parse(None)


class TestValidate:
    def test_declared_identity_matches_with_plus(self):
        blob, identity = validate(make_creds("15551234567"), "+15551234567")
        assert identity == "15551234567"
        assert blob["creds"]["me"]["id"].startswith("15551234567:")

    def test_identity_taken_from_credentials_when_not_declared(self):
        _, identity = validate(make_creds("15550000000"), None)
        assert identity == "15550000000"

    def test_mismatch_raises(self):
        with pytest.raises(ValidationError, match="not the declared number"):
            validate(make_creds("15551234567"), "15559999999")

    def test_no_embedded_identity_raises(self):
        with pytest.raises(ValidationError, match="cannot extract"):
            validate({"creds": {}}, "15551234567")
