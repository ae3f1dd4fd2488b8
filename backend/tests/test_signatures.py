from __future__ import annotations

import pytest

from app.core.security import (
    SignatureError,
    build_signature_header,
    compute_signature,
    parse_signature_header,
    verify_signature,
)

SECRET = "whsec_test"
BODY = b'{"type":"video.asset.ready","data":{}}'
NOW = 1_700_000_000


def test_valid_signature_is_accepted() -> None:
    header = build_signature_header(body=BODY, secret=SECRET, timestamp=NOW)
    verify_signature(body=BODY, header=header, secret=SECRET, tolerance_seconds=300, now=NOW + 10)


def test_header_format() -> None:
    header = build_signature_header(body=BODY, secret=SECRET, timestamp=NOW)
    assert header == f"t={NOW},v1={compute_signature(body=BODY, timestamp=NOW, secret=SECRET)}"
    ts, sigs = parse_signature_header(header)
    assert ts == NOW
    assert len(sigs) == 1


def test_tampered_body_is_rejected() -> None:
    header = build_signature_header(body=BODY, secret=SECRET, timestamp=NOW)
    with pytest.raises(SignatureError):
        verify_signature(body=BODY + b" ", header=header, secret=SECRET, tolerance_seconds=300, now=NOW)


def test_wrong_secret_is_rejected() -> None:
    header = build_signature_header(body=BODY, secret="other", timestamp=NOW)
    with pytest.raises(SignatureError):
        verify_signature(body=BODY, header=header, secret=SECRET, tolerance_seconds=300, now=NOW)


def test_stale_timestamp_is_rejected() -> None:
    header = build_signature_header(body=BODY, secret=SECRET, timestamp=NOW)
    with pytest.raises(SignatureError):
        verify_signature(body=BODY, header=header, secret=SECRET, tolerance_seconds=300, now=NOW + 301)


@pytest.mark.parametrize("header", [None, "", "   ", "garbage", "t=abc,v1=00", f"t={NOW}", "v1=abcd"])
def test_missing_or_malformed_header_is_rejected(header) -> None:
    with pytest.raises(SignatureError):
        verify_signature(body=BODY, header=header, secret=SECRET, tolerance_seconds=300, now=NOW)


def test_any_matching_v1_signature_is_accepted() -> None:
    # Secret rotation: the provider may send one v1 per active secret.
    good = compute_signature(body=BODY, timestamp=NOW, secret=SECRET)
    header = f"t={NOW},v1={'0' * 64},v1={good}"
    verify_signature(body=BODY, header=header, secret=SECRET, tolerance_seconds=300, now=NOW)
