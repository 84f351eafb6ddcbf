from __future__ import annotations

import base64

import pytest

from UnifiedMail.models import EmailAddress
from UnifiedMail.parsers import (
    base64url_to_standard,
    check_has_attachments,
    coerce_addresses,
    decode_base64url,
    extract_body,
    format_address_header,
    header_map,
    parse_email_address,
    parse_email_addresses,
)

from conftest import b64url


@pytest.mark.parametrize(
    "raw, name, address",
    [
        ('"John Doe" <john@example.com>', "John Doe", "john@example.com"),
        ("John Doe <john@example.com>", "John Doe", "john@example.com"),
        ("<john@example.com>", None, "john@example.com"),
        ("  john@example.com  ", None, "john@example.com"),
        ("not an address", None, "not an address"),
        ("", None, ""),
    ],
)
def test_parse_email_address(raw, name, address):
    parsed = parse_email_address(raw)
    assert parsed.name == name
    assert parsed.address == address


def test_parse_email_address_none_is_empty():
    assert parse_email_address(None).address == ""


@pytest.mark.parametrize(
    "original",
    [
        EmailAddress("jane@example.com", "Jane Roe"),
        EmailAddress("solo@example.com"),
        EmailAddress("nick@example.com", 'Nick "The Hammer" Jones'),
        EmailAddress("path@example.com", "C:\\Users\\path"),
        EmailAddress("doe@example.com", "Doe, John"),
    ],
)
def test_formatted_address_parses_back_to_itself(original):
    again = parse_email_address(original.format())
    assert again.address == original.address
    assert again.name == original.name


def test_format_escapes_quotes_in_display_name():
    assert EmailAddress("n@example.com", 'say "hi"').format() == '"say \\"hi\\"" <n@example.com>'


def test_parse_tolerates_stray_quote():
    parsed = parse_email_address('John" <john@example.com>')
    assert (parsed.name, parsed.address) == ("John", "john@example.com")


def test_address_identity_ignores_case_and_name():
    assert EmailAddress("Bob@Example.com", "Bob") == EmailAddress("bob@example.com")
    assert len({EmailAddress("a@x.com"), EmailAddress("A@X.COM", "A")}) == 1


def test_parse_email_addresses_splits_and_skips_empty_segments():
    parsed = parse_email_addresses("a@example.com, Bob <bob@example.com>,, ")
    assert [a.address for a in parsed] == ["a@example.com", "bob@example.com"]
    assert parsed[1].name == "Bob"


@pytest.mark.parametrize("raw", ["", "   ", None])
def test_parse_email_addresses_empty(raw):
    assert parse_email_addresses(raw) == []


def test_quoted_comma_in_display_name_is_split():
    # Naive splitting: the display name is cut at its comma.
    parsed = parse_email_addresses('"Doe, John" <john@example.com>')
    assert len(parsed) == 2
    assert parsed[0].address == '"Doe'
    assert parsed[1].address == "john@example.com"


def test_coerce_addresses_accepts_mixed_inputs():
    out = coerce_addresses(
        ["a@example.com", EmailAddress("b@example.com"), {"address": "c@example.com", "name": "C"}, ""]
    )
    assert [a.address for a in out] == ["a@example.com", "b@example.com", "c@example.com"]
    assert out[2].name == "C"
    assert coerce_addresses("x@example.com, y@example.com")[1].address == "y@example.com"
    assert coerce_addresses(None) == []


def test_format_address_header():
    header = format_address_header([EmailAddress("a@example.com", "A"), EmailAddress("b@example.com")])
    assert header == '"A" <a@example.com>, b@example.com'


def test_decode_base64url_tolerates_missing_padding_and_bad_utf8():
    assert decode_base64url(b64url("héllo")) == "héllo"
    broken = base64.urlsafe_b64encode(b"ok\xff").decode().rstrip("=")
    assert decode_base64url(broken) == "ok�"
    assert decode_base64url(None) == ""


def test_base64url_to_standard():
    raw = bytes([251, 255, 190])
    urlsafe = base64.urlsafe_b64encode(raw).decode().rstrip("=")
    assert base64.b64decode(base64url_to_standard(urlsafe)) == raw


def test_extract_body_depth_first_first_match_wins():
    payload = {
        "mimeType": "multipart/mixed",
        "parts": [
            {
                "mimeType": "multipart/alternative",
                "parts": [
                    {"mimeType": "text/plain", "body": {"data": b64url("first text")}},
                    {"mimeType": "text/html", "body": {"data": b64url("<p>first html</p>")}},
                ],
            },
            {"mimeType": "text/plain", "body": {"data": b64url("second text")}},
        ],
    }
    body = extract_body(payload)
    assert body.text == "first text"
    assert body.html == "<p>first html</p>"


def test_extract_body_single_part_root():
    html = extract_body({"mimeType": "text/html", "body": {"data": b64url("<b>x</b>")}})
    assert html.html == "<b>x</b>" and html.text is None
    text = extract_body({"mimeType": "text/plain", "body": {"data": b64url("plain")}})
    assert text.text == "plain" and text.html is None


def test_extract_body_empty_payload():
    body = extract_body(None)
    assert body.text is None and body.html is None
    assert body.content == ""


def test_check_has_attachments_finds_nested_filename():
    payload = {
        "mimeType": "multipart/mixed",
        "parts": [
            {"mimeType": "multipart/alternative", "parts": [{"mimeType": "text/plain", "filename": ""}]},
            {"mimeType": "multipart/related", "parts": [{"mimeType": "image/png", "filename": "logo.png"}]},
        ],
    }
    assert check_has_attachments(payload) is True
    assert check_has_attachments({"mimeType": "text/plain", "filename": ""}) is False
    assert check_has_attachments(None) is False


def test_header_map_is_case_insensitive_and_keeps_first_value():
    headers = header_map({"headers": [
        {"name": "Subject", "value": "one"},
        {"name": "SUBJECT", "value": "two"},
        {"name": "From", "value": "a@example.com"},
    ]})
    assert headers == {"subject": "one", "from": "a@example.com"}
