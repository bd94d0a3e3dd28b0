"""Tests for address and protocol id normalization."""

import pytest

from app.core.identity import (
    addresses_match,
    canonical_protocol_id,
    is_broadcast_id,
    is_direct_chat_id,
    is_group_id,
    normalize_address,
    normalize_protocol_id,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("087712345678", "87712345678"),
        ("87712345678", "87712345678"),
        ("+1 (281) 788-2316", "12817882316"),
        ("2348012345678:12@s.whatsapp.net", "2348012345678"),
        ("0012817882316", "12817882316"),
        ("0281788231", "0281788231"),  # 10 digits keep their leading zero
        ("12345", ""),
        ("1234567890123456", ""),
        ("", ""),
        (None, ""),
        ("not a number", ""),
    ],
)
def test_normalize_address(raw, expected):
    assert normalize_address(raw) == expected


def test_normalize_address_is_idempotent():
    for raw in ["0087712345678", "+44 020 7946 0958", "2348012345678:3@lid", "0012817882316"]:
        once = normalize_address(raw)
        assert normalize_address(once) == once


def test_normalize_protocol_id_strips_device_suffix_only():
    assert normalize_protocol_id("2348012345678:12@s.whatsapp.net") == "2348012345678@s.whatsapp.net"
    assert normalize_protocol_id("98765432101@lid") == "98765432101@lid"
    # The two namespaces are never conflated
    assert normalize_protocol_id("98765432101@lid") != normalize_protocol_id("98765432101@s.whatsapp.net")


def test_normalize_protocol_id_rejects_invalid_input():
    assert normalize_protocol_id("12817882316") is None
    assert normalize_protocol_id("12817882316@") is None
    assert normalize_protocol_id("123@s.whatsapp.net") is None
    assert normalize_protocol_id(None) is None


def test_canonical_protocol_id_keeps_existing_domain():
    assert canonical_protocol_id("+1 281 788 2316") == "12817882316@s.whatsapp.net"
    assert canonical_protocol_id("12817882316", existing_id="999999999@lid") == "12817882316@lid"
    assert canonical_protocol_id("12817882316", existing_id="garbage") == "12817882316@s.whatsapp.net"
    assert canonical_protocol_id("123") is None


def test_chat_kind_predicates():
    assert is_group_id("120363025246125486@g.us")
    assert not is_group_id("12817882316@s.whatsapp.net")
    assert is_broadcast_id("status@broadcast")
    assert is_broadcast_id("120363025246125486@newsletter")
    assert is_direct_chat_id("12817882316@s.whatsapp.net")
    assert is_direct_chat_id("98765432101@lid")
    assert not is_direct_chat_id("120363025246125486@g.us")


def test_addresses_match_on_suffix():
    assert addresses_match("12817882316", "2817882316")
    assert addresses_match("087712345678", "87712345678")
    assert not addresses_match("12817882316", "12817882317")
    assert not addresses_match("", "12817882316")
