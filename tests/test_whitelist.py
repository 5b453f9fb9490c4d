"""
tests/test_whitelist.py -- Unit tests for auth/whitelist.py.

Covers:
  - CIDR and literal membership, IPv4 and IPv6
  - Fail-closed: empty whitelist, all-invalid whitelist, unparsable source
  - Per-entry parsing: one bad entry does not disable the others
  - IPv4-mapped IPv6 normalization on both the source and the entry side
"""

from __future__ import annotations

import ipaddress
import logging

import pytest

from auth.whitelist import WhitelistMatcher, normalize_address, parse_whitelist, split_entries


@pytest.fixture
def matcher() -> WhitelistMatcher:
    return WhitelistMatcher()


class TestMembership:
    def test_address_inside_cidr_is_trusted(self, matcher: WhitelistMatcher) -> None:
        assert matcher.is_trusted("172.19.5.5", "172.19.0.0/16")

    def test_address_outside_cidr_is_not_trusted(self, matcher: WhitelistMatcher) -> None:
        assert not matcher.is_trusted("10.0.0.5", "172.19.0.0/16")

    def test_literal_address_entry(self, matcher: WhitelistMatcher) -> None:
        assert matcher.is_trusted("10.0.0.5", "10.0.0.5")
        assert not matcher.is_trusted("10.0.0.6", "10.0.0.5")

    def test_any_entry_in_a_list_matches(self, matcher: WhitelistMatcher) -> None:
        whitelist = "192.168.1.0/24, 10.0.0.5 ,fd00::/8"
        assert matcher.is_trusted("192.168.1.77", whitelist)
        assert matcher.is_trusted("10.0.0.5", whitelist)
        assert matcher.is_trusted("fd00::1234", whitelist)
        assert not matcher.is_trusted("8.8.8.8", whitelist)

    def test_list_of_strings_is_accepted(self, matcher: WhitelistMatcher) -> None:
        assert matcher.is_trusted("10.1.2.3", ["192.168.0.0/16", "10.0.0.0/8"])

    def test_host_bits_in_cidr_are_accepted(self, matcher: WhitelistMatcher) -> None:
        assert matcher.is_trusted("10.200.0.1", "10.0.0.5/8")

    def test_ipv6_address_never_matches_ipv4_range(self, matcher: WhitelistMatcher) -> None:
        assert not matcher.is_trusted("2001:db8::1", "0.0.0.0/0")


class TestFailClosed:
    @pytest.mark.parametrize("whitelist", ["", None, " , ,", []])
    def test_empty_whitelist_trusts_nobody(self, matcher: WhitelistMatcher, whitelist) -> None:
        assert not matcher.is_trusted("127.0.0.1", whitelist)

    def test_all_invalid_entries_trusts_nobody(self, matcher: WhitelistMatcher) -> None:
        assert not matcher.is_trusted("10.0.0.5", "not-an-ip, 10.0.0.0/99")

    def test_invalid_entry_does_not_disable_valid_ones(self, matcher: WhitelistMatcher) -> None:
        assert matcher.is_trusted("172.19.5.5", "garbage, 172.19.0.0/16")

    @pytest.mark.parametrize("source", [None, "", "testclient", "999.1.1.1"])
    def test_unparsable_source_is_untrusted(self, matcher: WhitelistMatcher, source) -> None:
        assert not matcher.is_trusted(source, "0.0.0.0/0")

    def test_invalid_entry_is_logged_and_reported(self, matcher: WhitelistMatcher, caplog) -> None:
        # Unique text so the parse memo cannot have seen it before.
        whitelist = "10.0.0.0/8, bogus-entry-for-logging-test"
        with caplog.at_level(logging.WARNING, logger="homeboard.auth.whitelist"):
            assert matcher.invalid_entries(whitelist) == ["bogus-entry-for-logging-test"]
        assert "bogus-entry-for-logging-test" in caplog.text


class TestIPv4MappedNormalization:
    def test_mapped_source_matches_ipv4_range(self, matcher: WhitelistMatcher) -> None:
        assert matcher.is_trusted("::ffff:172.19.5.5", "172.19.0.0/16")

    def test_mapped_entry_matches_plain_ipv4_source(self, matcher: WhitelistMatcher) -> None:
        assert matcher.is_trusted("10.0.0.5", "::ffff:10.0.0.5")

    def test_mapped_cidr_entry_matches_both_source_forms(self, matcher: WhitelistMatcher) -> None:
        whitelist = "::ffff:172.19.0.0/112"
        assert matcher.is_trusted("::ffff:172.19.5.5", whitelist)
        assert matcher.is_trusted("172.19.5.5", whitelist)
        assert not matcher.is_trusted("172.20.0.1", whitelist)
        assert parse_whitelist(whitelist).networks == (ipaddress.ip_network("172.19.0.0/16"),)

    def test_short_mapped_prefix_stays_ipv6(self) -> None:
        assert parse_whitelist("::ffff:0:0/95").networks[0].version == 6

    def test_normalize_unwraps_only_mapped_addresses(self) -> None:
        assert str(normalize_address("::ffff:10.0.0.5")) == "10.0.0.5"
        assert str(normalize_address("2001:db8::1")) == "2001:db8::1"
        assert normalize_address("nope") is None


class TestParsing:
    def test_split_entries_strips_and_drops_blanks(self) -> None:
        assert split_entries(" 10.0.0.1 ,, 10.0.0.0/8 ,") == ("10.0.0.1", "10.0.0.0/8")

    def test_parsed_whitelist_is_falsy_without_networks(self) -> None:
        assert not parse_whitelist("nope")
        assert parse_whitelist("10.0.0.0/8")
