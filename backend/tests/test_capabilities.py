# Overview: Pytest coverage for API key capability tokens and plan features.

import pytest

from vault.capabilities import Capability, CapabilitySet
from vault.errors import ValidationError
from vault.plans import plan_has_feature


class TestCapabilityParsing:
    @pytest.mark.parametrize("token,expected", [
        ("currency:write", Capability("currency", "write")),
        ("orders:*", Capability("orders", "*")),
        ("*", Capability("*", "*")),
        (" items:read ", Capability("items", "read")),
    ])
    def test_valid_tokens(self, token, expected):
        assert Capability.parse(token) == expected

    @pytest.mark.parametrize("token", ["", "currency", "currncy:write", "currency:delete", "*:read", None, 5])
    def test_invalid_tokens(self, token):
        with pytest.raises(ValidationError):
            Capability.parse(token)

    def test_str_round_trip(self):
        assert str(Capability.parse("members:read")) == "members:read"
        assert str(Capability.parse("*")) == "*"


class TestCapabilitySet:
    def test_exact_and_wildcards(self):
        caps = CapabilitySet.parse(["currency:read", "orders:*"])
        assert caps.allows("currency:read")
        assert not caps.allows("currency:write")
        assert caps.allows("orders:write")
        assert "orders:read" in caps
        assert not caps.allows("items:read")

    def test_global_wildcard(self):
        caps = CapabilitySet.parse(["*"])
        assert all(caps.allows(t) for t in ("items:write", "members:read", "currency:write"))

    def test_strict_parse_rejects_string(self):
        with pytest.raises(ValidationError):
            CapabilitySet.parse("currency:read")

    def test_lenient_load_skips_invalid(self):
        skipped = []
        caps = CapabilitySet.load(["currency:read", "legacy:admin"], on_invalid=skipped.append)
        assert caps.tokens() == ["currency:read"]
        assert skipped == ["legacy:admin"]
        assert len(CapabilitySet.load(None)) == 0

    def test_tokens_are_sorted_and_deduplicated(self):
        caps = CapabilitySet.parse(["orders:read", "currency:read", "orders:read"])
        assert caps.tokens() == ["currency:read", "orders:read"]


class TestPlans:
    def test_api_access_is_enterprise_only(self):
        assert plan_has_feature("enterprise", "api_access")
        assert not plan_has_feature("pro", "api_access")
        assert not plan_has_feature(None, "api_access")
        assert not plan_has_feature("enterprise", "time_travel")
