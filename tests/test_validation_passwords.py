import pytest

from sessionforge.service.passwords import PasswordPolicy
from sessionforge.service.validation import (
    identifier_problems,
    normalize_identifier,
    normalize_roles,
)


class TestIdentifiers:
    def test_normalization(self):
        assert normalize_identifier("  Alice@Example.COM ") == "alice@example.com"
        assert normalize_identifier("ali\u200bce@example.com") == "alice@example.com"
        assert normalize_identifier(None) == ""

    @pytest.mark.parametrize(
        "value", ["alice@example.com", "first.last+tag@mail.example.org"]
    )
    def test_valid(self, value):
        assert identifier_problems(value) == []

    @pytest.mark.parametrize(
        "value",
        ["", "ab", "alice", "alice@", "@example.com", "alice@localhost", "al ice@example.com",
         "alice@-bad-.com", "x" * 65 + "@example.com"],
    )
    def test_invalid(self, value):
        assert identifier_problems(value)


class TestRoles:
    def test_defaults_when_absent(self):
        assert normalize_roles(None, default=["user"]) == (("user",), [])

    def test_deduplicates_preserving_order(self):
        roles, problems = normalize_roles(["Manager", "user", "Manager"], default=["user"])
        assert roles == ("Manager", "user")
        assert problems == []

    def test_malformed_role_names(self):
        _, problems = normalize_roles(["ok", "has space", "1leading-digit", ""], default=[])
        assert len(problems) == 3

    def test_allow_list(self):
        roles, problems = normalize_roles(["admin", "user"], default=[], allowed=["user"])
        assert roles == ("user",)
        assert problems == ["role 'admin' is not assignable"]

    def test_empty_role_set_rejected(self):
        roles, problems = normalize_roles([], default=["user"])
        assert roles == ()
        assert problems == ["at least one role is required"]


class TestPasswordPolicy:
    policy = PasswordPolicy(min_length=10, max_length=20, min_character_classes=3)

    def test_acceptable(self):
        assert self.policy.violations("Sw0rdFish!", identifier="alice@example.com") == []

    def test_too_short_and_too_long(self):
        assert any("at least 10" in p for p in self.policy.violations("Sh0rt!"))
        assert any("at most 20" in p for p in self.policy.violations("L0ng!" * 5))

    def test_character_classes(self):
        problems = self.policy.violations("alllowercaseletters")
        assert len(problems) == 1
        assert "mix at least 3" in problems[0]

    def test_identifier_local_part(self):
        assert self.policy.violations("Alice-2026!", identifier="alice@example.com")
        # short local parts are not checked
        assert self.policy.violations("Bob-2026!xy", identifier="bob@example.com") == []
