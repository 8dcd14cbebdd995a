"""Unit tests for auth/roles.py -- role naming, hierarchy and domain scopes.

Covers:
- highest_authority() picks minimum priority, None for empty, deterministic ties
- unranked roles sort below every ranked role
- has_any_role() compares namespace-normalized names
- type1 / type4 scopes come from the catalog table
- validate_role_name() rejects lowercase and unprefixed names
- the seeded catalog has 12 system roles and the expected self-assignable set
"""

from __future__ import annotations

import pytest

from auth.errors import InvalidRoleNameError
from auth.models import Role
from auth.roles import (
    DEFAULT_ROLE,
    ROLE_CATALOG,
    can_access_type1,
    can_access_type4,
    catalog_roles,
    has_any_role,
    highest_authority,
    is_self_assignable,
    normalize_role_name,
    sort_by_authority,
    validate_priority,
    validate_role_name,
)


class TestHighestAuthority:
    def test_empty_set_returns_none(self) -> None:
        """No roles means no primary role."""
        assert highest_authority([]) is None

    def test_minimum_priority_wins(self) -> None:
        """Lower priority number is more authority."""
        roles = [Role("ROLE_EMPLOYEE", priority=100), Role("ROLE_ADMIN", priority=1), Role("ROLE_X", priority=50)]
        assert highest_authority(roles).name == "ROLE_ADMIN"

    def test_ties_break_by_name(self) -> None:
        """Equal priorities resolve by name regardless of input order."""
        a, b = Role("ROLE_ALPHA", priority=10), Role("ROLE_BETA", priority=10)
        assert highest_authority([b, a]).name == "ROLE_ALPHA"
        assert highest_authority([a, b]).name == "ROLE_ALPHA"

    def test_unranked_role_is_lowest(self) -> None:
        """A role with no priority never outranks a ranked one."""
        roles = [Role("ROLE_AAA", priority=None), Role("ROLE_EMPLOYEE", priority=100)]
        assert highest_authority(roles).name == "ROLE_EMPLOYEE"
        assert [r.name for r in sort_by_authority(roles)] == ["ROLE_EMPLOYEE", "ROLE_AAA"]

    def test_only_unranked_roles(self) -> None:
        """Unranked-only sets still produce a deterministic answer."""
        roles = [Role("ROLE_ZED", priority=None), Role("ROLE_ABC", priority=None)]
        assert highest_authority(roles).name == "ROLE_ABC"


class TestHasAnyRole:
    def test_prefix_is_normalized_on_both_sides(self) -> None:
        """ADMIN and ROLE_ADMIN compare equal."""
        assert has_any_role([Role("ADMIN")], ["ROLE_ADMIN"])
        assert has_any_role(["ROLE_ADMIN"], ["ADMIN"])

    def test_no_overlap(self) -> None:
        assert not has_any_role(["ROLE_EMPLOYEE"], ["ROLE_ADMIN", "ROLE_BUSINESS_SUPPORT"])

    def test_empty_required_never_matches(self) -> None:
        assert not has_any_role(["ROLE_ADMIN"], [])

    def test_normalize_leaves_prefixed_name(self) -> None:
        assert normalize_role_name("ROLE_EMPLOYEE") == "ROLE_EMPLOYEE"
        assert normalize_role_name(" EMPLOYEE ") == "ROLE_EMPLOYEE"


class TestDomainScopes:
    @pytest.mark.parametrize(
        "role, type1, type4",
        [
            ("ROLE_ADMIN", True, True),
            ("ROLE_EXECUTIVE_ALL", True, True),
            ("ROLE_TEAM_LEADER_TYPE1", True, False),
            ("ROLE_INVESTIGATOR_TYPE4", False, True),
            ("ROLE_EMPLOYEE", False, False),
            ("ROLE_BUSINESS_SUPPORT", False, False),
        ],
    )
    def test_scope_per_catalog_role(self, role: str, type1: bool, type4: bool) -> None:
        """Each catalog role grants exactly the scopes its table entry lists."""
        assert can_access_type1([role]) is type1
        assert can_access_type4([role]) is type4

    def test_scopes_union_across_roles(self) -> None:
        """Holding one TYPE1 and one TYPE4 role grants both."""
        roles = ["ROLE_INVESTIGATOR_TYPE1", "ROLE_TEAM_LEADER_TYPE4"]
        assert can_access_type1(roles) and can_access_type4(roles)

    def test_unknown_role_grants_nothing(self) -> None:
        """Custom roles are not matched by substring -- ROLE_MY_TYPE1_THING is not type1."""
        assert not can_access_type1(["ROLE_MY_TYPE1_THING"])


class TestRoleNameValidation:
    @pytest.mark.parametrize("name", ["role_admin", "ADMIN", "ROLE_admin", "ROLE_", "ROLE_1ST", "ROLE_A-B", ""])
    def test_invalid_names_rejected(self, name: str) -> None:
        with pytest.raises(InvalidRoleNameError):
            validate_role_name(name)

    @pytest.mark.parametrize("name", ["ROLE_AUDITOR", "ROLE_TEAM_2", "ROLE_X"])
    def test_valid_names_accepted(self, name: str) -> None:
        assert validate_role_name(name) == name

    def test_invalid_name_error_is_value_error(self) -> None:
        """Callers that catch ValueError also catch bad role names."""
        with pytest.raises(ValueError):
            validate_role_name("nope")

    @pytest.mark.parametrize("priority", [0, 1000, None, -5])
    def test_priority_out_of_range(self, priority) -> None:
        with pytest.raises(ValueError):
            validate_priority(priority)

    def test_priority_bounds_inclusive(self) -> None:
        assert validate_priority(1) == 1
        assert validate_priority(999) == 999


class TestCatalog:
    def test_twelve_system_roles(self) -> None:
        roles = catalog_roles()
        assert len(roles) == 12
        assert all(r.is_system for r in roles)
        assert all(validate_role_name(r.name) for r in roles)

    def test_admin_outranks_everything(self) -> None:
        assert highest_authority(catalog_roles()).name == "ROLE_ADMIN"

    def test_self_assignable_roles(self) -> None:
        """Only investigators and the default employee role are open to self-registration."""
        assignable = {name for name in ROLE_CATALOG if is_self_assignable(name)}
        assert assignable == {
            "ROLE_INVESTIGATOR_ALL",
            "ROLE_INVESTIGATOR_TYPE1",
            "ROLE_INVESTIGATOR_TYPE4",
            "ROLE_EMPLOYEE",
        }
        assert DEFAULT_ROLE in assignable
        assert not is_self_assignable("ROLE_ADMIN")
        assert not is_self_assignable("ROLE_UNKNOWN")

    def test_catalog_is_read_only(self) -> None:
        with pytest.raises(TypeError):
            ROLE_CATALOG["ROLE_NEW"] = ROLE_CATALOG["ROLE_ADMIN"]  # type: ignore[index]
