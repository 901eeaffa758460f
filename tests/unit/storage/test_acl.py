"""Tests for the ACL overlay and the access decision."""

import pytest

from evidence_storage.acl import AclOverlay, evaluate_access, policy_for_destination
from evidence_storage.models import ObjectAclPolicy, ObjectPermission, ObjectVisibility


class TestEvaluateAccess:
    def test_no_policy_allows_only_reads_of_public_keys(self):
        assert evaluate_access("public/a", None, None, ObjectPermission.READ) is True
        assert evaluate_access("public/a", None, "u1", ObjectPermission.WRITE) is False
        assert evaluate_access(".private/a", None, "u1", ObjectPermission.READ) is False
        assert evaluate_access("a", None, "u1", ObjectPermission.READ) is False

    def test_public_policy_grants_anonymous_reads_only(self):
        policy = ObjectAclPolicy(visibility=ObjectVisibility.PUBLIC)

        assert evaluate_access(".private/a", policy, None, ObjectPermission.READ) is True
        assert evaluate_access(".private/a", policy, None, ObjectPermission.DELETE) is False

    @pytest.mark.parametrize("permission", list(ObjectPermission))
    def test_allowed_users_get_every_permission(self, permission):
        policy = ObjectAclPolicy(allowed_users=["alice"])

        assert evaluate_access(".private/a", policy, "alice", permission) is True
        assert evaluate_access(".private/a", policy, "bob", permission) is False

    def test_anonymous_caller_is_denied_private_objects(self):
        policy = ObjectAclPolicy(allowed_users=["alice"])

        assert evaluate_access(".private/a", policy, None, ObjectPermission.READ) is False
        assert evaluate_access(".private/a", policy, "", ObjectPermission.READ) is False

    def test_roles_do_not_grant_access(self):
        policy = ObjectAclPolicy(allowed_roles=["admin"])

        assert evaluate_access(".private/a", policy, "admin", ObjectPermission.READ) is False


class TestPolicyForDestination:
    def test_namespaced_destination_sets_visibility(self):
        policy = ObjectAclPolicy(allowed_users=["u1"])

        copied = policy_for_destination(policy, "public/a")

        assert copied.visibility is ObjectVisibility.PUBLIC
        assert copied.allowed_users == ["u1"]
        assert policy.visibility is ObjectVisibility.PRIVATE

    def test_unprefixed_destination_keeps_visibility(self):
        policy = ObjectAclPolicy(visibility=ObjectVisibility.PUBLIC)

        assert policy_for_destination(policy, "a").visibility is ObjectVisibility.PUBLIC


class TestAclOverlay:
    def test_policies_are_copied_in_and_out(self):
        overlay = AclOverlay()
        policy = ObjectAclPolicy(allowed_users=["u1"])
        overlay.set("k", policy)

        policy.allowed_users.append("intruder")
        fetched = overlay.get("k")
        fetched.allowed_users.append("intruder")

        assert overlay.get("k").allowed_users == ["u1"]

    def test_set_visibility_creates_or_updates(self):
        overlay = AclOverlay()

        overlay.set_visibility("k", ObjectVisibility.PUBLIC)
        assert overlay.get("k").visibility is ObjectVisibility.PUBLIC

        overlay.set("k", ObjectAclPolicy(allowed_users=["u1"]))
        overlay.set_visibility("k", "public")
        policy = overlay.get("k")
        assert policy.visibility is ObjectVisibility.PUBLIC
        assert policy.allowed_users == ["u1"]

    def test_copy_and_discard(self):
        overlay = AclOverlay()
        overlay.set(".private/a", ObjectAclPolicy(allowed_users=["u1"]))

        overlay.copy(".private/a", "public/a")
        overlay.copy(".private/missing", "public/missing")
        overlay.discard(".private/a")
        overlay.discard(".private/never-set")

        assert overlay.get(".private/a") is None
        assert overlay.get("public/missing") is None
        assert overlay.get("public/a").visibility is ObjectVisibility.PUBLIC
        assert len(overlay) == 1


class TestObjectAclPolicy:
    def test_dict_round_trip_uses_camel_case(self):
        policy = ObjectAclPolicy(visibility="public", allowed_users=["u1"], allowed_roles=["r1"])

        data = policy.to_dict()

        assert data == {"visibility": "public", "allowedUsers": ["u1"], "allowedRoles": ["r1"]}
        assert ObjectAclPolicy.from_dict(data) == policy

    def test_from_dict_defaults(self):
        policy = ObjectAclPolicy.from_dict({})

        assert policy.visibility is ObjectVisibility.PRIVATE
        assert policy.allowed_users == []
