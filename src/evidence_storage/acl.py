"""Application-level access policy overlay and the access decision."""

import threading

from .keys import PUBLIC_PREFIX, explicit_namespace
from .models import ObjectAclPolicy, ObjectPermission, ObjectVisibility


class AclOverlay:
    """In-process map of object key to ACL policy.

    Policies are copied on the way in and out so callers never share mutable
    state with the map. The overlay only lives as long as the process; a
    horizontally scaled deployment needs a shared store instead.
    """

    def __init__(self):
        self._policies: dict[str, ObjectAclPolicy] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> ObjectAclPolicy | None:
        with self._lock:
            policy = self._policies.get(key)
            return policy.copy() if policy else None

    def set(self, key: str, policy: ObjectAclPolicy) -> None:
        with self._lock:
            self._policies[key] = policy.copy()

    def set_visibility(self, key: str, visibility: ObjectVisibility) -> ObjectAclPolicy:
        """Update only the visibility, creating a bare policy when none exists."""
        with self._lock:
            policy = self._policies.get(key) or ObjectAclPolicy(visibility=visibility)
            policy.visibility = ObjectVisibility(visibility)
            self._policies[key] = policy
            return policy.copy()

    def discard(self, key: str) -> None:
        with self._lock:
            self._policies.pop(key, None)

    def copy(self, source_key: str, destination_key: str) -> None:
        with self._lock:
            policy = self._policies.get(source_key)
            if policy is not None:
                self._policies[destination_key] = policy_for_destination(policy, destination_key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._policies)


def policy_for_destination(policy: ObjectAclPolicy, destination_key: str) -> ObjectAclPolicy:
    """Propagate a policy to a copy; a namespaced destination dictates visibility."""
    copied = policy.copy()
    namespace = explicit_namespace(destination_key)
    if namespace is not None:
        copied.visibility = namespace.visibility
    return copied


def evaluate_access(
    key: str,
    policy: ObjectAclPolicy | None,
    user_id: str | None,
    permission: ObjectPermission,
) -> bool:
    """Fail-closed access decision for one object."""
    permission = ObjectPermission(permission)

    if policy is None:
        # Objects stored before ACL tracking stay readable when they were always public.
        return key.startswith(PUBLIC_PREFIX) and permission is ObjectPermission.READ

    if policy.visibility is ObjectVisibility.PUBLIC and permission is ObjectPermission.READ:
        return True

    if not user_id:
        return False

    # Role matching is reserved; roles never grant access on their own.
    return user_id in policy.allowed_users
