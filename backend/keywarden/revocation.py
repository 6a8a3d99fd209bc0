"""Revoke a departing user's repository grants, all or nothing.

Revocation runs in two phases. ``plan_revocation`` classifies every
repository referencing the user without touching storage: a repository is
*revocable* when another grantee remains and *blocking* when the user is
its only grantee. ``revoke_access`` applies the plan only when nothing
blocks, so an aborted removal leaves every repository untouched.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from keywarden.exceptions import ConflictError, PersistenceError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from shared.dal.grant_repository import GrantRepository
    from shared.dal.models import Repository

logger = structlog.get_logger()

SOLE_GRANTEE_REASON = "user is the only one with access to at least one of its repositories"


@dataclass(frozen=True)
class Revocation:
    """A repository that keeps other grantees once the user is dropped."""

    repository: str
    remaining: list[str]


@dataclass(frozen=True)
class RevocationPlan:
    user_name: str
    revocable: list[Revocation] = field(default_factory=list)
    blocking: list[str] = field(default_factory=list)

    @property
    def is_blocked(self) -> bool:
        return bool(self.blocking)


def plan_revocation(user_name: str, repositories: Iterable[Repository]) -> RevocationPlan:
    """Classify every repository referencing ``user_name``.

    Repeated occurrences of the user in one grantee list count as a single
    membership. Repositories that do not reference the user are ignored.
    """
    revocable: list[Revocation] = []
    blocking: list[str] = []
    for repository in repositories:
        if user_name not in repository.users:
            continue
        remaining = list(dict.fromkeys(u for u in repository.users if u != user_name))
        if remaining:
            revocable.append(Revocation(repository=repository.name, remaining=remaining))
        else:
            blocking.append(repository.name)
    return RevocationPlan(user_name=user_name, revocable=revocable, blocking=blocking)


async def revoke_access(user_name: str, grants: GrantRepository) -> RevocationPlan:
    """Remove ``user_name`` from every repository it shares with other users.

    Raises ConflictError without applying anything when the user is the
    sole grantee of at least one repository. Updates are not transactional
    across repositories: if one fails, PersistenceError reports which
    repositories were already revoked.
    """
    try:
        repositories = await grants.find_by_user(user_name)
    except OSError as exc:
        raise PersistenceError(reason=str(exc), operation="remove user", user=user_name) from exc

    plan = plan_revocation(user_name, repositories)
    if plan.is_blocked:
        logger.info("user removal blocked", user=user_name, repositories=plan.blocking)
        raise ConflictError(
            reason=SOLE_GRANTEE_REASON,
            operation="remove user",
            user=user_name,
            repositories=plan.blocking,
        )

    revoked: list[str] = []
    for revocation in plan.revocable:
        try:
            updated = await grants.update_users(revocation.repository, revocation.remaining)
        except OSError as exc:
            logger.exception(
                "access revocation interrupted",
                user=user_name,
                repository=revocation.repository,
                revoked=revoked,
            )
            raise PersistenceError(
                reason=f"failed to revoke access to repository '{revocation.repository}'",
                operation="remove user",
                user=user_name,
                repository=revocation.repository,
                revoked=revoked,
            ) from exc
        # A repository deleted since the lookup no longer grants access; nothing to revoke.
        if updated:
            revoked.append(revocation.repository)

    if revoked:
        logger.info("revoked repository access", user=user_name, repositories=revoked)
    return plan
