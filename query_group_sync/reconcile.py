"""
Reconciliation engine for query-driven groups.

For one group: resolve the stored queries, fetch the candidate users, diff them
against the current members and apply the additions and removals. The directory
is only reached through the client passed in, so every step can be exercised
against an in-memory directory.
"""

import time
import logging
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from query_group_sync.config import SyncSettings
from query_group_sync.directory import DirectoryError
from query_group_sync.expression import CompiledFilter, compile_filter, primary_query_to_ldap
from query_group_sync.logging_setup import audit_logger
from query_group_sync.models import (
    ACTION_ADD,
    ACTION_REMOVE,
    STATUS_ERROR,
    ApplyOutcome,
    ChangeRecord,
    Group,
    GroupQueries,
    GroupResult,
    User,
)

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[str, Group, User], bool]
EmitCallback = Callable[[ChangeRecord], None]


class QueryError(Exception):
    """Raised when a group does not carry a usable membership query."""
    pass


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def resolve_queries(group: Group, settings: SyncSettings) -> GroupQueries:
    """
    Read the membership query and its optional companions from the group's slots.

    Blank optional values are treated exactly like missing ones.

    Raises:
        QueryError: If the primary query slot is empty
    """
    primary = _clean(group.get_value(settings.query_attribute))
    if primary is None:
        raise QueryError(f"Group {group.name} has no query in {settings.query_attribute}")

    secondary = None
    if settings.filter_attribute:
        secondary = _clean(group.get_value(settings.filter_attribute))

    scope = None
    if settings.scope_attribute:
        scope = _clean(group.get_value(settings.scope_attribute))

    return GroupQueries(primary=primary, secondary_filter=secondary, user_scope_override=scope)


def effective_user_scope(queries: GroupQueries, default_base: str) -> str:
    """The group's own user search base if it sets one, otherwise the default."""
    return queries.user_scope_override or default_base


def build_candidate_filter(user_filter: str, primary_query: str) -> str:
    """Combine the user object filter with the group's primary query."""
    query_filter = primary_query_to_ldap(primary_query)
    if not user_filter:
        return query_filter
    return f"(&{user_filter}{query_filter})"


def fetch_candidates(client, search_filter: str, search_base: str,
                     attributes: Optional[Iterable[str]] = None,
                     predicate: Optional[Callable[[User], bool]] = None) -> List[User]:
    """
    Fetch the users a group should contain.

    Args:
        client: Directory client
        search_filter: Complete LDAP filter for the candidates
        search_base: Effective user search base
        attributes: Extra attributes needed by the predicate
        predicate: Optional secondary filter applied after the search

    Returns:
        Users ordered by account name
    """
    users = sorted(client.search_users(search_base, search_filter, attributes), key=lambda user: user.sort_key)
    if predicate is None:
        return users
    matched = [user for user in users if predicate(user)]
    logger.debug(f"Secondary filter kept {len(matched)} of {len(users)} candidates")
    return matched


def diff_members(current: Sequence[User], candidates: Sequence[User]) -> Tuple[List[User], List[User]]:
    """
    Compare current members with candidates by stable identifier.

    Returns:
        Tuple of (users to add, users to remove), each in input order
    """
    current_ids = {member.id for member in current}
    candidate_ids = {candidate.id for candidate in candidates}

    to_add = []
    seen = set()
    for candidate in candidates:
        if candidate.id not in current_ids and candidate.id not in seen:
            seen.add(candidate.id)
            to_add.append(candidate)

    to_remove = []
    seen = set()
    for member in current:
        if member.id not in candidate_ids and member.id not in seen:
            seen.add(member.id)
            to_remove.append(member)

    return to_add, to_remove


def apply_changes(client, group: Group, query: str, to_add: Sequence[User], to_remove: Sequence[User],
                  dry_run: bool = False, confirm: Optional[ConfirmCallback] = None,
                  emit: Optional[EmitCallback] = None) -> ApplyOutcome:
    """
    Apply additions, then removals, one member at a time.

    A failed mutation is recorded and the next member is still attempted.
    In dry-run mode the client is never asked to change anything.

    Args:
        client: Directory client
        group: Group being changed
        query: Primary query, copied into change records
        to_add: Users to add
        to_remove: Users to remove
        dry_run: Only log and record the intended changes
        confirm: Asked before each change; returning False skips that member
        emit: Receives a ChangeRecord for every applied or simulated change

    Returns:
        ApplyOutcome with counters and emitted records
    """
    outcome = ApplyOutcome()
    phases = (
        (ACTION_ADD, to_add, client.add_group_member),
        (ACTION_REMOVE, to_remove, client.remove_group_member),
    )

    for action, users, mutate in phases:
        for user in users:
            direction = 'to' if action == ACTION_ADD else 'from'
            prefix = '[dry-run] ' if dry_run else ''
            logger.info(f"{prefix}{action} {user.account_name} {direction} {group.name}")

            if confirm is not None and not confirm(action, group, user):
                logger.info(f"Skipped {action} of {user.account_name} for {group.name}: not confirmed")
                outcome.skipped += 1
                continue

            if not dry_run:
                try:
                    mutate(group, user)
                except DirectoryError as e:
                    outcome.failed += 1
                    outcome.errors.append(str(e))
                    logger.error(f"Failed to {action.lower()} {user.account_name} {direction} {group.name}: {e}")
                    audit_logger.log_membership_change(action, group.name, user.account_name, False)
                    continue

            audit_logger.log_membership_change(action, group.name, user.account_name, True, dry_run)
            if action == ACTION_ADD:
                outcome.added += 1
            else:
                outcome.removed += 1

            if emit is not None:
                record = ChangeRecord(group=group.name, query=query, user=user.account_name, action=action)
                outcome.records.append(record)
                emit(record)

    return outcome


def reconcile_group(client, group: Group, settings: SyncSettings,
                    known_attributes: Optional[Iterable[str]] = None,
                    confirm: Optional[ConfirmCallback] = None,
                    emit: Optional[EmitCallback] = None) -> GroupResult:
    """
    Bring one group's membership in line with its query.

    Never raises: any failure is captured in the returned GroupResult together
    with the stage it happened in.
    """
    result = GroupResult(group=group.name, dn=group.dn)
    start = time.monotonic()
    stage = 'resolve'

    try:
        queries = resolve_queries(group, settings)
        result.query = queries.primary
        logger.info(f"Processing group {group.name} with query: {queries.primary}")

        predicate: Optional[CompiledFilter] = compile_filter(queries.secondary_filter, known_attributes)
        if predicate is not None:
            logger.info(f"Group {group.name} secondary filter: {predicate.expression}")
        search_filter = build_candidate_filter(settings.user_filter, queries.primary)

        stage = 'fetch'
        search_base = effective_user_scope(queries, settings.user_search_base)
        candidates = fetch_candidates(
            client, search_filter, search_base,
            predicate.attributes if predicate else None,
            predicate
        )
        current = sorted(client.get_group_members(group), key=lambda user: user.sort_key)

        stage = 'diff'
        to_add, to_remove = diff_members(current, candidates)
        result.to_add = len(to_add)
        result.to_remove = len(to_remove)
        logger.info(f"Group {group.name}: {len(candidates)} candidates, {len(current)} current members, "
                    f"{len(to_add)} to add, {len(to_remove)} to remove")

        stage = 'apply'
        outcome = apply_changes(client, group, queries.primary, to_add, to_remove,
                                dry_run=settings.dry_run, confirm=confirm, emit=emit)
        result.added = outcome.added
        result.removed = outcome.removed
        result.failed_mutations = outcome.failed
        result.records = outcome.records
        stage = 'done'

    except Exception as e:
        result.status = STATUS_ERROR
        result.stage = stage
        result.error = str(e)
        logger.error(f"Failed to sync group {group.name} during {stage}: {e}")

    finally:
        result.elapsed_seconds = time.monotonic() - start
        logger.info(f"Completed group {group.name} in {result.elapsed_seconds:.2f} seconds")

    if result.status != STATUS_ERROR:
        result.stage = stage
    return result
