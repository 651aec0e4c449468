#!/usr/bin/env python3
"""
Unit tests for the reconciliation engine.

Uses an in-memory directory to exercise query resolution, candidate fetching,
membership diffing and change application for single groups.
"""

import unittest
from unittest.mock import Mock
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from query_group_sync.config import SyncSettings
from query_group_sync.directory import DirectoryMutationError
from query_group_sync.expression import compile_filter
from query_group_sync.models import ACTION_ADD, ACTION_REMOVE, STATUS_ERROR, STATUS_OK, GroupQueries
from query_group_sync.reconcile import (
    QueryError,
    apply_changes,
    build_candidate_filter,
    diff_members,
    effective_user_scope,
    fetch_candidates,
    reconcile_group,
    resolve_queries,
)
from fake_directory import FakeDirectory, make_group, make_user

USER_BASE = 'OU=Users,DC=example,DC=com'


def make_settings(**kwargs):
    values = {
        'query_slot': 1,
        'filter_slot': 2,
        'scope_slot': 3,
        'user_search_base': USER_BASE,
        'group_search_base': 'OU=Groups,DC=example,DC=com',
    }
    values.update(kwargs)
    return SyncSettings(**values)


class TestResolveQueries(unittest.TestCase):
    """Test cases for resolve_queries."""

    def setUp(self):
        self.settings = make_settings()

    def test_primary_only(self):
        group = make_group('g', query="department -eq 'sales'")
        queries = resolve_queries(group, self.settings)
        self.assertEqual(queries, GroupQueries("department -eq 'sales'", None, None))

    def test_all_slots(self):
        group = make_group('g', query=" title -like '*' ", secondary="office -eq 'Berlin'",
                           scope='OU=Berlin,DC=example,DC=com')
        queries = resolve_queries(group, self.settings)
        self.assertEqual(queries.primary, "title -like '*'")
        self.assertEqual(queries.secondary_filter, "office -eq 'Berlin'")
        self.assertEqual(queries.user_scope_override, 'OU=Berlin,DC=example,DC=com')

    def test_blank_optional_values_are_not_set(self):
        group = make_group('g', query='(cn=*)', secondary='  ', scope='')
        queries = resolve_queries(group, self.settings)
        self.assertIsNone(queries.secondary_filter)
        self.assertIsNone(queries.user_scope_override)

    def test_unconfigured_slots_are_ignored(self):
        settings = make_settings(filter_slot=None, scope_slot=None)
        group = make_group('g', query='(cn=*)', secondary="office -eq 'x'", scope='OU=X')
        queries = resolve_queries(group, settings)
        self.assertIsNone(queries.secondary_filter)
        self.assertIsNone(queries.user_scope_override)

    def test_missing_primary_query(self):
        with self.assertRaises(QueryError):
            resolve_queries(make_group('g', query='   '), self.settings)

    def test_slot_attribute_lookup_is_case_insensitive(self):
        group = make_group('g')
        group = group.__class__(dn=group.dn, name=group.name,
                                attributes={'cn': ('g',), 'EXTENSIONATTRIBUTE1': ('(cn=x)',)})
        self.assertEqual(resolve_queries(group, self.settings).primary, '(cn=x)')


class TestScopeAndFilter(unittest.TestCase):
    """Test cases for the search scope and search filter helpers."""

    def test_override_replaces_default(self):
        queries = GroupQueries('(cn=*)', None, 'OU=Berlin,DC=example,DC=com')
        self.assertEqual(effective_user_scope(queries, USER_BASE), 'OU=Berlin,DC=example,DC=com')

    def test_default_scope(self):
        self.assertEqual(effective_user_scope(GroupQueries('(cn=*)'), USER_BASE), USER_BASE)

    def test_candidate_filter(self):
        self.assertEqual(
            build_candidate_filter('(objectClass=user)', "department -eq 'sales'"),
            '(&(objectClass=user)(department=sales))'
        )
        self.assertEqual(build_candidate_filter('', '(department=sales)'), '(department=sales)')


class TestFetchCandidates(unittest.TestCase):
    """Test cases for fetch_candidates."""

    def setUp(self):
        self.zoe = make_user('zoe', 'u1', office='Berlin')
        self.adam = make_user('Adam', 'u2')
        self.mia = make_user('mia', 'u3', office='Berlin')
        self.directory = FakeDirectory(
            users=[self.zoe, self.adam, self.mia],
            query_results={'(department=sales)': ['u1', 'u2', 'u3']}
        )

    def test_sorted_by_account_name(self):
        users = fetch_candidates(self.directory, '(department=sales)', USER_BASE)
        self.assertEqual([u.account_name for u in users], ['Adam', 'mia', 'zoe'])

    def test_secondary_filter_excludes_missing_attribute(self):
        predicate = compile_filter("office -eq 'Berlin'", ['office'])
        users = fetch_candidates(self.directory, '(department=sales)', USER_BASE,
                                 predicate.attributes, predicate)
        self.assertEqual([u.account_name for u in users], ['mia', 'zoe'])
        self.assertEqual(self.directory.user_searches[-1], (USER_BASE, '(department=sales)', ['office']))


class TestDiffMembers(unittest.TestCase):
    """Test cases for diff_members."""

    def setUp(self):
        self.a = make_user('a', '1')
        self.b = make_user('b', '2')
        self.c = make_user('c', '3')
        self.d = make_user('d', '4')

    def test_set_differences(self):
        to_add, to_remove = diff_members([self.a, self.b, self.c], [self.b, self.c, self.d])
        self.assertEqual(to_add, [self.d])
        self.assertEqual(to_remove, [self.a])

    def test_identical_sets_are_a_no_op(self):
        self.assertEqual(diff_members([self.a, self.b], [self.b, self.a]), ([], []))

    def test_empty_sides(self):
        self.assertEqual(diff_members([], [self.a, self.b]), ([self.a, self.b], []))
        self.assertEqual(diff_members([self.a], []), ([], [self.a]))

    def test_rename_does_not_cause_changes(self):
        renamed = make_user('a.renamed', '1')
        self.assertEqual(diff_members([self.a], [renamed]), ([], []))

    def test_duplicates_collapse(self):
        to_add, _ = diff_members([], [self.a, self.a])
        self.assertEqual(to_add, [self.a])

    def test_matches_set_algebra(self):
        users = [make_user(f'user{i}', str(i)) for i in range(12)]
        current = users[:8]
        candidates = users[5:]
        to_add, to_remove = diff_members(current, candidates)
        current_ids = {u.id for u in current}
        candidate_ids = {u.id for u in candidates}
        self.assertEqual({u.id for u in to_add}, candidate_ids - current_ids)
        self.assertEqual({u.id for u in to_remove}, current_ids - candidate_ids)
        touched = {u.id for u in to_add} | {u.id for u in to_remove}
        self.assertFalse(touched & (current_ids & candidate_ids))


class TestApplyChanges(unittest.TestCase):
    """Test cases for apply_changes."""

    def setUp(self):
        self.group = make_group('role-x', query='(cn=*)')
        self.john = make_user('john', '1')
        self.sam = make_user('sam', '2')
        self.tom = make_user('tom', '3')
        self.directory = FakeDirectory(users=[self.john, self.sam, self.tom],
                                       members={self.group.dn: {'3'}})
        self.records = []

    def test_adds_before_removes(self):
        outcome = apply_changes(self.directory, self.group, '(cn=*)', [self.john, self.sam], [self.tom],
                                emit=self.records.append)
        self.assertEqual(self.directory.mutations, [
            ('add', 'role-x', 'john'),
            ('add', 'role-x', 'sam'),
            ('remove', 'role-x', 'tom'),
        ])
        self.assertEqual((outcome.added, outcome.removed, outcome.failed), (2, 1, 0))
        self.assertEqual([r.action for r in self.records], [ACTION_ADD, ACTION_ADD, ACTION_REMOVE])
        self.assertEqual(outcome.records, self.records)

    def test_dry_run_never_calls_directory(self):
        client = Mock()
        outcome = apply_changes(client, self.group, '(cn=*)', [self.john], [self.tom],
                                dry_run=True, emit=self.records.append)
        client.add_group_member.assert_not_called()
        client.remove_group_member.assert_not_called()
        self.assertEqual((outcome.added, outcome.removed), (1, 1))
        self.assertEqual([r.to_dict() for r in self.records], [
            {'Group': 'role-x', 'Query': '(cn=*)', 'User': 'john', 'Action': 'Add'},
            {'Group': 'role-x', 'Query': '(cn=*)', 'User': 'tom', 'Action': 'Remove'},
        ])

    def test_failed_mutation_does_not_stop_siblings(self):
        self.directory.failing_adds.add('john')
        outcome = apply_changes(self.directory, self.group, '(cn=*)', [self.john, self.sam], [self.tom],
                                emit=self.records.append)
        self.assertEqual(len(self.directory.mutations), 3)
        self.assertEqual(outcome.failed, 1)
        self.assertEqual(outcome.added, 1)
        self.assertIn('john', outcome.errors[0])
        self.assertEqual([r.user for r in self.records], ['sam', 'tom'])

    def test_declined_confirmation_skips_member(self):
        answers = {'john': False, 'sam': True, 'tom': True}
        confirm = Mock(side_effect=lambda action, group, user: answers[user.account_name])
        outcome = apply_changes(self.directory, self.group, '(cn=*)', [self.john, self.sam], [self.tom],
                                confirm=confirm)
        self.assertEqual(confirm.call_count, 3)
        self.assertEqual(outcome.skipped, 1)
        self.assertNotIn(('add', 'role-x', 'john'), self.directory.mutations)

    def test_confirmation_in_dry_run(self):
        confirm = Mock(return_value=True)
        client = Mock()
        apply_changes(client, self.group, '(cn=*)', [self.john], [], dry_run=True, confirm=confirm)
        confirm.assert_called_once_with(ACTION_ADD, self.group, self.john)
        client.add_group_member.assert_not_called()

    def test_no_records_without_emit(self):
        outcome = apply_changes(self.directory, self.group, '(cn=*)', [self.john], [])
        self.assertEqual(outcome.records, [])

    def test_mutation_error_type(self):
        client = Mock()
        client.remove_group_member.side_effect = DirectoryMutationError("noSuchAttribute")
        outcome = apply_changes(client, self.group, '(cn=*)', [], [self.tom])
        self.assertEqual(outcome.failed, 1)
        self.assertEqual(outcome.removed, 0)


class TestReconcileGroup(unittest.TestCase):
    """Test cases for reconcile_group, including the sales department scenario."""

    def setUp(self):
        self.settings = make_settings()
        self.john = make_user('john.doe', 'g-1', department='sales')
        self.sam = make_user('sam.smith', 'g-2', department='sales')
        self.tom = make_user('tom.tonkins', 'g-3', department='support')
        self.group = make_group('role-department-sales', query="department -eq 'sales'")
        self.directory = FakeDirectory(
            users=[self.john, self.sam, self.tom],
            groups=[self.group],
            members={self.group.dn: {'g-3'}},
            query_results={'(department=sales)': ['g-1', 'g-2']},
        )
        self.records = []

    def test_sales_scenario(self):
        result = reconcile_group(self.directory, self.group, self.settings, emit=self.records.append)
        self.assertEqual(result.status, STATUS_OK)
        self.assertEqual(result.stage, 'done')
        self.assertEqual((result.to_add, result.to_remove), (2, 1))
        self.assertEqual(
            [(r.user, r.action) for r in self.records],
            [('john.doe', 'Add'), ('sam.smith', 'Add'), ('tom.tonkins', 'Remove')]
        )
        self.assertTrue(all(r.query == "department -eq 'sales'" for r in self.records))
        self.assertEqual(self.directory.member_ids(self.group), {'g-1', 'g-2'})
        self.assertGreaterEqual(result.elapsed_seconds, 0)

    def test_second_run_is_idempotent(self):
        reconcile_group(self.directory, self.group, self.settings)
        self.directory.mutations.clear()
        result = reconcile_group(self.directory, self.group, self.settings, emit=self.records.append)
        self.assertEqual((result.to_add, result.to_remove), (0, 0))
        self.assertEqual(self.directory.mutations, [])
        self.assertEqual(self.records, [])

    def test_dry_run_matches_real_run(self):
        dry_records = []
        dry_result = reconcile_group(self.directory, self.group, make_settings(dry_run=True),
                                     emit=dry_records.append)
        self.assertEqual(self.directory.mutations, [])
        self.assertEqual(self.directory.member_ids(self.group), {'g-3'})

        real_result = reconcile_group(self.directory, self.group, self.settings, emit=self.records.append)
        self.assertEqual(dry_records, self.records)
        self.assertEqual((dry_result.to_add, dry_result.to_remove), (real_result.to_add, real_result.to_remove))

    def test_secondary_filter_and_scope_override(self):
        berlin = make_user('anna', 'g-4', department='sales', office='Berlin')
        self.directory.users['g-4'] = berlin
        self.directory.query_results['(department=sales)'].append('g-4')
        group = make_group('sales-berlin', query="department -eq 'sales'",
                           secondary="office -eq 'Berlin'", scope='OU=Berlin,DC=example,DC=com')

        result = reconcile_group(self.directory, group, self.settings, known_attributes=['office', 'department'])

        self.assertEqual(result.status, STATUS_OK)
        self.assertEqual(self.directory.member_ids(group), {'g-4'})
        base, search_filter, attributes = self.directory.user_searches[-1]
        self.assertEqual(base, 'OU=Berlin,DC=example,DC=com')
        self.assertIn('(department=sales)', search_filter)
        self.assertEqual(attributes, ['office'])

    def test_malformed_primary_query_is_reported(self):
        group = make_group('broken', query="department -eq")
        result = reconcile_group(self.directory, group, self.settings)
        self.assertEqual(result.status, STATUS_ERROR)
        self.assertEqual(result.stage, 'resolve')
        self.assertFalse(result.succeeded)
        self.assertEqual(self.directory.mutations, [])

    def test_malformed_secondary_filter_is_reported(self):
        group = make_group('broken', query="department -eq 'sales'", secondary="office -eq 'x' -or")
        result = reconcile_group(self.directory, group, self.settings)
        self.assertEqual(result.status, STATUS_ERROR)
        self.assertEqual(result.stage, 'resolve')

    def test_directory_rejecting_filter_fails_fetch(self):
        group = make_group('raw', query='(department=sales')
        self.directory.failing_filters.add('(department=sales')
        result = reconcile_group(self.directory, group, self.settings)
        self.assertEqual(result.status, STATUS_ERROR)
        self.assertEqual(result.stage, 'fetch')
        self.assertIn('Invalid search filter', result.error)

    def test_mutation_failures_are_counted_not_fatal(self):
        self.directory.failing_removes.add('tom.tonkins')
        result = reconcile_group(self.directory, self.group, self.settings)
        self.assertEqual(result.status, STATUS_OK)
        self.assertEqual(result.failed_mutations, 1)
        self.assertEqual(result.added, 2)
        self.assertEqual(result.removed, 0)


if __name__ == '__main__':
    unittest.main()
