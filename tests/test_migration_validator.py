"""Unit tests for MigrationValidator."""

import unittest
from unittest.mock import Mock

import pytest

from migration.errors import MigrationErrorKind, ValidationError
from migration.validator import (
    MigrationValidator,
    drives_left_to_migrate,
    unprocessed_destinations,
    unprocessed_sources,
)
from storage.models import PhysicalDisk, PoolStatus

TB = 1000 ** 4


def make_pool(*members, resilvering=False):
    return PoolStatus(pool_name='homePool', member_drive_ids=tuple(members), is_resilvering=resilvering)


def make_disks(sizes, detached=()):
    """DiskLookup mock answering from a {drive_id: capacity} mapping."""
    def lookup(drive_id):
        if drive_id not in sizes:
            return None
        return PhysicalDisk(id=drive_id, capacity_bytes=sizes[drive_id], attached=drive_id not in detached)

    disks = Mock()
    disks.get_physical_disk_by_id.side_effect = lookup
    return disks


class TestUnprocessedDrives(unittest.TestCase):

    def test_sources_still_in_pool(self):
        pool = make_pool('A', 'B', 'X')
        self.assertEqual(unprocessed_sources(['A', 'B', 'C'], pool), ['A', 'B'])

    def test_destinations_not_in_pool(self):
        pool = make_pool('A', 'X')
        self.assertEqual(unprocessed_destinations(['X', 'Y'], pool), ['Y'])

    def test_order_follows_arguments(self):
        pool = make_pool('B', 'A')
        self.assertEqual(unprocessed_sources(['A', 'B'], pool), ['A', 'B'])

    def test_drives_left_to_migrate(self):
        self.assertTrue(drives_left_to_migrate(['X'], make_pool('A')))
        self.assertFalse(drives_left_to_migrate(['X'], make_pool('X')))


class TestMigrationValidator(unittest.TestCase):
    """Validation against a pool snapshot and attached disks."""

    def setUp(self):
        self.disks = make_disks({'A': 2 * TB, 'B': 2 * TB, 'X': 4 * TB, 'Y': 4 * TB})
        self.validator = MigrationValidator(self.disks)

    def test_valid_mapping_passes(self):
        self.validator.validate(['A', 'B'], ['X', 'Y'], make_pool('A', 'B'))

    def test_equal_capacity_is_accepted(self):
        validator = MigrationValidator(make_disks({'A': TB, 'X': TB}))
        validator.validate(['A'], ['X'], make_pool('A'))

    def test_count_mismatch_fails(self):
        with self.assertRaises(ValidationError) as ctx:
            self.validator.validate(['A', 'B'], ['X'], make_pool('A', 'B'))
        self.assertEqual(ctx.exception.kind, MigrationErrorKind.VALIDATION)

    def test_partially_processed_mapping_passes(self):
        # A was already replaced by X
        self.validator.validate(['A', 'B'], ['X', 'Y'], make_pool('X', 'B'))

    def test_fully_processed_mapping_passes(self):
        self.validator.validate(['A', 'B'], ['X', 'Y'], make_pool('X', 'Y'))

    def test_unprocessed_counts_mismatch_fails(self):
        # A is gone from the pool but neither destination joined it
        with self.assertRaises(ValidationError):
            self.validator.validate(['A', 'B'], ['X', 'Y'], make_pool('B', 'Z'))

    def test_detached_destination_fails(self):
        validator = MigrationValidator(make_disks({'A': TB, 'X': TB}, detached={'X'}))
        with self.assertRaises(ValidationError):
            validator.validate(['A'], ['X'], make_pool('A'))

    def test_unknown_destination_fails(self):
        with self.assertRaises(ValidationError):
            self.validator.validate(['A'], ['missing'], make_pool('A'))

    def test_processed_destination_must_still_be_attached(self):
        validator = MigrationValidator(make_disks({'B': TB, 'X': TB, 'Y': TB}, detached={'X'}))
        with self.assertRaises(ValidationError):
            validator.validate(['A', 'B'], ['X', 'Y'], make_pool('X', 'B'))

    def test_smaller_destination_fails(self):
        validator = MigrationValidator(make_disks({'A': 4 * TB, 'X': 2 * TB}))
        with self.assertRaises(ValidationError) as ctx:
            validator.validate(['A'], ['X'], make_pool('A'))
        self.assertIn('smaller capacity', str(ctx.exception))

    def test_destination_must_fit_every_unprocessed_source(self):
        # X fits A but not B; pairing order is not fixed, so this is rejected
        validator = MigrationValidator(make_disks({'A': TB, 'B': 3 * TB, 'X': 2 * TB, 'Y': 4 * TB}))
        with self.assertRaises(ValidationError):
            validator.validate(['A', 'B'], ['X', 'Y'], make_pool('A', 'B'))

    def test_processed_source_size_is_ignored(self):
        # A (large) was already replaced; only B matters now
        validator = MigrationValidator(make_disks({'B': TB, 'X': 8 * TB, 'Y': TB}))
        validator.validate(['A', 'B'], ['X', 'Y'], make_pool('X', 'B'))

    def test_missing_unprocessed_source_fails(self):
        validator = MigrationValidator(make_disks({'X': TB}))
        with self.assertRaises(ValidationError):
            validator.validate(['A'], ['X'], make_pool('A'))

    def test_duplicates_fail(self):
        with self.assertRaises(ValidationError):
            self.validator.validate(['A', 'A'], ['X', 'Y'], make_pool('A'))
        with self.assertRaises(ValidationError):
            self.validator.validate(['A', 'B'], ['X', 'X'], make_pool('A', 'B'))

    def test_source_and_destination_overlap_fails(self):
        with self.assertRaises(ValidationError):
            self.validator.validate(['A', 'B'], ['B', 'X'], make_pool('A', 'B'))

    def test_disks_are_queried_fresh(self):
        self.validator.validate(['A'], ['X'], make_pool('A'))
        self.validator.validate(['A'], ['X'], make_pool('A'))

        calls = [c.args[0] for c in self.disks.get_physical_disk_by_id.call_args_list]
        self.assertEqual(calls.count('X'), 2)


class TestFindDetached:

    def test_reports_missing_and_detached(self):
        validator = MigrationValidator(make_disks({'A': TB, 'B': TB}, detached={'B'}))

        assert validator.find_detached(['A', 'B', 'C']) == ['B', 'C']

    def test_all_attached(self):
        validator = MigrationValidator(make_disks({'A': TB}))

        assert validator.find_detached(['A']) == []

    @pytest.mark.parametrize('sources,destinations,members', [
        (['A'], ['X'], ('A',)),
        (['A', 'B'], ['X', 'Y'], ('X', 'B')),
        (['A', 'B'], ['X', 'Y'], ('X', 'Y')),
    ])
    def test_passes_for_consistent_states(self, sources, destinations, members):
        validator = MigrationValidator(make_disks({'A': TB, 'B': TB, 'X': TB, 'Y': TB}))

        validator.validate(sources, destinations, make_pool(*members))
