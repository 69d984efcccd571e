"""Tests for ZpoolReplaceMigration running both stages in a transaction."""

import unittest
from unittest.mock import Mock, call

import pytest

from migration.context import MigrationKind
from migration.errors import DisconnectionError, MutationError, ValidationError
from migration.stages import AutoExpandStage, DriveReplaceStage
from migration.validator import MigrationValidator
from migration.zpool_replace import ZpoolReplaceMigration, create_migration
from storage.models import PhysicalDisk, PoolStatus, ReplacementPair
from storage.zpool_manager import ZpoolCommandError

TB = 1000 ** 4


def status(*members, resilvering=False, replacing=None):
    return PoolStatus(
        pool_name='homePool',
        member_drive_ids=tuple(members),
        is_resilvering=resilvering,
        active_replacement=ReplacementPair(*replacing) if replacing else None,
    )


def attached_disks(*drive_ids, capacity=TB):
    disks = Mock()
    disks.get_physical_disk_by_id.side_effect = (
        lambda drive_id: PhysicalDisk(id=drive_id, capacity_bytes=capacity)
        if drive_id in drive_ids else None
    )
    return disks


class TestZpoolReplaceMigration(unittest.TestCase):

    def setUp(self):
        self.inventory = Mock()
        self.mutator = Mock()
        self.maintenance = Mock()
        self.disks = attached_disks('disk-A', 'disk-B', 'disk-C', 'disk-D')
        self.migration = ZpoolReplaceMigration(
            pool_name='homePool',
            inventory=self.inventory,
            mutator=self.mutator,
            validator=MigrationValidator(self.disks),
            maintenance=self.maintenance,
            poll_interval_seconds=0,
        )

    def test_example_scenario(self):
        self.inventory.get_pool_status.side_effect = [
            # pre-flight
            status('disk-A', 'disk-B', 'other'),
            # loop
            status('disk-A', 'disk-B', 'other'),
            status('disk-A', 'disk-C', 'disk-B', 'other', resilvering=True, replacing=('disk-A', 'disk-C')),
            status('disk-C', 'disk-B', 'other'),
            status('disk-C', 'disk-B', 'disk-D', 'other', resilvering=True, replacing=('disk-B', 'disk-D')),
            status('disk-C', 'disk-D', 'other'),
        ]
        sources, destinations = ['disk-A', 'disk-B'], ['disk-C', 'disk-D']

        self.migration.validate(sources, destinations)
        result = self.migration.run(self.migration.create_context(sources, destinations))

        self.assertTrue(result.success)
        self.assertEqual(self.mutator.force_replace.call_args_list, [
            call('homePool', 'disk-A', 'disk-C'),
            call('homePool', 'disk-B', 'disk-D'),
        ])
        self.assertEqual(result.committed_stage_names, ['AutoExpandStage', 'DriveReplaceStage'])

    def test_autoexpand_enabled_before_first_replace(self):
        self.inventory.get_pool_status.side_effect = [
            status('disk-A', 'other'),
            status('disk-C', 'other'),
        ]

        self.migration.run(self.migration.create_context(['disk-A'], ['disk-C']))

        names = [c[0] for c in self.mutator.mock_calls]
        self.assertEqual(names[0], 'set_auto_expand')
        self.assertLess(names.index('set_auto_expand'), names.index('force_replace'))
        self.assertEqual(self.mutator.set_auto_expand.call_args_list,
                         [call('homePool', True), call('homePool', False)])

    def test_disconnection_rolls_back_autoexpand(self):
        self.inventory.get_pool_status.return_value = status(
            'disk-A', 'disk-C', resilvering=True, replacing=('disk-A', 'disk-X'))

        result = self.migration.run(self.migration.create_context(['disk-A'], ['disk-C']))

        self.assertFalse(result.success)
        self.assertIsInstance(result.error, DisconnectionError)
        self.assertEqual(result.failed_stage, 'DriveReplaceStage')
        self.mutator.detach.assert_called_once_with('homePool', 'disk-X')
        # rollback of AutoExpandStage, then its cleanup
        self.assertEqual(self.mutator.set_auto_expand.call_args_list,
                         [call('homePool', True), call('homePool', False), call('homePool', False)])

    def test_autoexpand_failure_stops_before_replacing(self):
        self.mutator.set_auto_expand.side_effect = [ZpoolCommandError("denied"), None]

        result = self.migration.run(self.migration.create_context(['disk-A'], ['disk-C']))

        self.assertIsInstance(result.error, MutationError)
        self.assertEqual(result.failed_stage, 'AutoExpandStage')
        self.inventory.get_pool_status.assert_not_called()
        self.mutator.force_replace.assert_not_called()

    def test_maintenance_disabled_after_run(self):
        self.inventory.get_pool_status.side_effect = [
            status('disk-A', 'other'),
            status('disk-C', 'other'),
        ]
        context = self.migration.create_context(['disk-A'], ['disk-C'], maintenance_requested=True)

        self.migration.run(context)

        self.maintenance.enable_for_seconds.assert_called_once_with(300)
        self.maintenance.disable.assert_called_once_with()

    def test_create_stages_order(self):
        stages = self.migration.create_stages(self.migration.create_context(['disk-A'], ['disk-C']))

        self.assertIsInstance(stages[0], AutoExpandStage)
        self.assertIsInstance(stages[1], DriveReplaceStage)
        self.assertEqual(len(stages), 2)


class TestPreflightValidation:

    @pytest.fixture
    def migration(self):
        inventory = Mock()
        inventory.get_pool_status.return_value = status('disk-A', 'other')
        return ZpoolReplaceMigration(
            pool_name='homePool',
            inventory=inventory,
            mutator=Mock(),
            validator=MigrationValidator(attached_disks('disk-A', 'disk-C')),
            maintenance=Mock(),
        )

    def test_valid(self, migration):
        migration.validate(['disk-A'], ['disk-C'])

    def test_empty_lists_rejected(self, migration):
        with pytest.raises(ValidationError):
            migration.validate([], [])

    def test_count_mismatch_rejected(self, migration):
        with pytest.raises(ValidationError):
            migration.validate(['disk-A'], ['disk-C', 'disk-D'])

    def test_absent_source_rejected(self, migration):
        with pytest.raises(ValidationError):
            migration.validate(['disk-Z'], ['disk-C'])

    def test_status_failure_is_mutation_error(self, migration):
        migration.inventory.get_pool_status.side_effect = ZpoolCommandError("no pool")
        with pytest.raises(MutationError):
            migration.validate(['disk-A'], ['disk-C'])

    def test_validate_does_not_mutate(self, migration):
        migration.validate(['disk-A'], ['disk-C'])
        assert migration.mutator.mock_calls == []


class TestCreateMigration:

    def test_pool_replace(self):
        migration = create_migration(
            MigrationKind.POOL_REPLACE,
            pool_name='homePool', inventory=Mock(), mutator=Mock(),
            validator=Mock(), maintenance=Mock(),
        )
        assert isinstance(migration, ZpoolReplaceMigration)

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            create_migration('raid_rebuild', pool_name='homePool')
