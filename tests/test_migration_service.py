"""Tests for MigrationService and MigrationLock."""

import os
import unittest
from unittest.mock import Mock, patch

import pytest

from migration.errors import (
    DisconnectionError,
    MigrationCancelledError,
    MigrationErrorKind,
    MigrationInProgressError,
    ValidationError,
)
from migration.records import (
    ERROR_KIND_INTERRUPTED,
    STATUS_DONE,
    STATUS_ERROR,
    MigrationRecord,
    MigrationRecordStore,
)
from migration.service import MigrationLock, MigrationService
from storage.models import PhysicalDisk, PoolStatus, ReplacementPair

TB = 1000 ** 4


def status(*members, resilvering=False, replacing=None):
    return PoolStatus(
        pool_name='homePool',
        member_drive_ids=tuple(members),
        is_resilvering=resilvering,
        active_replacement=ReplacementPair(*replacing) if replacing else None,
    )


def disk_lookup(sizes):
    disks = Mock()
    disks.get_physical_disk_by_id.side_effect = (
        lambda drive_id: PhysicalDisk(id=drive_id, capacity_bytes=sizes[drive_id])
        if drive_id in sizes else None
    )
    return disks


class TestMigrationLock:

    def test_acquire_and_release(self, tmp_path):
        lock = MigrationLock(str(tmp_path / 'migration.lock'))

        lock.acquire()
        assert lock.holder_pid() == os.getpid()
        assert lock.is_held()

        lock.release()
        assert not lock.is_held()
        assert lock.holder_pid() is None

    def test_second_holder_is_refused(self, tmp_path):
        first = MigrationLock(str(tmp_path / 'migration.lock'))
        second = MigrationLock(str(tmp_path / 'migration.lock'))
        first.acquire()

        with pytest.raises(MigrationInProgressError) as exc_info:
            second.acquire()

        assert exc_info.value.kind == MigrationErrorKind.IN_PROGRESS
        assert second.is_held()
        first.release()

    def test_released_lock_can_be_taken_again(self, tmp_path):
        first = MigrationLock(str(tmp_path / 'migration.lock'))
        second = MigrationLock(str(tmp_path / 'migration.lock'))

        first.acquire()
        first.release()
        second.acquire()

        assert second.holder_pid() == os.getpid()
        second.release()

    def test_stale_pid_does_not_let_two_holders_in(self, tmp_path):
        path = tmp_path / 'migration.lock'
        path.write_text('999999')
        first = MigrationLock(str(path))
        second = MigrationLock(str(path))

        with patch('migration.service.psutil.pid_exists', return_value=False):
            assert second.holder_pid() is None
            first.acquire()
            with pytest.raises(MigrationInProgressError):
                second.acquire()

        first.release()

    def test_unlocked_file_with_pid_is_not_held(self, tmp_path):
        path = tmp_path / 'migration.lock'
        path.write_text('4242')
        lock = MigrationLock(str(path))

        assert not lock.is_held()
        lock.acquire()

        assert path.read_text() == str(os.getpid())
        lock.release()

    def test_release_without_acquire_keeps_file(self, tmp_path):
        path = tmp_path / 'migration.lock'
        path.write_text('4242')

        MigrationLock(str(path)).release()

        assert path.read_text() == '4242'


class TestMigrationServiceRun(unittest.TestCase):

    def setUp(self):
        import tempfile
        import shutil
        self.state_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.state_dir, ignore_errors=True)

        self.inventory = Mock()
        self.mutator = Mock()
        self.maintenance = Mock()
        self.disks = disk_lookup({'disk-A': TB, 'disk-B': TB, 'disk-C': 2 * TB, 'disk-D': 2 * TB})
        self.store = MigrationRecordStore(self.state_dir)
        self.lock = MigrationLock(os.path.join(self.state_dir, 'migration.lock'))
        self.service = MigrationService(
            pool_name='homePool',
            inventory=self.inventory,
            mutator=self.mutator,
            disks=self.disks,
            maintenance=self.maintenance,
            store=self.store,
            lock=self.lock,
            poll_interval_seconds=0,
        )

    def test_successful_run_is_recorded(self):
        self.inventory.get_pool_status.side_effect = [
            status('disk-A', 'other'),
            status('disk-A', 'other'),
            status('disk-C', 'other'),
        ]

        result = self.service.run(['disk-A'], ['disk-C'], maintenance=True)

        self.assertTrue(result.success)
        record = self.store.get_latest()
        self.assertEqual(record.status, STATUS_DONE)
        self.assertTrue(record.maintenance)
        self.assertEqual(record.committed_stages, ['AutoExpandStage', 'DriveReplaceStage'])
        self.assertFalse(self.service.is_running())
        self.assertFalse(self.lock.is_held())

    def test_failed_run_is_recorded_and_raised(self):
        self.inventory.get_pool_status.side_effect = [
            status('disk-A', 'other'),
            status('disk-A', 'disk-C', 'other', resilvering=True, replacing=('disk-A', 'disk-Z')),
        ]

        with self.assertRaises(DisconnectionError):
            self.service.run(['disk-A'], ['disk-C'])

        record = self.store.get_latest()
        self.assertEqual(record.status, STATUS_ERROR)
        self.assertEqual(record.error_kind, 'disconnection')
        self.assertEqual(record.committed_stages, ['AutoExpandStage'])
        self.assertFalse(self.lock.is_held())

    def test_validation_failure_writes_no_record(self):
        self.inventory.get_pool_status.return_value = status('disk-A', 'other')

        with self.assertRaises(ValidationError):
            self.service.run(['disk-A'], ['disk-missing'])

        self.assertIsNone(self.store.get_latest())
        self.mutator.set_auto_expand.assert_not_called()
        self.assertFalse(self.lock.is_held())

    def test_second_migration_is_refused(self):
        other = MigrationLock(self.lock.path)
        other.acquire()
        self.addCleanup(other.release)

        with self.assertRaises(MigrationInProgressError):
            self.service.run(['disk-A'], ['disk-C'])

        self.inventory.get_pool_status.assert_not_called()
        self.assertTrue(self.service.is_running())

    def test_cancel_running_migration(self):
        def cancel_on_replace(*args):
            self.assertTrue(self.service.cancel())

        self.mutator.force_replace.side_effect = cancel_on_replace
        self.inventory.get_pool_status.return_value = status('disk-A', 'other')

        with self.assertRaises(MigrationCancelledError):
            self.service.run(['disk-A'], ['disk-C'])

        self.assertEqual(self.store.get_latest().error_kind, 'cancelled')
        self.assertFalse(self.service.cancel())

    def test_validate_does_not_lock_or_record(self):
        self.inventory.get_pool_status.return_value = status('disk-A', 'disk-B', 'other')

        self.service.validate(['disk-A', 'disk-B'], ['disk-C', 'disk-D'])

        self.assertIsNone(self.store.get_latest())
        self.assertFalse(self.lock.is_held())
        self.assertEqual(self.mutator.mock_calls, [])

    def test_status_and_dismiss(self):
        self.inventory.get_pool_status.side_effect = [
            status('disk-A', 'other'),
            status('disk-C', 'other'),
        ]
        self.service.run(['disk-A'], ['disk-C'])

        self.assertIsNotNone(self.service.get_status())
        self.assertEqual(self.service.dismiss(), 1)
        self.assertIsNone(self.service.get_status())
        self.assertEqual(len(self.service.get_history()), 1)

    def test_interrupted_run_is_reported_as_failed(self):
        self.store.save(MigrationRecord(sources=['disk-A'], targets=['disk-C'], kind='pool_replace'))

        self.assertFalse(self.service.is_running())
        record = self.service.get_status()

        self.assertEqual(record.status, STATUS_ERROR)
        self.assertEqual(record.error_kind, ERROR_KIND_INTERRUPTED)
        self.assertEqual(self.store.get_latest().status, STATUS_ERROR)
        self.assertEqual(self.service.dismiss(), 1)
        self.assertIsNone(self.service.get_status())

    def test_record_of_live_run_stays_running(self):
        self.store.save(MigrationRecord(sources=['disk-A'], targets=['disk-C'], kind='pool_replace'))
        other = MigrationLock(self.lock.path)
        other.acquire()
        self.addCleanup(other.release)

        self.assertTrue(self.service.get_status().is_running)
        self.assertEqual(self.service.dismiss(), 0)


class TestExpansionSizes:

    @pytest.fixture
    def service(self, tmp_path):
        return MigrationService(
            pool_name='homePool',
            inventory=Mock(),
            mutator=Mock(),
            disks=disk_lookup({'a': 4 * TB, 'b': 4 * TB, 'c': 8 * TB, 'd': 6 * TB}),
            maintenance=Mock(),
            store=MigrationRecordStore(str(tmp_path)),
            lock=MigrationLock(str(tmp_path / 'migration.lock')),
        )

    def test_mirror_uses_smallest_drive(self, service):
        assert service.calculate_expansion_size(['a', 'c'], 'mirror') == 4 * TB

    def test_raidz(self, service):
        assert service.calculate_expansion_size(['a', 'c', 'd'], 'raidz') == 2 * 4 * TB

    def test_raidz2(self, service):
        assert service.calculate_expansion_size(['a', 'b', 'c', 'd'], 'raidz2') == 2 * 4 * TB

    def test_too_few_drives(self, service):
        with pytest.raises(ValidationError):
            service.calculate_expansion_size(['a', 'b'], 'raidz')

    def test_unknown_layout(self, service):
        with pytest.raises(ValueError):
            service.calculate_expansion_size(['a', 'b'], 'stripe')

    def test_disconnected_drive(self, service):
        with pytest.raises(ValidationError):
            service.calculate_expansion_size(['a', 'missing'], 'mirror')

    @pytest.mark.parametrize('drives,layouts', [
        (['a', 'b'], ['mirror']),
        (['a', 'b', 'c'], ['mirror', 'raidz']),
        (['a', 'b', 'c', 'd'], ['mirror', 'raidz', 'raidz2']),
    ])
    def test_all_sizes_by_drive_count(self, service, drives, layouts):
        assert sorted(service.calculate_all_expansion_sizes(drives)) == layouts
