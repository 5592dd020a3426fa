"""Tests for leadcrm.jobs.manager — job creation, poller ownership, notifications."""
import pytest
from unittest.mock import MagicMock, patch

from conftest import FakePhantomBusterClient, finished, running
from leadcrm.jobs.manager import ImportManager
from leadcrm.jobs.poller import PollerSettings
from leadcrm.jobs.tracker import COMPLETED, ERROR, QUEUED, JobNotFound, JobTracker
from leadcrm.services.lead_store import InsertResult


@pytest.fixture
def pb():
    return FakePhantomBusterClient(statuses=[running()])


@pytest.fixture
def manager(pb, scheduler, clock):
    return ImportManager(
        tracker=JobTracker(clock=clock),
        client_factory=lambda: pb,
        persist=MagicMock(return_value=InsertResult(True, 1)),
        scheduler=scheduler,
        settings=PollerSettings(interval=3, timeout=600, max_transient_retries=3, expected_duration=120),
        sources={'connections_export': 'agent-connections', 'search_export': ''},
        clock=clock,
    )


class TestLaunchImport:

    def test_returns_queued_job(self, manager):
        job = manager.launch_import(source='connections_export')
        assert job.status == QUEUED
        assert job.automation_id == 'agent-connections'
        assert job.source == 'connections_export'
        assert manager.active_count() == 1

    def test_explicit_automation_id_wins(self, manager, pb, scheduler):
        manager.launch_import(source='connections_export', automation_id='agent-custom',
                              parameters={'spreadsheetUrl': 'x'})
        scheduler.run_next()
        assert pb.launch_calls == [('agent-custom', {'spreadsheetUrl': 'x'})]

    @pytest.mark.parametrize('kwargs', [
        {},
        {'source': 'unknown'},
        {'source': 'search_export'},  # configured without an automation id
    ])
    def test_rejects_unresolvable_requests(self, manager, kwargs):
        with pytest.raises(ValueError):
            manager.launch_import(**kwargs)
        assert manager.list_jobs() == []

    def test_jobs_poll_independently(self, manager, scheduler):
        first = manager.launch_import(automation_id='a')
        second = manager.launch_import(automation_id='b')
        manager.cancel(first.id)
        scheduler.run_next()
        scheduler.run_next()
        assert manager.get_status(first.id)['status'] == ERROR
        assert manager.get_status(second.id)['status'] == 'running'


class TestStatusAndCancel:

    def test_unknown_job(self, manager):
        with pytest.raises(JobNotFound):
            manager.get_status('nope')
        with pytest.raises(JobNotFound):
            manager.cancel('nope')

    def test_cancel_running_import(self, manager, scheduler):
        job = manager.launch_import(automation_id='agent-1')
        scheduler.run_next()
        cancelled = manager.cancel(job.id)
        assert cancelled.status == ERROR
        assert cancelled.message == 'cancelled'
        assert manager.active_count() == 0
        assert scheduler.pending == []

    def test_cancel_finished_import_changes_nothing(self, manager, pb, scheduler):
        pb.statuses = [finished(output='no url')]
        job = manager.launch_import(automation_id='agent-1')
        scheduler.run_until_idle()
        assert manager.cancel(job.id).status == COMPLETED

    def test_list_jobs(self, manager):
        manager.launch_import(automation_id='a')
        manager.launch_import(automation_id='b')
        jobs = manager.list_jobs(limit=10)
        assert {j['automation_id'] for j in jobs} == {'a', 'b'}

    def test_shutdown_cancels_everything(self, manager):
        manager.launch_import(automation_id='a')
        manager.launch_import(automation_id='b')
        manager.shutdown()
        assert manager.active_count() == 0
        assert all(j['status'] == ERROR for j in manager.list_jobs())


class TestNotifications:

    @patch('leadcrm.jobs.manager.notify_import_failed')
    @patch('leadcrm.jobs.manager.notify_import_complete')
    def test_completed_import_notifies(self, mock_complete, mock_failed, manager, pb, scheduler):
        pb.statuses = [finished(output='no url')]
        job = manager.launch_import(automation_id='agent-1')
        scheduler.run_until_idle()
        mock_complete.assert_called_once()
        assert mock_complete.call_args[0][0].id == job.id
        mock_failed.assert_not_called()

    @patch('leadcrm.jobs.manager.notify_import_failed')
    @patch('leadcrm.jobs.manager.notify_import_complete')
    def test_failed_import_notifies(self, mock_complete, mock_failed, manager, pb, scheduler):
        pb.statuses = [finished(exit_code=1, output='Error: bad cookie')]
        manager.launch_import(automation_id='agent-1')
        scheduler.run_until_idle()
        mock_failed.assert_called_once()
        mock_complete.assert_not_called()

    @patch('leadcrm.jobs.manager.notify_import_failed')
    def test_cancel_does_not_alert(self, mock_failed, manager):
        job = manager.launch_import(automation_id='agent-1')
        manager.cancel(job.id)
        mock_failed.assert_not_called()
