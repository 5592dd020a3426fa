"""Tests for /api/import endpoints."""
from conftest import finished


class TestStartImport:
    """POST /api/import launches a background import."""

    def test_returns_202_with_job_id(self, client):
        resp = client.post('/api/import', json={'source': 'connections_export'})
        assert resp.status_code == 202
        data = resp.get_json()
        assert data['jobId'] == data['job_id']
        assert data['status'] == 'queued'
        assert data['automation_id'] == 'agent-connections'

    def test_explicit_automation_id(self, client, pb_client, scheduler):
        resp = client.post('/api/import', json={'automationId': 'agent-9', 'parameters': {'numberOfProfiles': 10}})
        assert resp.status_code == 202
        scheduler.run_next()
        assert pb_client.launch_calls == [('agent-9', {'numberOfProfiles': 10})]

    def test_unknown_source_400(self, client):
        resp = client.post('/api/import', json={'source': 'facebook'})
        assert resp.status_code == 400
        assert 'Unknown import source' in resp.get_json()['error']

    def test_missing_source_400(self, client):
        assert client.post('/api/import', json={}).status_code == 400

    def test_bad_parameters_400(self, client):
        resp = client.post('/api/import', json={'automation_id': 'a', 'parameters': ['x']})
        assert resp.status_code == 400


class TestImportStatus:
    """GET /api/import/status/<job_id> reflects the poller's progress."""

    def test_unknown_job_404(self, client):
        resp = client.get('/api/import/status/does-not-exist')
        assert resp.status_code == 404
        assert 'not found' in resp.get_json()['error']

    def test_status_follows_job(self, client, scheduler):
        job_id = client.post('/api/import', json={'automation_id': 'agent-1'}).get_json()['jobId']

        assert client.get(f'/api/import/status/{job_id}').get_json()['status'] == 'queued'

        scheduler.run_next()  # launch
        scheduler.run_next()  # first poll
        data = client.get(f'/api/import/status/{job_id}').get_json()
        assert data['status'] == 'running'
        assert data['container_id'] == 'c-123'
        assert 0 < data['progress'] < 100

    def test_completed_import_with_anomaly(self, client, pb_client, scheduler):
        pb_client.statuses = [finished(output='Process finished')]
        job_id = client.post('/api/import', json={'automation_id': 'agent-1'}).get_json()['jobId']
        scheduler.run_until_idle()

        data = client.get(f'/api/import/status/{job_id}').get_json()
        assert data['status'] == 'completed'
        assert data['anomaly'] is True
        assert data['result'] == {'saved_count': 0, 'skipped_count': 0, 'malformed_count': 0}


class TestCancelAndList:

    def test_cancel(self, client, scheduler):
        job_id = client.post('/api/import', json={'automation_id': 'agent-1'}).get_json()['jobId']
        scheduler.run_next()

        resp = client.post(f'/api/import/{job_id}/cancel')
        assert resp.status_code == 200
        assert resp.get_json()['status'] == 'error'
        assert resp.get_json()['message'] == 'cancelled'

        # idempotent
        again = client.post(f'/api/import/{job_id}/cancel')
        assert again.status_code == 200
        assert again.get_json()['message'] == 'cancelled'

    def test_cancel_unknown_404(self, client):
        assert client.post('/api/import/nope/cancel').status_code == 404

    def test_list_recent(self, client):
        client.post('/api/import', json={'automation_id': 'a'})
        client.post('/api/import', json={'automation_id': 'b'})
        jobs = client.get('/api/import').get_json()
        assert len(jobs) == 2
