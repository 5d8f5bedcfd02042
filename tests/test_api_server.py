"""
test_api_server.py
~~~~~~~~~~~~~~~~~~

Tests for the REST API, using the Flask test client and small synthetic
datasets in place of the digit archive.
"""

import pytest

from digitnet import api_server
from digitnet.network import Network
from conftest import make_separable


@pytest.fixture
def client(monkeypatch):
    """Test client with synthetic data and a clean in-memory registry."""
    monkeypatch.setattr(api_server, 'training_data', make_separable(20, seed=1))
    monkeypatch.setattr(api_server, 'test_data', make_separable(10, seed=2))
    monkeypatch.setattr(api_server, 'active_networks', {})
    monkeypatch.setattr(api_server, 'training_jobs', {})

    # Run background training inline so results are visible to the test
    monkeypatch.setattr(
        api_server.socketio,
        'start_background_task',
        lambda target, *args, **kwargs: target(*args, **kwargs)
    )

    api_server.app.config['TESTING'] = True
    with api_server.app.test_client() as test_client:
        yield test_client


def create(client, **body):
    body.setdefault('layer_sizes', [4, 3, 2])
    response = client.post('/api/networks', json=body)
    assert response.status_code == 201
    return response.get_json()['network_id']


@pytest.mark.unit
class TestNetworkEndpoints:
    """Test creating, listing and deleting networks."""

    def test_status(self, client):
        response = client.get('/api/status')

        assert response.status_code == 200
        body = response.get_json()
        assert body['status'] == 'online'
        assert body['data_loaded'] is True
        assert body['active_networks'] == 0

    def test_create_network(self, client):
        response = client.post('/api/networks', json={
            'layer_sizes': [4, 3, 2], 'learning_rate': 0.5, 'seed': 3
        })

        assert response.status_code == 201
        body = response.get_json()
        assert body['architecture'] == [4, 3, 2]
        assert body['learning_rate'] == 0.5
        assert body['network_id'] in api_server.active_networks

    def test_create_default_architecture(self, client):
        response = client.post('/api/networks')
        assert response.status_code == 201
        assert response.get_json()['architecture'] == [784, 200, 10]

    @pytest.mark.parametrize('body', [
        {'layer_sizes': [4, 2]},
        {'layer_sizes': [4, 3, 3, 2]},
        {'layer_sizes': [4, 0, 2]},
        {'layer_sizes': 'big'},
        {'learning_rate': -1},
        {'learning_rate': 0},
        {'learning_rate': float('nan')},
        {'learning_rate': float('inf')},
        {'learning_rate': True},
        {'layer_sizes': [4, True, 2]},
        {'seed': False},
        {'seed': 'abc'},
    ])
    def test_create_rejects_invalid_body(self, client, body):
        response = client.post('/api/networks', json=body)
        assert response.status_code == 400
        assert 'error' in response.get_json()

    def test_list_and_get(self, client):
        network_id = create(client)

        listed = client.get('/api/networks').get_json()['networks']
        assert [n['network_id'] for n in listed] == [network_id]

        response = client.get(f'/api/networks/{network_id}')
        assert response.status_code == 200
        assert response.get_json()['trained'] is False

    def test_get_unknown(self, client):
        assert client.get('/api/networks/nope').status_code == 404

    def test_delete(self, client):
        network_id = create(client)

        response = client.delete(f'/api/networks/{network_id}')
        assert response.status_code == 200
        assert network_id not in api_server.active_networks

        response = client.delete(f'/api/networks/{network_id}')
        assert response.status_code == 404


@pytest.mark.unit
class TestClassifyEndpoint:
    """Test classifying a single feature vector."""

    def test_classify(self, client):
        network_id = create(client, seed=1)

        response = client.post(f'/api/networks/{network_id}/classify',
                               json={'features': [1.0, 1.0, 0.0, 0.0]})

        assert response.status_code == 200
        body = response.get_json()
        assert body['predicted_class'] in (0, 1)
        assert len(body['network_output']) == 2
        assert all(0.0 < v < 1.0 for v in body['network_output'])

    @pytest.mark.parametrize('features', [
        [1.0, 2.0], 'abc', None, [1, 2, 'x', 4], [1, 2, True, 4],
        [0.0, float('nan'), 0.0, 0.0],
    ])
    def test_classify_rejects_bad_features(self, client, features):
        network_id = create(client)
        response = client.post(f'/api/networks/{network_id}/classify',
                               json={'features': features})
        assert response.status_code == 400

    def test_classify_unknown_network(self, client):
        response = client.post('/api/networks/nope/classify',
                               json={'features': [0, 0, 0, 0]})
        assert response.status_code == 404


@pytest.mark.integration
class TestTrainingEndpoints:
    """Test background training jobs."""

    def test_train_network(self, client):
        network_id = create(client, seed=4)

        response = client.post(f'/api/networks/{network_id}/train',
                               json={'epochs': 3})
        assert response.status_code == 202
        job_id = response.get_json()['job_id']

        job = client.get(f'/api/training/{job_id}').get_json()
        assert job['status'] == 'completed'
        assert job['progress'] == 100

        info = client.get(f'/api/networks/{network_id}').get_json()
        assert info['trained'] is True
        assert info['training'] is False
        assert len(info['accuracy_history']) == 3
        assert info['accuracy'] == info['accuracy_history'][-1]

    def test_train_unknown_network(self, client):
        response = client.post('/api/networks/nope/train', json={'epochs': 1})
        assert response.status_code == 404

    @pytest.mark.parametrize('epochs', [0, -2, 1.5, 'ten', True])
    def test_train_rejects_bad_epochs(self, client, epochs):
        network_id = create(client)
        response = client.post(f'/api/networks/{network_id}/train',
                               json={'epochs': epochs})
        assert response.status_code == 400

    def test_train_rejects_mismatched_network(self, client):
        network_id = create(client, layer_sizes=[5, 3, 2])
        response = client.post(f'/api/networks/{network_id}/train',
                               json={'epochs': 1})
        assert response.status_code == 400

    def test_train_rejects_network_in_training(self, client):
        network_id = create(client)
        api_server.active_networks[network_id]['training'] = True

        response = client.post(f'/api/networks/{network_id}/train',
                               json={'epochs': 1})
        assert response.status_code == 409

    def test_train_without_data(self, client, monkeypatch):
        monkeypatch.setattr(api_server, 'training_data', None)
        network_id = create(client)

        response = client.post(f'/api/networks/{network_id}/train',
                               json={'epochs': 1})
        assert response.status_code == 503

    def test_unknown_job(self, client):
        assert client.get('/api/training/nope').status_code == 404


@pytest.mark.unit
class TestExampleEndpoints:
    """Test the successful / unsuccessful example lookups."""

    def test_examples_on_single_instance(self, client, monkeypatch):
        single = make_separable(1, seed=3)
        monkeypatch.setattr(api_server, 'test_data', single)
        network_id = create(client, seed=2)

        net = api_server.active_networks[network_id]['network']
        features, targets = single[0]
        correct = (net.classify(features)
                   == Network.target_classification(targets))
        hit, miss = (('successful', 'unsuccessful') if correct
                     else ('unsuccessful', 'successful'))

        response = client.get(f'/api/networks/{network_id}/{hit}_example')
        assert response.status_code == 200
        body = response.get_json()
        assert body['example_index'] == 0
        assert body['image_data']
        assert len(body['network_output']) == 2

        response = client.get(f'/api/networks/{network_id}/{miss}_example')
        assert response.status_code == 404

    def test_example_without_test_data(self, client, monkeypatch):
        monkeypatch.setattr(api_server, 'test_data', None)
        network_id = create(client)

        response = client.get(f'/api/networks/{network_id}/successful_example')
        assert response.status_code == 503

    def test_example_unknown_network(self, client):
        response = client.get('/api/networks/nope/unsuccessful_example')
        assert response.status_code == 404


@pytest.mark.unit
class TestJobCleanup:
    """Test pruning of finished training jobs."""

    def test_removes_only_finished_jobs(self, client):
        api_server.training_jobs.update({
            'done': {'status': 'completed'},
            'broken': {'status': 'failed'},
            'queued': {'status': 'pending'},
            'running': {'status': 'training'},
        })

        removed = api_server.cleanup_finished_training_jobs()

        assert removed == 2
        assert sorted(api_server.training_jobs) == ['queued', 'running']

    def test_finished_job_is_no_longer_reported(self, client):
        network_id = create(client, seed=4)
        job_id = client.post(f'/api/networks/{network_id}/train',
                             json={'epochs': 1}).get_json()['job_id']

        api_server.cleanup_finished_training_jobs()

        assert client.get(f'/api/training/{job_id}').status_code == 404

    def test_cleanup_task_starts_once(self, monkeypatch):
        spawned = []
        monkeypatch.setattr(api_server, '_cleanup_task_started', False)
        monkeypatch.setattr(api_server.gevent, 'spawn', spawned.append)

        api_server.start_cleanup_task()
        api_server.start_cleanup_task()

        assert spawned == [api_server.cleanup_training_jobs_task]
