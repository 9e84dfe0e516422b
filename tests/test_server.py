"""Tests for the HTTP surface."""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest
import pytz
from fastapi.testclient import TestClient

from coachsync.database import DatabaseManager
from coachsync.server import app

from conftest import Factory, make_settings


@pytest.fixture
def server_settings(tmp_path):
    return make_settings(tmp_path, api_token='secret')


@pytest.fixture
def client(server_settings):
    app.state.settings = server_settings
    with TestClient(app) as test_client:
        test_client.headers['X-API-Token'] = 'secret'
        yield test_client


@pytest.fixture
def factory(server_settings, client):
    return Factory(DatabaseManager(server_settings))


def test_health(client):
    response = client.get('/health')
    assert response.status_code == 200
    body = response.json()
    assert body['ok'] is True
    assert set(body['queue']) == {'pending', 'processing', 'completed', 'failed'}


def test_management_routes_require_token(client):
    response = client.get(f'/calendar/connections/{uuid4()}', headers={'X-API-Token': 'wrong'})
    assert response.status_code == 401


def test_connect_returns_consent_url(client):
    coach_id = uuid4()
    response = client.get(f'/calendar/connect/google/{coach_id}')

    assert response.status_code == 200
    body = response.json()
    assert body['provider'] == 'google'
    assert body['authUrl'].startswith('https://accounts.google.com/')


def test_connect_unconfigured_provider(client):
    response = client.get(f'/calendar/connect/outlook/{uuid4()}')
    assert response.status_code == 503


def test_connect_unknown_provider(client):
    response = client.get(f'/calendar/connect/icloud/{uuid4()}')
    assert response.status_code == 422


def test_callback_redirects_to_frontend(client):
    response = client.get('/calendar/callback', params={'error': 'access_denied'}, follow_redirects=False)

    assert response.status_code == 302
    assert response.headers['location'] == 'https://app.example.com/coaches/calendar?error=oauth_error'


def test_callback_without_code(client):
    response = client.get('/calendar/callback', params={'state': '{}'}, follow_redirects=False)
    assert response.headers['location'].endswith('?error=missing_parameters')


def test_connections_never_expose_tokens(client, factory):
    coach_id = factory.coach()
    factory.connection(coach_id)

    response = client.get(f'/calendar/connections/{coach_id}')

    assert response.status_code == 200
    [connection] = response.json()['connections']
    assert connection['provider'] == 'google'
    assert 'access_token' not in connection
    assert 'refresh_token' not in connection


def test_update_settings(client, factory):
    connection_id = factory.connection(factory.coach())

    response = client.put(f'/calendar/connections/{connection_id}', json={'include_client_details': True})

    assert response.status_code == 200
    assert response.json()['connection']['include_client_details'] is True
    assert 'access_token' not in response.json()['connection']


def test_unknown_connection_is_404(client):
    connection_id = uuid4()
    assert client.put(f'/calendar/connections/{connection_id}', json={}).status_code == 404
    assert client.delete(f'/calendar/connections/{connection_id}').status_code == 404
    assert client.post(f'/calendar/connections/{connection_id}/sync').status_code == 404
    assert client.get(f'/calendar/connections/{connection_id}/sync-status').status_code == 404


def test_session_sync_without_session_is_400(client, factory):
    connection_id = factory.connection(factory.coach())
    response = client.post(f'/calendar/connections/{connection_id}/sync', json={'operation': 'update'})
    assert response.status_code == 400


def test_manual_create_of_synced_session_is_not_an_error(client, factory):
    coach_id = factory.coach()
    connection_id = factory.connection(coach_id)
    now = datetime.now(pytz.UTC)
    session_id = factory.session(coach_id, factory.client(), now + timedelta(days=3))
    factory.mapping(session_id, connection_id, 'evt-1', now)

    response = client.post(
        f'/calendar/connections/{connection_id}/sync',
        json={'operation': 'create', 'sessionId': str(session_id)}
    )

    assert response.status_code == 200
    body = response.json()
    assert body['success'] is True
    assert body['message'] == 'Session already synced'
    assert body['syncId'] is None


def test_disconnect(client, factory):
    connection_id = factory.connection(factory.coach())

    response = client.delete(f'/calendar/connections/{connection_id}')

    assert response.status_code == 200
    connection = factory.get_connection(connection_id)
    assert connection.is_active is False
    assert connection.access_token is None
