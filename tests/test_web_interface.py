import time

import pytest

from ntrip_request import ConnectionParameters
from ntrip_server import NTRIPServer
from web_interface import WebInterface


class FakeStation:
    def __init__(self):
        self.running = True
        self.gps = None
        self.ntrip = NTRIPServer(ConnectionParameters('caster.example.com', 2101, 'BASE',
                                                      username='base', password='secret'))
        self.stats = {
            'rtcm_messages': 120,
            'bytes_queued': 9000,
            'disconnects': 1,
            'start_time': time.time() - 60
        }
        self.config = {
            'serial': {'port': '/dev/ttyS0', 'baudrate': 115200},
            'ntrip': {'host': 'caster.example.com', 'port': 2101, 'mountpoint': 'BASE',
                      'username': 'base', 'password': 'secret'},
            'station': {'identifier': 'Test Base'}
        }


@pytest.fixture
def client():
    web = WebInterface(FakeStation())
    return web.app.test_client()


def test_status(client):
    response = client.get('/api/status')
    assert response.status_code == 200

    status = response.get_json()
    assert status['status'] == 'running'
    assert status['rtcm_messages'] == 120
    assert status['disconnects'] == 1
    assert status['message_rate'] > 0
    assert status['ntrip']['state'] == 'stopped'
    assert status['ntrip']['caster'] == 'caster.example.com:2101'
    assert status['receiver'] == {}


def test_config_hides_password(client):
    response = client.get('/api/config')
    assert response.status_code == 200

    config = response.get_json()
    assert config['ntrip']['mountpoint'] == 'BASE'
    assert 'password' not in config['ntrip']
    assert b'secret' not in response.data
