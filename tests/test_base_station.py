from logging.handlers import RotatingFileHandler

import pytest
import yaml

from base_station import RTKBaseStation
from ntrip_request import ConfigurationError
from ntrip_server import NTRIPServer, PeerClosed
from outbound_queue import QueueFullError


BASE_CONFIG = {
    'serial': {'port': '/dev/null-receiver', 'baudrate': 115200},
    'ntrip': {
        'host': 'caster.example.com',
        'port': 2101,
        'mountpoint': 'BASE',
        'username': 'base',
        'password': 'secret',
        'queue': {'capacity': 16, 'overflow': 'error'},
        'reconnect': {'enabled': True, 'interval': 10},
    },
    'station': {'identifier': 'Test Base', 'latitude': 51.5, 'longitude': -0.1},
    'logging': {'level': 'WARNING', 'console': False},
}


class FakeUploader:
    def __init__(self, running=False, run_result=True, queue_full=False):
        self.running = running
        self.run_result = run_result
        self.queue_full = queue_full
        self.run_calls = 0
        self.queued = []
        self.last_error = None

    def is_running(self):
        return self.running

    def run(self):
        self.run_calls += 1
        self.running = self.run_result
        return self.run_result

    def send_rtcm(self, data):
        if self.queue_full:
            raise QueueFullError("full")
        if not self.running:
            return False
        self.queued.append(data)
        return True


@pytest.fixture
def make_station(tmp_path, restore_logging):
    def factory(**overrides):
        config = yaml.safe_load(yaml.safe_dump(BASE_CONFIG))
        for section, values in overrides.items():
            config.setdefault(section, {}).update(values)
        path = tmp_path / 'config.yaml'
        path.write_text(yaml.safe_dump(config))
        return RTKBaseStation(str(path))

    return factory


def test_missing_config_exits(tmp_path, restore_logging):
    with pytest.raises(SystemExit):
        RTKBaseStation(str(tmp_path / 'missing.yaml'))


def test_create_ntrip_server(make_station):
    station = make_station()
    server = station.create_ntrip_server()

    assert isinstance(server, NTRIPServer)
    assert server.params.caster_host == 'caster.example.com'
    assert server.params.mountpoint == 'BASE'
    assert server.params.ntrip_str.startswith('STR;BASE;Test Base;')
    assert server.queue.capacity == 16
    assert server.queue.overflow == 'error'
    assert server.on_disconnect == station._on_ntrip_disconnect


def test_invalid_queue_config(make_station):
    station = make_station(ntrip={'queue': {'overflow': 'sometimes'}})
    with pytest.raises(ConfigurationError):
        station.create_ntrip_server()


def test_start_rejects_invalid_ntrip_config(make_station):
    station = make_station(ntrip={'password': 'x' * 60})
    assert station.start() is False
    assert station.gps is None


def test_rtcm_data_forwarded(make_station):
    station = make_station()
    station.ntrip = FakeUploader(running=True)

    station._handle_rtcm_data(b'\xd3\x00\x00abc')

    assert station.ntrip.queued == [b'\xd3\x00\x00abc']
    assert station.stats['rtcm_messages'] == 1
    assert station.stats['bytes_queued'] == 6


def test_rtcm_data_not_counted_when_disconnected(make_station):
    station = make_station()
    station.ntrip = FakeUploader(running=False)
    station._handle_rtcm_data(b'data')
    assert station.stats['rtcm_messages'] == 0


def test_rtcm_data_queue_full(make_station):
    station = make_station()
    station.ntrip = FakeUploader(running=True, queue_full=True)
    station._handle_rtcm_data(b'data')
    assert station.stats['rtcm_messages'] == 0


def test_disconnect_counted(make_station):
    station = make_station()
    station._on_ntrip_disconnect(PeerClosed("Remote socket closed"))
    assert station.stats['disconnects'] == 1


def test_reconnect_waits_for_interval(make_station):
    station = make_station()
    station.ntrip = FakeUploader(running=False)
    station.last_connect_attempt = 1000.0

    assert station.check_connection(now=1005.0) is False
    assert station.ntrip.run_calls == 0

    assert station.check_connection(now=1010.0) is True
    assert station.ntrip.run_calls == 1
    assert station.last_connect_attempt == 1010.0


def test_reconnect_disabled(make_station):
    station = make_station(ntrip={'reconnect': {'enabled': False}})
    station.ntrip = FakeUploader(running=False)

    assert station.check_connection(now=1e9) is False
    assert station.ntrip.run_calls == 0


def test_running_uploader_left_alone(make_station):
    station = make_station()
    station.ntrip = FakeUploader(running=True)

    assert station.check_connection(now=1e9) is True
    assert station.ntrip.run_calls == 0


def test_logging_to_rotating_file(make_station, tmp_path):
    log_file = tmp_path / 'logs' / 'base.log'
    station = make_station(logging={'console': True, 'file': str(log_file), 'backup_count': 2})

    handlers = station.logger.handlers
    assert len(handlers) == 2
    rotating = [h for h in handlers if isinstance(h, RotatingFileHandler)]
    assert len(rotating) == 1
    assert rotating[0].backupCount == 2
    assert log_file.parent.is_dir()


def test_disconnect_then_status_loop_reconnects(make_station):
    station = make_station()
    station.ntrip = FakeUploader(running=True)
    station.last_connect_attempt = 1000.0

    station.ntrip.running = False
    station._on_ntrip_disconnect(PeerClosed("Remote socket closed"))

    assert station.stats['disconnects'] == 1
    assert station.ntrip.run_calls == 0
    assert station.check_connection(now=1010.0) is True
    assert station.ntrip.run_calls == 1
