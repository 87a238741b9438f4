#!/usr/bin/env python3
"""
Flask Web Interface for RTK Base Station Status
JSON endpoints reporting receiver and caster upload state
"""

from flask import Flask, jsonify
import logging
import time
from datetime import datetime, timedelta
from threading import Thread

logger = logging.getLogger(__name__)


class WebInterface:
    """Flask status API for base station monitoring"""

    def __init__(self, base_station, host='127.0.0.1', port=5000):
        """
        Initialize web interface

        Args:
            base_station: RTKBaseStation instance
            host: Interface to bind to
            port: Port number
        """
        self.base_station = base_station
        self.host = host
        self.port = port
        self.app = Flask(__name__)
        self.app.logger.setLevel(logging.WARNING)
        logging.getLogger('werkzeug').setLevel(logging.ERROR)

        self._setup_routes()
        self.server_thread = None

    def _setup_routes(self):
        """Setup Flask routes"""

        @self.app.route('/api/status')
        def api_status():
            """Get current upload status"""
            try:
                return jsonify(self._get_stats())
            except Exception as e:
                logger.error(f"Error getting stats: {e}")
                return jsonify({'error': str(e)}), 500

        @self.app.route('/api/config')
        def api_config():
            """Get current configuration, credentials excluded"""
            try:
                return jsonify(self._get_config_info())
            except Exception as e:
                logger.error(f"Error getting config: {e}")
                return jsonify({'error': str(e)}), 500

    def _get_stats(self):
        """Get current statistics"""
        station = self.base_station
        start_time = station.stats['start_time']
        uptime = time.time() - start_time if start_time else 0

        ntrip_stats = station.ntrip.get_stats() if station.ntrip else {'state': 'stopped'}
        receiver_stats = dict(station.gps.stats) if station.gps else {}

        msg_rate = station.stats['rtcm_messages'] / uptime if uptime > 0 else 0

        return {
            'status': 'running' if station.running else 'stopped',
            'uptime': uptime,
            'uptime_formatted': str(timedelta(seconds=int(uptime))),
            'start_time': datetime.fromtimestamp(start_time).isoformat() if start_time else None,
            'rtcm_messages': station.stats['rtcm_messages'],
            'bytes_queued': station.stats['bytes_queued'],
            'disconnects': station.stats['disconnects'],
            'message_rate': round(msg_rate, 2),
            'ntrip': ntrip_stats,
            'receiver': receiver_stats,
            'timestamp': datetime.now().isoformat()
        }

    def _get_config_info(self):
        """Get configuration information"""
        config = self.base_station.config
        ntrip_config = config.get('ntrip', {})
        serial_config = config.get('serial', {})

        return {
            'serial': {
                'port': serial_config.get('port'),
                'baudrate': serial_config.get('baudrate')
            },
            'ntrip': {
                'host': ntrip_config.get('host'),
                'port': ntrip_config.get('port'),
                'mountpoint': ntrip_config.get('mountpoint'),
                'username': ntrip_config.get('username'),
                'reconnect': ntrip_config.get('reconnect', {}),
                'queue': ntrip_config.get('queue', {})
            },
            'station': config.get('station', {})
        }

    def start(self):
        """Start web interface in background thread"""
        self.server_thread = Thread(target=self._run_server, daemon=True)
        self.server_thread.start()
        logger.info(f"Web interface started on http://{self.host}:{self.port}")

    def _run_server(self):
        """Run Flask server"""
        self.app.run(
            host=self.host,
            port=self.port,
            debug=False,
            use_reloader=False,
            threaded=True
        )
