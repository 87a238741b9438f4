#!/usr/bin/env python3
"""
RTK Base Station Main Script
Uploads RTK corrections from a serial GNSS receiver to an NTRIP caster
"""

import sys
import signal
import logging
import yaml
import time
import os
from pathlib import Path
from logging.handlers import RotatingFileHandler

from gps_serial import ReceiverSerial
from ntrip_request import ConnectionParameters, ConfigurationError
from ntrip_server import NTRIPServer, NTRIPError
from outbound_queue import OutboundQueue, QueueFullError
from web_interface import WebInterface


class RTKBaseStation:
    """RTK Base Station coordinator"""

    STATUS_INTERVAL = 10.0

    def __init__(self, config_file: str = 'config.yaml'):
        """
        Initialize RTK base station

        Args:
            config_file: Path to configuration file
        """
        self.config = self._load_config(config_file)
        self.logger = self._setup_logging()
        self.gps = None
        self.ntrip = None
        self.web = None
        self.running = False
        self.last_connect_attempt = 0.0
        self.stats = {
            'rtcm_messages': 0,
            'bytes_queued': 0,
            'disconnects': 0,
            'start_time': None
        }

    def _load_config(self, config_file: str) -> dict:
        """Load configuration from YAML file"""
        try:
            with open(config_file, 'r') as f:
                return yaml.safe_load(f) or {}
        except FileNotFoundError:
            print(f"Error: Configuration file '{config_file}' not found")
            sys.exit(1)
        except yaml.YAMLError as e:
            print(f"Error parsing configuration file: {e}")
            sys.exit(1)

    def _setup_logging(self) -> logging.Logger:
        """Setup logging configuration"""
        log_config = self.config.get('logging', {})
        log_level = getattr(logging, log_config.get('level', 'INFO'))
        log_format = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        # Create logger
        logger = logging.getLogger()
        logger.setLevel(log_level)

        # Remove existing handlers
        logger.handlers.clear()

        # Console handler
        if log_config.get('console', True):
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(log_level)
            console_handler.setFormatter(log_format)
            logger.addHandler(console_handler)

        # File handler
        log_file = log_config.get('file')
        if log_file:
            # Create log directory if it doesn't exist
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)

            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=log_config.get('max_bytes', 10485760),
                backupCount=log_config.get('backup_count', 5)
            )
            file_handler.setLevel(log_level)
            file_handler.setFormatter(log_format)
            logger.addHandler(file_handler)

        return logger

    @property
    def reconnect_enabled(self) -> bool:
        return bool(self.config.get('ntrip', {}).get('reconnect', {}).get('enabled', False))

    @property
    def reconnect_interval(self) -> float:
        return float(self.config.get('ntrip', {}).get('reconnect', {}).get('interval', 10.0))

    def create_ntrip_server(self) -> NTRIPServer:
        """
        Build the caster uploader from the 'ntrip' and 'station' sections

        Raises:
            ConfigurationError: Connection parameters are invalid
        """
        ntrip_config = self.config.get('ntrip', {})
        params = ConnectionParameters.from_config(ntrip_config, self.config.get('station', {}))

        queue_config = ntrip_config.get('queue', {})
        try:
            queue = OutboundQueue(
                capacity=queue_config.get('capacity', 1024),
                overflow=queue_config.get('overflow', 'drop_oldest'),
                block_timeout=queue_config.get('block_timeout', 1.0)
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid queue configuration: {e}") from e

        return NTRIPServer(params, queue=queue, on_disconnect=self._on_ntrip_disconnect)

    def start(self) -> bool:
        """Start RTK base station"""
        self.logger.info("=" * 60)
        self.logger.info("RTK Base Station Starting...")
        self.logger.info("=" * 60)

        try:
            self.ntrip = self.create_ntrip_server()
        except ConfigurationError as e:
            self.logger.error(f"Invalid NTRIP configuration: {e}")
            return False

        # Initialize receiver serial connection
        serial_config = self.config['serial']
        self.gps = ReceiverSerial(
            port=serial_config['port'],
            baudrate=serial_config['baudrate'],
            timeout=serial_config.get('timeout', 1.0)
        )

        if not self.gps.connect():
            self.logger.error("Failed to connect to GPS receiver")
            return False

        init_commands = serial_config.get('init_commands', [])
        if init_commands:
            self.gps.send_commands(init_commands)

        self.gps.set_rtcm_callback(self._handle_rtcm_data)
        self.gps.start_reading()

        # Connect to caster
        params = self.ntrip.params
        self.last_connect_attempt = time.time()
        if not self.ntrip.run():
            if not self.reconnect_enabled:
                self.logger.error("Failed to connect to NTRIP caster")
                self.gps.disconnect()
                return False
            self.logger.warning(f"Caster unavailable, retrying every {self.reconnect_interval:.0f}s")

        self.running = True
        self.stats['start_time'] = time.time()

        web_config = self.config.get('web', {})
        if web_config.get('enabled', False):
            web_host = web_config.get('host', '127.0.0.1')
            web_port = web_config.get('port', 5000)
            self.web = WebInterface(self, host=web_host, port=web_port)
            self.web.start()

        self.logger.info("=" * 60)
        self.logger.info(f"Caster: {params.caster_host}:{params.caster_port}")
        self.logger.info(f"Mountpoint: /{params.mountpoint}")
        self.logger.info("=" * 60)

        return True

    def stop(self):
        """Stop RTK base station"""
        self.logger.info("Stopping RTK Base Station...")
        self.running = False

        if self.gps:
            self.gps.disconnect()

        if self.ntrip:
            self.ntrip.stop()

        self._print_stats()
        self.logger.info("RTK Base Station stopped")

    def _handle_rtcm_data(self, rtcm_data: bytes):
        """
        Handle RTCM data received from the receiver

        Args:
            rtcm_data: Validated RTCM3 message bytes
        """
        if not self.ntrip:
            return

        try:
            queued = self.ntrip.send_rtcm(rtcm_data)
        except QueueFullError as e:
            self.logger.warning(f"RTCM message not queued: {e}")
            return

        if queued:
            self.stats['rtcm_messages'] += 1
            self.stats['bytes_queued'] += len(rtcm_data)

            if self.stats['rtcm_messages'] % 100 == 0:
                self.logger.debug(
                    f"RTCM stats - Messages: {self.stats['rtcm_messages']}, "
                    f"Bytes: {self.stats['bytes_queued']}"
                )

    def _on_ntrip_disconnect(self, error: NTRIPError):
        """Called from the NTRIP monitor thread when the caster connection dies"""
        self.stats['disconnects'] += 1
        if self.reconnect_enabled:
            self.logger.warning(f"Caster connection lost ({error}), reconnecting in {self.reconnect_interval:.0f}s")
        else:
            self.logger.error(f"Caster connection lost ({error}), reconnect disabled")

    def check_connection(self, now: float = None) -> bool:
        """
        Apply the reconnect policy

        Returns:
            True if the uploader is running after the check
        """
        if not self.ntrip or self.ntrip.is_running():
            return bool(self.ntrip)

        if not self.reconnect_enabled:
            return False

        now = time.time() if now is None else now
        if now - self.last_connect_attempt < self.reconnect_interval:
            return False

        self.last_connect_attempt = now
        self.logger.info("Reconnecting to NTRIP caster...")
        return self.ntrip.run()

    def _print_stats(self):
        """Print session statistics"""
        if self.stats['start_time']:
            uptime = time.time() - self.stats['start_time']
            self.logger.info("Session Statistics:")
            self.logger.info(f"  Uptime: {uptime:.1f} seconds ({uptime/3600:.2f} hours)")
            self.logger.info(f"  RTCM Messages: {self.stats['rtcm_messages']}")
            self.logger.info(f"  Bytes Queued: {self.stats['bytes_queued']}")
            self.logger.info(f"  Caster Disconnects: {self.stats['disconnects']}")
            if self.ntrip:
                self.logger.info(f"  Bytes Uploaded: {self.ntrip.bytes_sent}")

    def run(self) -> int:
        """Main run loop"""
        if not self.start():
            return 1

        def signal_handler(sig, frame):
            self.logger.info("Received shutdown signal")
            self.running = False

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        last_status = time.time()
        try:
            while self.running:
                time.sleep(1)
                connected = self.check_connection()

                if time.time() - last_status >= self.STATUS_INTERVAL:
                    last_status = time.time()
                    if connected:
                        stats = self.ntrip.get_stats()
                        self.logger.info(
                            f"Uploading to /{stats['mountpoint']}: "
                            f"{stats['chunks_sent']} messages, {stats['bytes_sent']} bytes, "
                            f"{stats['dropped_chunks']} dropped"
                        )
                    else:
                        self.logger.info(f"Caster disconnected: {self.ntrip.last_error}")

        except KeyboardInterrupt:
            self.logger.info("Shutdown requested")

        self.stop()
        return 0


def main():
    """Main entry point"""
    import argparse

    parser = argparse.ArgumentParser(
        description='RTK Base Station - NTRIP upload to caster',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                    # Run with default config.yaml
  %(prog)s -c myconfig.yaml   # Run with custom config file
  %(prog)s --check-serial     # Check if GPS serial port is accessible
        """
    )

    parser.add_argument(
        '-c', '--config',
        default='config.yaml',
        help='Configuration file path (default: config.yaml)'
    )

    parser.add_argument(
        '--check-serial',
        action='store_true',
        help='Check if serial port is accessible and exit'
    )

    parser.add_argument(
        '--no-web',
        action='store_true',
        help='Disable status web interface'
    )

    args = parser.parse_args()

    if args.check_serial:
        with open(args.config) as f:
            config = yaml.safe_load(f)
        port = config['serial']['port']
        if not os.path.exists(port):
            print(f"✗ Serial port {port} does not exist")
            return 1
        if os.access(port, os.R_OK | os.W_OK):
            print(f"✓ Serial port {port} is readable and writable")
            return 0
        print(f"✗ Serial port {port} is not accessible")
        print("  Add user to dialout group: sudo usermod -a -G dialout $USER")
        return 1

    base_station = RTKBaseStation(args.config)

    if args.no_web:
        base_station.config.setdefault('web', {})['enabled'] = False

    return base_station.run()


if __name__ == '__main__':
    sys.exit(main())
