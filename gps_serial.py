#!/usr/bin/env python3
"""
GNSS Receiver Serial Module
Reads RTCM3 corrections from the base receiver over a serial port
"""

import serial
import logging
from typing import List, Optional, Callable
import threading
import time

from rtcm_parser import RTCMMessageBuffer

logger = logging.getLogger(__name__)


class ReceiverSerial:
    """Read RTCM3 frames from a GNSS base receiver"""

    def __init__(self, port: str = '/dev/ttyUSB0', baudrate: int = 115200, timeout: float = 1.0):
        """
        Initialize receiver serial connection

        Args:
            port: Serial port device path
            baudrate: Communication speed
            timeout: Read timeout in seconds
        """
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.serial_conn: Optional[serial.Serial] = None
        self.running = False
        self.read_thread: Optional[threading.Thread] = None
        self.rtcm_callback: Optional[Callable[[bytes], None]] = None
        self.rtcm_buffer = RTCMMessageBuffer()

        self.stats = {
            'bytes_read': 0,
            'rtcm_messages': 0,
            'last_message': None
        }

    def connect(self) -> bool:
        """
        Open serial connection to the receiver

        Returns:
            True if connection successful, False otherwise
        """
        try:
            self.serial_conn = serial.Serial(
                port=self.port,
                baudrate=self.baudrate,
                timeout=self.timeout,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE
            )
            logger.info(f"Connected to receiver on {self.port} at {self.baudrate} baud")
            return True
        except serial.SerialException as e:
            logger.error(f"Failed to connect to {self.port}: {e}")
            return False

    def disconnect(self):
        """Close serial connection"""
        self.stop_reading()
        if self.serial_conn and self.serial_conn.is_open:
            self.serial_conn.close()
            logger.info("Disconnected from receiver")

    @staticmethod
    def format_command(command: str) -> str:
        """Wrap a proprietary command as $<command>*<XOR checksum>\\r\\n"""
        body = command.strip().lstrip('$').split('*', 1)[0]
        checksum = 0
        for char in body:
            checksum ^= ord(char)
        return f"${body}*{checksum:02X}\r\n"

    def send_commands(self, commands: List[str], delay: float = 0.1):
        """
        Send configuration commands to the receiver

        Args:
            commands: Command bodies, e.g. "PAIR432,1" (checksum is added)
            delay: Pause after each command
        """
        if not (self.serial_conn and self.serial_conn.is_open):
            logger.warning("Receiver not connected, commands not sent")
            return

        for command in commands:
            line = self.format_command(command)
            self.serial_conn.write(line.encode('ascii'))
            logger.debug(f"Sent command: {line.strip()}")
            time.sleep(delay)

        logger.info(f"Sent {len(commands)} configuration commands")

    def start_reading(self):
        """Start background thread to read data from the receiver"""
        if self.running:
            logger.warning("Already reading from receiver")
            return

        self.running = True
        self.read_thread = threading.Thread(target=self._read_loop, name="receiver-read", daemon=True)
        self.read_thread.start()
        logger.info("Started receiver reading thread")

    def stop_reading(self):
        """Stop background reading thread"""
        if self.running:
            self.running = False
            if self.read_thread:
                self.read_thread.join(timeout=2.0)
            logger.info("Stopped receiver reading thread")

    def _read_loop(self):
        """Background thread to continuously read receiver output"""
        while self.running and self.serial_conn and self.serial_conn.is_open:
            try:
                waiting = self.serial_conn.in_waiting
                if waiting > 0:
                    self.process_bytes(self.serial_conn.read(waiting))
                time.sleep(0.01)

            except serial.SerialException as e:
                logger.error(f"Serial read error: {e}")
                break

        self.running = False

    def process_bytes(self, data: bytes):
        """Frame RTCM3 messages out of raw receiver output and dispatch them"""
        self.stats['bytes_read'] += len(data)
        for message in self.rtcm_buffer.add_data(data):
            self.stats['rtcm_messages'] += 1
            self.stats['last_message'] = time.time()
            if self.rtcm_callback:
                try:
                    self.rtcm_callback(message)
                except Exception as e:
                    logger.error(f"RTCM callback failed: {e}")

    def set_rtcm_callback(self, callback: Callable[[bytes], None]):
        """Set callback function to handle RTCM messages"""
        self.rtcm_callback = callback
