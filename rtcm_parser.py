#!/usr/bin/env python3
"""
RTCM3 Frame Validation
Checks and frames RTCM3 messages before they are queued for upload
"""

import logging
from typing import List, Tuple

logger = logging.getLogger(__name__)

PREAMBLE = 0xD3
HEADER_LEN = 3
CRC_LEN = 3


def _build_crc24q_table() -> List[int]:
    table = []
    for i in range(256):
        crc = i << 16
        for _ in range(8):
            crc <<= 1
            if crc & 0x1000000:
                crc ^= 0x1864CFB
        table.append(crc & 0xFFFFFF)
    return table


_CRC24Q_TABLE = _build_crc24q_table()


class RTCM3Parser:
    """Validate RTCM3 frames"""

    # Message types a base station typically emits
    MESSAGE_TYPES = {
        1004: "GPS Extended L1/L2 RTK Observables",
        1005: "Stationary RTK Reference Station ARP",
        1006: "Stationary RTK Reference Station ARP with Height",
        1008: "Antenna Descriptor & Serial Number",
        1012: "GLONASS Extended L1/L2 RTK Observables",
        1019: "GPS Ephemeris",
        1020: "GLONASS Ephemeris",
        1033: "Receiver and Antenna Descriptors",
        1074: "GPS MSM4",
        1077: "GPS MSM7",
        1084: "GLONASS MSM4",
        1087: "GLONASS MSM7",
        1094: "Galileo MSM4",
        1097: "Galileo MSM7",
        1124: "BeiDou MSM4",
        1127: "BeiDou MSM7",
        1230: "GLONASS Code-Phase Biases",
    }

    @staticmethod
    def crc24q(data: bytes) -> int:
        """Qualcomm CRC-24 as used by RTCM3"""
        crc = 0
        for byte in data:
            crc = ((crc << 8) & 0xFFFFFF) ^ _CRC24Q_TABLE[((crc >> 16) ^ byte) & 0xFF]
        return crc

    @staticmethod
    def frame_length(header: bytes) -> int:
        """Total frame length (header + payload + CRC) from the first 3 bytes"""
        return (((header[1] & 0x03) << 8) | header[2]) + HEADER_LEN + CRC_LEN

    @staticmethod
    def validate_message(data: bytes) -> Tuple[bool, int, int]:
        """
        Validate RTCM3 message format and checksum

        Args:
            data: Complete RTCM3 message bytes

        Returns:
            Tuple of (is_valid, message_type, payload_length)
        """
        if len(data) < HEADER_LEN + CRC_LEN or data[0] != PREAMBLE:
            return False, 0, 0

        payload_len = ((data[1] & 0x03) << 8) | data[2]
        msg_type = (data[3] << 4) | (data[4] >> 4) if payload_len >= 2 and len(data) >= 5 else 0

        if len(data) != payload_len + HEADER_LEN + CRC_LEN:
            return False, msg_type, payload_len

        expected = int.from_bytes(data[-CRC_LEN:], 'big')
        if RTCM3Parser.crc24q(data[:-CRC_LEN]) != expected:
            if msg_type in RTCM3Parser.MESSAGE_TYPES:
                logger.debug(f"RTCM message type {msg_type} failed CRC24 check")
            return False, msg_type, payload_len

        return True, msg_type, payload_len

    @staticmethod
    def get_message_info(msg_type: int) -> str:
        """Get human-readable message type description"""
        return RTCM3Parser.MESSAGE_TYPES.get(msg_type, f"Unknown Type {msg_type}")


class RTCMMessageBuffer:
    """Reassemble RTCM3 frames from an arbitrary byte stream"""

    def __init__(self):
        self.buffer = bytearray()
        self.discarded = 0

    def add_data(self, data: bytes) -> List[bytes]:
        """
        Add stream bytes and return every complete, valid frame found

        Bytes outside frames (NMEA sentences, noise) are skipped.
        """
        self.buffer.extend(data)
        messages = []

        while True:
            start = self.buffer.find(PREAMBLE)
            if start == -1:
                self.buffer.clear()
                break
            if start > 0:
                del self.buffer[:start]
            if len(self.buffer) < HEADER_LEN:
                break

            total_len = RTCM3Parser.frame_length(self.buffer)
            if len(self.buffer) < total_len:
                break

            frame = bytes(self.buffer[:total_len])
            is_valid, msg_type, _ = RTCM3Parser.validate_message(frame)
            if is_valid:
                del self.buffer[:total_len]
                messages.append(frame)
            else:
                # False preamble: resync on the next 0xD3
                del self.buffer[:1]
                self.discarded += 1
                if msg_type in RTCM3Parser.MESSAGE_TYPES:
                    logger.debug(f"Invalid RTCM message discarded, type {msg_type}")

        return messages
