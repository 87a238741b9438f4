#!/usr/bin/env python3
"""
NTRIP Request Formatting
Builds the NTRIP v2 upload handshake and chunked-transfer frames
"""

import base64
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "NTRIP RTKUploader/1.0"

# Upper bounds for the credential string and the whole request,
# matching 48 and 1024 byte buffers with one byte for the terminator
MAX_USERINFO_BYTES = 47
MAX_REQUEST_BYTES = 1023

END_CHUNK = b"0\r\n\r\n"


class ConfigurationError(ValueError):
    """Raised when connection parameters cannot form a valid request"""


def encode_credentials(username: str, password: str) -> str:
    """Return base64 of 'username:password' for the Authorization header"""
    userinfo = f"{username}:{password}".encode('utf-8')
    return base64.b64encode(userinfo).decode('ascii')


def format_str_entry(mountpoint: str, identifier: str = "", format: str = "RTCM 3.3",
                     format_details: str = "1005(10),1074(1),1084(1),1094(1),1124(1),1230(10)",
                     carrier: str = "2", nav_system: str = "GPS+GLO+GAL+BDS",
                     network: str = "FKA", country: str = "USA",
                     lat: float = 0.0, lon: float = 0.0,
                     generator: str = "LC29H", bitrate: int = 9600) -> str:
    """
    Build a source-table STR entry for the Ntrip-STR header

    Args:
        mountpoint: Mountpoint name
        identifier: Station identifier (defaults to the mountpoint)
        format: Data format
        format_details: RTCM message types and rates
        carrier: Carrier phase (0=no, 1=L1, 2=L1+L2)
        nav_system: Navigation systems supported
        network: Network name
        country: Country code
        lat: Station latitude
        lon: Station longitude
        generator: Hardware or software generating the stream
        bitrate: Approximate stream bitrate

    Returns:
        STR line without the trailing CRLF
    """
    fields = [
        "STR", mountpoint, identifier or mountpoint, format, format_details,
        str(carrier), nav_system, network, country,
        f"{lat:.2f}", f"{lon:.2f}",
        "0",  # no NMEA needed from clients
        "0",  # single base
        generator, "none", "B", "N", str(bitrate),
    ]
    return ";".join(fields)


@dataclass(frozen=True)
class ConnectionParameters:
    """Caster connection settings, fixed for the lifetime of a session"""

    caster_host: str
    caster_port: int
    mountpoint: str
    username: str = ""
    password: str = field(default="", repr=False)
    ntrip_str: str = ""
    user_agent: str = DEFAULT_USER_AGENT

    def __post_init__(self):
        # Frozen dataclass: normalise through object.__setattr__
        if self.mountpoint:
            object.__setattr__(self, 'mountpoint', self.mountpoint.lstrip('/'))
        for name in ('username', 'password', 'ntrip_str'):
            if getattr(self, name) is None:
                object.__setattr__(self, name, "")
        if not self.user_agent:
            object.__setattr__(self, 'user_agent', DEFAULT_USER_AGENT)
        self._validate()

    @classmethod
    def from_config(cls, ntrip_config: dict, station_config: dict = None) -> 'ConnectionParameters':
        """
        Build parameters from the 'ntrip' config section

        If no verbatim 'ntrip_str' is given, one is generated from the
        'station' section.
        """
        station_config = station_config or {}
        mountpoint = ntrip_config.get('mountpoint', '')
        ntrip_str = ntrip_config.get('ntrip_str')
        if not ntrip_str:
            ntrip_str = format_str_entry(
                mountpoint=mountpoint,
                identifier=station_config.get('identifier', ''),
                format=station_config.get('format', 'RTCM 3.3'),
                format_details=station_config.get(
                    'format_details', '1005(10),1074(1),1084(1),1094(1),1124(1),1230(10)'),
                carrier=station_config.get('carrier', '2'),
                nav_system=station_config.get('nav_system', 'GPS+GLO+GAL+BDS'),
                network=station_config.get('network', 'FKA'),
                country=station_config.get('country', 'USA'),
                lat=float(station_config.get('latitude', 0.0)),
                lon=float(station_config.get('longitude', 0.0)),
            )

        try:
            port = int(ntrip_config.get('port', 2101))
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid caster port: {ntrip_config.get('port')!r}")

        return cls(
            caster_host=str(ntrip_config.get('host') or ''),
            caster_port=port,
            mountpoint=str(mountpoint or ''),
            username=str(ntrip_config.get('username') or ''),
            password=str(ntrip_config.get('password') or ''),
            ntrip_str=ntrip_str,
            user_agent=ntrip_config.get('user_agent', DEFAULT_USER_AGENT),
        )

    def _validate(self):
        if not self.caster_host:
            raise ConfigurationError("Caster host must not be empty")
        if isinstance(self.caster_port, bool) or not isinstance(self.caster_port, int):
            raise ConfigurationError(f"Caster port must be an integer, got {self.caster_port!r}")
        if not 0 < self.caster_port <= 65535:
            raise ConfigurationError(f"Caster port out of range: {self.caster_port}")
        if not self.mountpoint:
            raise ConfigurationError("Mountpoint must not be empty")

        for name in ('caster_host', 'mountpoint', 'username', 'password', 'ntrip_str', 'user_agent'):
            value = getattr(self, name)
            if '\r' in value or '\n' in value:
                raise ConfigurationError(f"{name} must not contain line breaks")

        if ':' in self.username:
            raise ConfigurationError("Username must not contain ':'")

        userinfo_len = len(f"{self.username}:{self.password}".encode('utf-8'))
        if userinfo_len > MAX_USERINFO_BYTES:
            raise ConfigurationError(
                f"username:password is {userinfo_len} bytes, limit is {MAX_USERINFO_BYTES}")

        request_len = len(build_handshake(self))
        if request_len > MAX_REQUEST_BYTES:
            raise ConfigurationError(
                f"Handshake request is {request_len} bytes, limit is {MAX_REQUEST_BYTES}")


def build_handshake(params: ConnectionParameters) -> bytes:
    """
    Format the NTRIP v2 POST request that opens an upload

    Args:
        params: Caster connection parameters

    Returns:
        Request header block, terminated by an empty line
    """
    auth = encode_credentials(params.username, params.password)

    request = f"POST /{params.mountpoint} HTTP/1.1\r\n"
    request += f"Host: {params.caster_host}:{params.caster_port}\r\n"
    request += "Ntrip-Version: Ntrip/2.0\r\n"
    request += f"User-Agent: {params.user_agent}\r\n"
    request += f"Authorization: Basic {auth}\r\n"
    request += f"Ntrip-STR: {params.ntrip_str}\r\n"
    request += "Connection: close\r\n"
    request += "Transfer-Encoding: chunked\r\n"
    request += "\r\n"

    logger.debug(f"Built handshake for /{params.mountpoint} on {params.caster_host}:{params.caster_port}")
    return request.encode('utf-8')


def encode_chunk(data: bytes) -> bytes:
    """Wrap data in a chunked-transfer frame: hex size, CRLF, data, CRLF"""
    if not data:
        raise ValueError("Empty chunk would terminate the upload")
    return f"{len(data):X}\r\n".encode('ascii') + bytes(data) + b"\r\n"
