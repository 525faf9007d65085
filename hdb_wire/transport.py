"""
HANA Transport Module
=====================

Byte stream to the server (TCP, optionally TLS) and the message layer on
top of it: protocol initialization plus sending and receiving complete
messages.
"""

import ssl
import asyncio
import logging
from typing import Optional, Tuple

from .errors import HdbWireError, TransportError, FramingError, classify_exception
from .params import ConnectParams
from .protocol import Message, MessageHeader, encode_message, decode_message, hexdump
from .protocol.constants import (
    INITIALIZATION_REQUEST, INITIALIZATION_REPLY_SIZE, MESSAGE_HEADER_SIZE,
)

logger = logging.getLogger(__name__)

# Replies larger than this are treated as a desynchronized stream
MAX_REPLY_SIZE = 1 << 30


class Transport:
    """Opaque duplex byte stream over asyncio streams"""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 name: str = "server"):
        self._reader = reader
        self._writer = writer
        self.name = name

    @property
    def is_closed(self) -> bool:
        return self._writer is None

    async def write(self, data: bytes):
        if self._writer is None:
            raise TransportError("Transport is closed")
        self._writer.write(data)
        await self._writer.drain()

    async def read_exactly(self, size: int) -> bytes:
        if self._reader is None:
            raise TransportError("Transport is closed")
        return await self._reader.readexactly(size)

    async def close(self):
        """Release the stream; errors while closing are logged only"""
        writer, self._writer, self._reader = self._writer, None, None
        if writer is None:
            return
        try:
            writer.close()
            await writer.wait_closed()
        except (OSError, ssl.SSLError) as e:
            logger.warning(f"Error closing connection to {self.name}: {e}")


def create_ssl_context(params: ConnectParams) -> Optional[ssl.SSLContext]:
    """SSL context for the connection, None without TLS"""
    if not params.use_tls:
        return None
    ssl_context = ssl.create_default_context()
    if not params.tls_verify:
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
    elif params.tls_ca_cert:
        ssl_context.load_verify_locations(params.tls_ca_cert)
    return ssl_context


async def open_transport(params: ConnectParams) -> Transport:
    """Open the TCP (and TLS) stream to the server"""
    logger.info(f"Connecting to {params.address}{' (TLS)' if params.use_tls else ''}")
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(params.host, params.port, ssl=create_ssl_context(params)),
            timeout=params.connect_timeout,
        )
    except asyncio.TimeoutError as e:
        raise TransportError(f"Connection timeout to {params.address}") from e
    except (OSError, ssl.SSLError) as e:
        raise TransportError(f"Connection error to {params.address}: {e}") from e
    logger.info(f"Connected to {params.address}")
    return Transport(reader, writer, name=params.address)


class MessageStream:
    """
    Sends and receives complete messages over a transport.

    Every low-level failure is classified here, so callers only ever see
    hdb_wire exceptions.
    """

    def __init__(self, transport: Transport, read_timeout: Optional[float] = None,
                 strict: bool = False):
        self.transport = transport
        self.read_timeout = read_timeout
        self.strict = strict

    async def _read(self, size: int) -> bytes:
        if self.read_timeout is None:
            return await self.transport.read_exactly(size)
        return await asyncio.wait_for(self.transport.read_exactly(size), timeout=self.read_timeout)

    async def initialize(self) -> Tuple[Tuple[int, int], Tuple[int, int]]:
        """
        Send the initialization request.

        Returns (product_version, protocol_version) as (major, minor) pairs.
        """
        try:
            await self.transport.write(INITIALIZATION_REQUEST)
            reply = await self._read(INITIALIZATION_REPLY_SIZE)
        except HdbWireError:
            raise
        except Exception as e:
            raise classify_exception(e) from e

        product_version = (reply[0], int.from_bytes(reply[1:3], 'little'))
        protocol_version = (reply[3], int.from_bytes(reply[4:6], 'little'))
        logger.debug(f"Server product version {product_version}, protocol {protocol_version}")
        return product_version, protocol_version

    async def send(self, message: Message, varpart_size: Optional[int] = None):
        data = encode_message(message, varpart_size)
        logger.debug(f"Sending {len(data)} bytes to {self.transport.name}")
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"\n{hexdump(data[:128], 'TX: ')}")
        try:
            await self.transport.write(data)
        except HdbWireError:
            raise
        except Exception as e:
            raise classify_exception(e) from e

    async def receive(self) -> Message:
        try:
            header_data = await self._read(MESSAGE_HEADER_SIZE)
            header = MessageHeader.unpack(header_data)
            if header.varpart_length > MAX_REPLY_SIZE:
                raise FramingError(f"Reply declares {header.varpart_length} bytes")
            body = await self._read(header.varpart_length) if header.varpart_length else b''
        except HdbWireError:
            raise
        except Exception as e:
            raise classify_exception(e) from e

        data = header_data + body
        logger.debug(f"Received {len(data)} bytes from {self.transport.name}")
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"\n{hexdump(data[:128], 'RX: ')}")
        return decode_message(data, strict=self.strict)

    async def exchange(self, message: Message, varpart_size: Optional[int] = None) -> Message:
        """One request/reply round trip"""
        await self.send(message, varpart_size)
        return await self.receive()
