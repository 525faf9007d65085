"""
HANA Authentication Handshake
=============================

Challenge/response login. The client announces a mechanism together with
its challenge (AUTHENTICATE), the server answers with salt and its own
challenge, and the client proves knowledge of the password in the CONNECT
request. The reply to CONNECT carries the session id.

Supported mechanisms: SCRAMSHA256, SCRAMPBKDF2SHA256 and JWT. When the
server answers with a different mechanism the exchange restarts with that
one, at most MAX_NEGOTIATION_ROUNDS times.
"""

import os
import sys
import hmac
import socket
import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from . import __version__
from .errors import (
    AuthError, AuthFailureReason, DecodeError, server_error_from_info,
)
from .params import ConnectParams
from .protocol import Message, SegmentKind, MessageType, PartKind
from .protocol.constants import ConnectOption, DATA_FORMAT_VERSION
from .protocol.parts import (
    Authentication, ClientId, ClientInfo, ConnectOptions, Error, Fields, parse_part,
)
from .transport import MessageStream

logger = logging.getLogger(__name__)

MAX_NEGOTIATION_ROUNDS = 3
CLIENT_CHALLENGE_SIZE = 64
DEFAULT_LOCALE = "en_US"


class TransactionState(Enum):
    NONE = "none"           # No open write transaction
    ACTIVE = "active"       # Uncommitted changes exist


@dataclass
class Session:
    """Server session established by a successful handshake"""
    session_id: int
    user: str
    auth_method: str
    product_version: Tuple[int, int] = (0, 0)
    protocol_version: Tuple[int, int] = (0, 0)
    connect_options: Dict[Any, Any] = field(default_factory=dict)
    autocommit: bool = True
    transaction_state: TransactionState = TransactionState.NONE
    statement_sequence_info: Optional[bytes] = None
    server_processing_time: int = 0
    call_count: int = 0
    packet_count: int = 0

    def next_packet(self) -> int:
        """Sequence number for the next request"""
        self.packet_count += 1
        return self.packet_count

    @property
    def connection_id(self) -> Optional[int]:
        return self.connect_options.get(ConnectOption.CONNECTION_ID)


# Mechanisms ---------------------------------------------------------------------------------------
class Authenticator:
    """Base class for an authentication mechanism"""

    NAME: bytes = b''

    def __init__(self, params: ConnectParams):
        self.params = params
        self.user = params.user

    @property
    def name(self) -> str:
        return self.NAME.decode('ascii')

    def first_fields(self) -> List[bytes]:
        """Fields of the AUTHENTICATE request"""
        raise NotImplementedError

    def final_fields(self, server_data: bytes) -> List[bytes]:
        """Fields of the CONNECT request, computed from the server's challenge"""
        raise NotImplementedError


class ScramSha256(Authenticator):
    """SCRAM with HMAC-SHA256 salting"""

    NAME = b'SCRAMSHA256'
    SERVER_FIELDS = 2

    def __init__(self, params: ConnectParams):
        super().__init__(params)
        self.client_challenge = os.urandom(CLIENT_CHALLENGE_SIZE)

    def first_fields(self) -> List[bytes]:
        return [self.user.encode('utf-8'), self.NAME, self.client_challenge]

    def _parse_server_data(self, server_data: bytes):
        try:
            fields = Fields.unpack(server_data)
        except DecodeError as e:
            raise AuthError(AuthFailureReason.MALFORMED_CHALLENGE, str(e)) from e
        if len(fields) != self.SERVER_FIELDS or not all(fields[:2]):
            raise AuthError(
                AuthFailureReason.MALFORMED_CHALLENGE,
                f"{self.name} challenge has {len(fields)} fields, expected {self.SERVER_FIELDS}",
            )
        return fields

    def salted_password(self, salt: bytes, fields: List[bytes]) -> bytes:
        return hmac.new(self.params.password.encode('utf-8'), salt, hashlib.sha256).digest()

    def final_fields(self, server_data: bytes) -> List[bytes]:
        fields = self._parse_server_data(server_data)
        salt, server_key = fields[0], fields[1]
        proof = client_proof(self.salted_password(salt, fields), salt, server_key,
                             self.client_challenge)
        return [self.user.encode('utf-8'), self.NAME, Fields.pack([proof])]


class ScramPbkdf2Sha256(ScramSha256):
    """SCRAM with PBKDF2-HMAC-SHA256 salting; the server sends the iteration count"""

    NAME = b'SCRAMPBKDF2SHA256'
    SERVER_FIELDS = 3

    def salted_password(self, salt: bytes, fields: List[bytes]) -> bytes:
        iterations = int.from_bytes(fields[2], 'big')
        if iterations < 1:
            raise AuthError(AuthFailureReason.MALFORMED_CHALLENGE,
                            f"Invalid iteration count {iterations}")
        return hashlib.pbkdf2_hmac('sha256', self.params.password.encode('utf-8'), salt, iterations)


class Jwt(Authenticator):
    """JSON Web Token; the server tells which database user the token maps to"""

    NAME = b'JWT'

    def first_fields(self) -> List[bytes]:
        return [self.user.encode('utf-8'), self.NAME, self.params.token.encode('utf-8')]

    def final_fields(self, server_data: bytes) -> List[bytes]:
        if server_data:
            self.user = server_data.decode('utf-8')
        return [self.user.encode('utf-8'), self.NAME, b'']


def client_proof(salted_password: bytes, salt: bytes, server_key: bytes,
                 client_challenge: bytes) -> bytes:
    """key = sha256(salted); proof = key XOR hmac(sha256(key), salt + server + client)"""
    client_key = hashlib.sha256(salted_password).digest()
    client_verifier = hashlib.sha256(client_key).digest()
    signature = hmac.new(client_verifier, salt + server_key + client_challenge,
                         hashlib.sha256).digest()
    return bytes(a ^ b for a, b in zip(client_key, signature))


MECHANISMS = {
    ScramSha256.NAME: ScramSha256,
    ScramPbkdf2Sha256.NAME: ScramPbkdf2Sha256,
    Jwt.NAME: Jwt,
}


def default_mechanism(params: ConnectParams) -> type:
    return Jwt if params.token is not None else ScramPbkdf2Sha256


def _mechanism_for(name: bytes, params: ConnectParams) -> type:
    mechanism = MECHANISMS.get(name)
    if mechanism is None:
        raise AuthError(AuthFailureReason.UNSUPPORTED_MECHANISM,
                        f"Server requested {name!r}")
    if (mechanism is Jwt) != (params.token is not None):
        raise AuthError(AuthFailureReason.UNSUPPORTED_MECHANISM,
                        f"Server requested {name.decode('ascii', 'replace')}, "
                        f"which the supplied credential cannot satisfy")
    return mechanism


# Handshake ----------------------------------------------------------------------------------------
def client_id() -> bytes:
    return f"{os.getpid()}@{socket.gethostname()}".encode('utf-8')


def client_info(params: ConnectParams) -> Dict[str, str]:
    entries = {
        "APPLICATION": os.path.basename(sys.argv[0]) if sys.argv else "python",
        "DRIVER": "hdb_wire",
        "DRIVERVERSION": __version__,
    }
    entries.update(params.session_options)
    return entries


def connect_options(params: ConnectParams) -> ConnectOptions:
    return ConnectOptions(options={
        ConnectOption.CLIENT_LOCALE: params.client_locale or DEFAULT_LOCALE,
        ConnectOption.DATA_FORMAT_VERSION: DATA_FORMAT_VERSION,
        ConnectOption.DATA_FORMAT_VERSION2: DATA_FORMAT_VERSION,
        ConnectOption.COMPLETE_ARRAY_EXECUTION: True,
        ConnectOption.SPLIT_BATCH_COMMANDS: True,
    })


def _check_reply(reply: Message, step: str) -> Authentication:
    """Extract the AUTHENTICATION part or turn a server error into AuthError"""
    typed = [parse_part(part) for part in reply.parts]
    for part in typed:
        if isinstance(part, Error) and part.errors:
            error = server_error_from_info(part.errors[0])
            raise AuthError(AuthFailureReason.INVALID_CREDENTIALS, error.message) from error
    if reply.segment.kind == SegmentKind.ERROR:
        raise AuthError(AuthFailureReason.INVALID_CREDENTIALS, f"{step} rejected")
    for part in typed:
        if isinstance(part, Authentication):
            return part
    raise AuthError(AuthFailureReason.MALFORMED_CHALLENGE, f"No authentication part in {step} reply")


async def authenticate(params: ConnectParams, stream: MessageStream) -> Session:
    """
    Run the full handshake on a freshly opened stream.

    Raises AuthError (reason attached) or TransportError; never returns a
    partial session.
    """
    product_version, protocol_version = await stream.initialize()

    mechanism = default_mechanism(params)
    packet_count = 0
    for round_number in range(MAX_NEGOTIATION_ROUNDS + 1):
        authenticator = mechanism(params)
        logger.debug(f"Authenticating {params.user!r} with {authenticator.name}")

        request = Message.request(
            session_id=0,
            packet_count=packet_count,
            message_type=MessageType.AUTHENTICATE,
            parts=[Authentication(fields=authenticator.first_fields()).to_part()],
        )
        packet_count += 1
        reply = await stream.exchange(request)
        auth_part = _check_reply(reply, "AUTHENTICATE")

        if len(auth_part.fields) < 2:
            raise AuthError(AuthFailureReason.MALFORMED_CHALLENGE,
                            f"AUTHENTICATE reply has {len(auth_part.fields)} fields")
        method, server_data = auth_part.fields[0], auth_part.fields[1]
        if method == authenticator.NAME:
            break

        logger.info(f"Server requested mechanism {method.decode('ascii', 'replace')}")
        if round_number == MAX_NEGOTIATION_ROUNDS:
            raise AuthError(AuthFailureReason.NEGOTIATION_EXHAUSTED,
                            f"No agreement after {MAX_NEGOTIATION_ROUNDS} renegotiations")
        mechanism = _mechanism_for(method, params)

    parts = [
        Authentication(fields=authenticator.final_fields(server_data)).to_part(),
        ClientId(value=client_id()).to_part(),
        connect_options(params).to_part(),
        ClientInfo(entries=client_info(params)).to_part(),
    ]
    request = Message.request(
        session_id=0,
        packet_count=packet_count,
        message_type=MessageType.CONNECT,
        parts=parts,
    )
    reply = await stream.exchange(request)
    _check_reply(reply, "CONNECT")

    if reply.session_id <= 0:
        raise AuthError(AuthFailureReason.MALFORMED_CHALLENGE,
                        f"CONNECT reply carries session id {reply.session_id}")

    options = {}
    for part in reply.parts:
        if part.kind == PartKind.CONNECT_OPTIONS:
            options.update(parse_part(part).options)

    session = Session(
        session_id=reply.session_id,
        user=authenticator.user,
        auth_method=authenticator.name,
        product_version=product_version,
        protocol_version=protocol_version,
        connect_options=options,
        autocommit=params.autocommit,
        packet_count=packet_count,
    )
    logger.info(f"Authenticated as {session.user!r}, session id {session.session_id}")
    return session
