"""
Tests for the Authentication Handshake
======================================

Run with: pytest tests/
"""

import hashlib
import hmac

import pytest
import pytest_asyncio

from hdb_wire import (
    AuthError, AuthFailureReason, Connection, ConnectionState, ConnectParams, connect,
)
from hdb_wire.auth import MAX_NEGOTIATION_ROUNDS, client_proof
from hdb_wire.protocol import MessageType

from fake_server import FakeHanaServer, SCRAMSHA256, SCRAMPBKDF2SHA256, JWT


@pytest_asyncio.fixture
async def jwt_server():
    """Fake server accepting a bearer token"""
    server = FakeHanaServer(token="eyJhbGciOi.fake.token", token_user="APPUSER")
    await server.start()
    yield server
    await server.stop()


@pytest.mark.asyncio
class TestScram:
    """Tests for password authentication"""

    async def test_pbkdf2_is_the_default(self, server, make_params):
        async with await connect(make_params()) as connection:
            assert connection.state == ConnectionState.READY
            assert connection.session.auth_method == "SCRAMPBKDF2SHA256"
            assert connection.session.user == "SYSTEM"

        assert server.sessions[0].method == SCRAMPBKDF2SHA256

    async def test_session_id_from_connect_reply(self, server, make_params):
        async with await connect(make_params()) as connection:
            session = connection.session
            assert session.session_id == server.sessions[0].session_id
            assert session.session_id > 0
            assert session.connection_id == session.session_id

    async def test_versions_from_initialization(self, server, make_params):
        async with await connect(make_params()) as connection:
            assert connection.session.product_version == (4, 20)
            assert connection.session.protocol_version == (4, 1)

    async def test_renegotiates_to_server_mechanism(self, server, make_params):
        """Test the exchange restarts with the mechanism the server names"""
        server.mechanism_overrides = [SCRAMSHA256]

        async with await connect(make_params()) as connection:
            assert connection.session.auth_method == "SCRAMSHA256"

        assert server.sessions[0].method == SCRAMSHA256
        assert server.requests.count(MessageType.AUTHENTICATE) == 2

    async def test_negotiation_is_bounded(self, server, make_params):
        server.always_renegotiate = True

        with pytest.raises(AuthError) as exc_info:
            await connect(make_params())

        assert exc_info.value.reason is AuthFailureReason.NEGOTIATION_EXHAUSTED
        assert len(server.sessions[0].packet_counts) == MAX_NEGOTIATION_ROUNDS + 1

    async def test_unsupported_mechanism(self, server, make_params):
        server.mechanism_overrides = [b'KERBEROS']

        with pytest.raises(AuthError) as exc_info:
            await connect(make_params())
        assert exc_info.value.reason is AuthFailureReason.UNSUPPORTED_MECHANISM

    async def test_wrong_password(self, server, make_params):
        connection = Connection(make_params(password="wrong"))

        with pytest.raises(AuthError) as exc_info:
            await connection.open()

        assert exc_info.value.reason is AuthFailureReason.INVALID_CREDENTIALS
        assert connection.state == ConnectionState.FAILED
        assert connection.session is None
        assert not server.sessions[0].authenticated

        await connection.close()
        assert connection.state == ConnectionState.CLOSED

    async def test_unknown_user(self, server, make_params):
        with pytest.raises(AuthError) as exc_info:
            await connect(make_params(user="NOBODY"))
        assert exc_info.value.reason is AuthFailureReason.INVALID_CREDENTIALS

    async def test_client_info_sent_with_connect(self, server, make_params):
        params = make_params(session_options={"APPLICATIONUSER": "alice"})
        async with await connect(params):
            pass

        info = server.sessions[0].client_info
        assert info["DRIVER"] == "hdb_wire"
        assert info["APPLICATIONUSER"] == "alice"


@pytest.mark.asyncio
class TestJwt:
    """Tests for token authentication"""

    async def test_token_login(self, jwt_server):
        params = ConnectParams(host="127.0.0.1", port=jwt_server.port, user="",
                               token="eyJhbGciOi.fake.token", connect_timeout=5.0)

        async with await connect(params) as connection:
            assert connection.session.auth_method == "JWT"
            assert connection.session.user == "APPUSER"

        assert jwt_server.sessions[0].method == JWT

    async def test_bad_token(self, jwt_server):
        params = ConnectParams(host="127.0.0.1", port=jwt_server.port, user="",
                               token="forged", connect_timeout=5.0)

        with pytest.raises(AuthError) as exc_info:
            await connect(params)
        assert exc_info.value.reason is AuthFailureReason.INVALID_CREDENTIALS


class TestClientProof:
    """Tests for the SCRAM proof computation"""

    SALT = bytes(range(16))
    SERVER_KEY = bytes(range(48))
    CLIENT_CHALLENGE = bytes(range(64))

    def test_server_can_recover_client_key(self):
        """Test proof XOR signature yields sha256(salted password)"""
        salted = hashlib.pbkdf2_hmac('sha256', b'secret', self.SALT, 1000)
        proof = client_proof(salted, self.SALT, self.SERVER_KEY, self.CLIENT_CHALLENGE)

        client_key = hashlib.sha256(salted).digest()
        signature = hmac.new(hashlib.sha256(client_key).digest(),
                             self.SALT + self.SERVER_KEY + self.CLIENT_CHALLENGE,
                             hashlib.sha256).digest()

        assert len(proof) == 32
        assert bytes(a ^ b for a, b in zip(proof, signature)) == client_key

    def test_depends_on_challenge(self):
        salted = hmac.new(b'secret', self.SALT, hashlib.sha256).digest()
        first = client_proof(salted, self.SALT, self.SERVER_KEY, self.CLIENT_CHALLENGE)
        second = client_proof(salted, self.SALT, self.SERVER_KEY, bytes(64))
        assert first != second


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
