"""
Tests for the encrypted form endpoint.

Covers:
  - request decryption / response encryption (plain and flipped IV)
  - ping, INIT, data_exchange, BACK, error_notification
  - flow token resolution against a paused conversation
  - failures: undecryptable payloads, unknown actions, unconfigured key
"""
import base64
import os

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from flows.executors import NodeExecutors
from flows.interpreter import FlowInterpreter
from flows.registry import FlowRegistry
from forms.crypto import decrypt_request, decrypt_response, encrypt_request, encrypt_response
from forms.endpoint import FormEndpointHandler
from models.errors import ProtocolError
from models.schemas import ExecutionStatus, UserInput
from tests.helpers import make_flow, open_conversation

SCREENS = {"appointment": {
    "first_screen": "SELECT_DATE",
    "screens": {
        "SELECT_DATE": {"next": "SELECT_SLOT"},
        "SELECT_SLOT": {"next": "SUCCESS", "options": {"field": "slots", "source": "calendar"}},
    },
}}


@pytest.fixture(scope="module")
def private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def form_registry():
    reg = FlowRegistry()
    reg.save(make_flow("booking", [
        {"id": "start", "kind": "start"},
        {"id": "f", "kind": "form", "config": {
            "formId": "appointment", "body": "Book a slot", "initialScreen": "SELECT_DATE",
            "initialData": {"who": "{{customer_name}}"}}},
        {"id": "done", "kind": "message", "config": {"text": "Booked {{slot}}"}},
    ], [("start", "f"), ("f", "done")], owner_id="owner-1", is_active=True))
    return reg


@pytest.fixture
def form_executors():
    return NodeExecutors(form_screens=SCREENS)


@pytest.fixture
def handler(private_key, form_executors, store, form_registry):
    return FormEndpointHandler(private_key, form_executors, store, form_registry)


class Client:
    """Plays the platform side of the exchange."""

    def __init__(self, private_key, flip_iv=False):
        self.public_key = private_key.public_key()
        self.aes_key = os.urandom(16)
        self.iv = os.urandom(16)
        self.flip_iv = flip_iv

    def request(self, body):
        return encrypt_request(body, self.public_key, self.aes_key, self.iv)

    def read(self, encrypted):
        return decrypt_response(encrypted, self.aes_key, self.iv, self.flip_iv)


# ──────────────────────────────────────────────────────────────
#  Crypto
# ──────────────────────────────────────────────────────────────

class TestCrypto:
    def test_request_decrypts(self, private_key):
        client = Client(private_key)
        decrypted = decrypt_request(client.request({"action": "ping"}), private_key)
        assert decrypted.body == {"action": "ping"}
        assert decrypted.aes_key == client.aes_key
        assert decrypted.iv == client.iv

    def test_flipped_iv_is_required_to_read_flipped_response(self, private_key):
        client = Client(private_key)
        encrypted = encrypt_response({"ok": True}, client.aes_key, client.iv, flip_iv=True)
        assert decrypt_response(encrypted, client.aes_key, client.iv, flip_iv=True) == {"ok": True}
        with pytest.raises(Exception):
            decrypt_response(encrypted, client.aes_key, client.iv, flip_iv=False)

    def test_missing_fields(self, private_key):
        with pytest.raises(ProtocolError, match="encrypted_aes_key"):
            decrypt_request({}, private_key)

    def test_tampered_body(self, private_key):
        payload = Client(private_key).request({"action": "ping"})
        raw = bytearray(base64.b64decode(payload["encrypted_flow_data"]))
        raw[0] ^= 0x01
        payload["encrypted_flow_data"] = base64.b64encode(bytes(raw)).decode()
        with pytest.raises(ProtocolError) as info:
            decrypt_request(payload, private_key)
        assert info.value.http_status == 421

    def test_key_for_another_recipient(self, private_key):
        other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        payload = Client(other).request({"action": "ping"})
        with pytest.raises(ProtocolError, match="request key"):
            decrypt_request(payload, private_key)


# ──────────────────────────────────────────────────────────────
#  Endpoint
# ──────────────────────────────────────────────────────────────

class TestEndpoint:
    @pytest.mark.asyncio
    async def test_ping(self, handler, private_key):
        client = Client(private_key)
        status, content = await handler.handle(client.request({"version": "3.0", "action": "ping"}))
        assert status == 200
        assert isinstance(content, str)
        assert client.read(content) == {"version": "3.1", "data": {"status": "active"}}

    @pytest.mark.asyncio
    async def test_flip_iv_response(self, private_key, form_executors, store, form_registry):
        handler = FormEndpointHandler(private_key, form_executors, store, form_registry, flip_iv=True)
        client = Client(private_key, flip_iv=True)
        _, content = await handler.handle(client.request({"action": "ping"}))
        assert client.read(content)["data"] == {"status": "active"}

    @pytest.mark.asyncio
    async def test_error_notification_is_acknowledged(self, handler, private_key):
        client = Client(private_key)
        _, content = await handler.handle(client.request({
            "action": "error_notification", "flow_token": "x", "data": {"error": "boom"}}))
        assert client.read(content) == {"data": {"acknowledged": True}}

    @pytest.mark.asyncio
    async def test_init_resolves_paused_conversation(self, handler, private_key, store, form_registry,
                                                     form_executors, sender):
        conv = await open_conversation(store)
        interpreter = FlowInterpreter(store, form_registry, form_executors, sender)
        await interpreter.start(conv.id, "booking", variables={"customer_name": "Ayse"})
        token = sender.sent[0]["message"].payload["flow_token"]
        assert token == f"{conv.id}:f"

        client = Client(private_key)
        _, content = await handler.handle(client.request({"action": "INIT", "flow_token": token}))
        assert client.read(content) == {"screen": "SELECT_DATE", "data": {"who": "Ayse"}}

    @pytest.mark.asyncio
    async def test_data_exchange_walks_screens(self, handler, private_key, store, form_registry,
                                               form_executors, sender):
        conv = await open_conversation(store)
        interpreter = FlowInterpreter(store, form_registry, form_executors, sender)
        await interpreter.start(conv.id, "booking")
        token = f"{conv.id}:f"
        client = Client(private_key)

        _, content = await handler.handle(client.request({
            "action": "data_exchange", "screen": "SELECT_DATE", "flow_token": token,
            "data": {"date": "2030-01-02"}}))
        slot_screen = client.read(content)
        assert slot_screen["screen"] == "SELECT_SLOT"
        assert slot_screen["data"]["slots"][0]["id"] == "0900"

        _, content = await handler.handle(client.request({
            "action": "data_exchange", "screen": "SELECT_SLOT", "flow_token": token,
            "data": {"date": "2030-01-02", "slot": "0900"}}))
        done = client.read(content)
        assert done["screen"] == "SUCCESS"
        params = done["data"]["extension_message_response"]["params"]
        assert params == {"flow_token": token, "date": "2030-01-02", "slot": "0900"}

        # the completion message then arrives over the webhook as an nfm_reply
        outcome = await interpreter.handle_inbound(conv.id, UserInput(form_response=params, flow_token=token))
        assert outcome.state.status == ExecutionStatus.COMPLETED
        assert sender.sent[-1]["message"].text == "Booked 0900"

    @pytest.mark.asyncio
    async def test_back_rerenders_screen(self, handler, private_key):
        client = Client(private_key)
        _, content = await handler.handle(client.request({
            "action": "BACK", "screen": "SELECT_SLOT", "flow_token": "unknown",
            "data": {"date": "2030-01-02"}}))
        out = client.read(content)
        assert out["screen"] == "SELECT_SLOT"
        assert out["data"]["slots"]

    @pytest.mark.asyncio
    async def test_back_without_screen_returns_first_screen(self, handler, private_key):
        client = Client(private_key)
        _, content = await handler.handle(client.request({"action": "BACK", "flow_token": "unknown"}))
        assert client.read(content) == {"screen": "SELECT_DATE", "data": {}}

    @pytest.mark.asyncio
    async def test_unknown_action_is_encrypted_error(self, handler, private_key):
        client = Client(private_key)
        status, content = await handler.handle(client.request({"action": "dance", "flow_token": "t"}))
        assert status == 200
        assert "Unknown action" in client.read(content)["error"]

    @pytest.mark.asyncio
    async def test_undecryptable_request_is_421(self, handler):
        status, content = await handler.handle({
            "encrypted_aes_key": base64.b64encode(b"x" * 256).decode(),
            "initial_vector": base64.b64encode(b"0" * 16).decode(),
            "encrypted_flow_data": base64.b64encode(b"y" * 32).decode(),
        })
        assert status == 421
        assert "error" in content

    @pytest.mark.asyncio
    async def test_unconfigured_key_is_500(self, form_executors, store, form_registry, private_key):
        handler = FormEndpointHandler(None, form_executors, store, form_registry)
        status, content = await handler.handle(Client(private_key).request({"action": "ping"}))
        assert status == 500
        assert content["error"]
