"""
Encrypted form protocol crypto (WhatsApp Flows data endpoint).

Request:
  encrypted_aes_key     base64, RSA-OAEP(SHA-256) with the platform public key
  initial_vector        base64, 16 bytes
  encrypted_flow_data   base64, AES-GCM ciphertext with the 16-byte tag appended

Response: base64(AES-GCM(json) + tag) under the same key. The IV is reused
as-is unless `flip_iv` is set, which inverts every IV byte as the Cloud
API reference implementation does.
"""
from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from models.errors import ProtocolError

TAG_LENGTH = 16
AES_KEY_LENGTH = 16


@dataclass
class DecryptedRequest:
    body: dict[str, Any]
    aes_key: bytes
    iv: bytes


def load_private_key(pem: bytes | str, passphrase: str = "") -> RSAPrivateKey:
    if isinstance(pem, str):
        pem = pem.encode()
    return serialization.load_pem_private_key(pem, password=passphrase.encode() if passphrase else None)


def load_private_key_file(path: str, passphrase: str = "") -> RSAPrivateKey:
    return load_private_key(Path(path).read_bytes(), passphrase)


def _oaep() -> asym_padding.OAEP:
    return asym_padding.OAEP(
        mgf=asym_padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def _b64(value: Any, name: str) -> bytes:
    if not isinstance(value, str) or not value:
        raise ProtocolError(f"Missing {name}")
    try:
        return base64.b64decode(value, validate=True)
    except ValueError as e:
        raise ProtocolError(f"Malformed {name}") from e


def aes_gcm_encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    encryptor = Cipher(algorithms.AES(key), modes.GCM(iv)).encryptor()
    ciphertext = encryptor.update(plaintext) + encryptor.finalize()
    return ciphertext + encryptor.tag


def aes_gcm_decrypt(key: bytes, iv: bytes, data: bytes) -> bytes:
    if len(data) < TAG_LENGTH:
        raise ProtocolError("Encrypted body shorter than its tag")
    ciphertext, tag = data[:-TAG_LENGTH], data[-TAG_LENGTH:]
    decryptor = Cipher(algorithms.AES(key), modes.GCM(iv, tag)).decryptor()
    return decryptor.update(ciphertext) + decryptor.finalize()


def decrypt_request(payload: dict[str, Any], private_key: RSAPrivateKey) -> DecryptedRequest:
    """Unwrap the AES key with RSA, then decrypt the JSON body. Raises ProtocolError."""
    encrypted_key = _b64(payload.get("encrypted_aes_key"), "encrypted_aes_key")
    iv = _b64(payload.get("initial_vector"), "initial_vector")
    encrypted_body = _b64(payload.get("encrypted_flow_data"), "encrypted_flow_data")

    try:
        aes_key = private_key.decrypt(encrypted_key, _oaep())
    except ValueError as e:
        raise ProtocolError("Could not decrypt the request key") from e
    aes_key = aes_key[:AES_KEY_LENGTH]

    try:
        plaintext = aes_gcm_decrypt(aes_key, iv, encrypted_body)
        body = json.loads(plaintext)
    except ProtocolError:
        raise
    except Exception as e:
        raise ProtocolError("Could not decrypt the request body") from e
    if not isinstance(body, dict):
        raise ProtocolError("Decrypted body is not a JSON object")
    return DecryptedRequest(body=body, aes_key=aes_key, iv=iv)


def encrypt_response(response: dict[str, Any], aes_key: bytes, iv: bytes, flip_iv: bool = False) -> str:
    response_iv = bytes(b ^ 0xFF for b in iv) if flip_iv else iv
    plaintext = json.dumps(response, separators=(",", ":")).encode()
    return base64.b64encode(aes_gcm_encrypt(aes_key[:AES_KEY_LENGTH], response_iv, plaintext)).decode()


def encrypt_request(
    body: dict[str, Any], public_key, aes_key: bytes, iv: bytes,
) -> dict[str, str]:
    """Client side of the exchange; used by tests and local tooling."""
    return {
        "encrypted_aes_key": base64.b64encode(public_key.encrypt(aes_key, _oaep())).decode(),
        "initial_vector": base64.b64encode(iv).decode(),
        "encrypted_flow_data": base64.b64encode(
            aes_gcm_encrypt(aes_key, iv, json.dumps(body).encode())).decode(),
    }


def decrypt_response(encrypted: str, aes_key: bytes, iv: bytes, flip_iv: bool = False) -> Optional[dict]:
    response_iv = bytes(b ^ 0xFF for b in iv) if flip_iv else iv
    return json.loads(aes_gcm_decrypt(aes_key[:AES_KEY_LENGTH], response_iv, base64.b64decode(encrypted)))
