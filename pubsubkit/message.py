"""Pubsub messages, their wire encoding and their signatures."""

from __future__ import annotations

import enum
import hashlib
from dataclasses import dataclass, replace
from typing import Any, Optional, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

SIGN_PREFIX = b"libp2p-pubsub:"

PublicKey = Union[
    ed25519.Ed25519PublicKey, rsa.RSAPublicKey, ec.EllipticCurvePublicKey
]
PrivateKey = Union[
    ed25519.Ed25519PrivateKey, rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey
]

_SIGNING = 1
_VERIFICATION = 2
_MAX_INLINE_KEY_LENGTH = 42
_IDENTITY_MULTIHASH = 0x00
_SHA256_MULTIHASH = 0x12


class SignatureError(Exception):
    """Raised when a message signature or signing key is missing or invalid."""


class MessageSignaturePolicy(enum.IntFlag):
    """Whether signatures are produced and whether incoming ones are verified."""

    LAX_NO_SIGN = 0
    LAX_SIGN = _SIGNING
    STRICT_NO_SIGN = _VERIFICATION
    STRICT_SIGN = _SIGNING | _VERIFICATION

    @property
    def must_verify(self) -> bool:
        """True when incoming signatures must be checked (or checked to be absent)."""
        return bool(self & _VERIFICATION)

    @property
    def must_sign(self) -> bool:
        """True when local messages are signed and incoming ones must carry one."""
        return bool(self & _SIGNING)


class _KeyType(enum.IntEnum):
    RSA = 0
    ED25519 = 1
    SECP256K1 = 2
    ECDSA = 3


def _varint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _read_varint(buf: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(buf):
            raise SignatureError("truncated varint")
        byte = buf[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift > 63:
            raise SignatureError("varint too long")


def _bytes_field(number: int, value: bytes) -> bytes:
    return _varint(number << 3 | 2) + _varint(len(value)) + value


def _parse_fields(buf: bytes) -> dict[int, Union[int, bytes]]:
    fields: dict[int, Union[int, bytes]] = {}
    pos = 0
    while pos < len(buf):
        tag, pos = _read_varint(buf, pos)
        number, wire_type = tag >> 3, tag & 0x07
        if wire_type == 0:
            fields[number], pos = _read_varint(buf, pos)
        elif wire_type == 2:
            length, pos = _read_varint(buf, pos)
            if pos + length > len(buf):
                raise SignatureError("truncated field")
            fields[number] = buf[pos : pos + length]
            pos += length
        else:
            raise SignatureError(f"unsupported wire type {wire_type}")
    return fields


@dataclass
class Message:
    """A pubsub message together with its local delivery metadata."""

    data: Optional[bytes] = None
    topic: Optional[str] = None
    from_peer: Optional[bytes] = None
    seqno: Optional[bytes] = None
    signature: Optional[bytes] = None
    key: Optional[bytes] = None
    id: str = ""
    received_from: bytes = b""
    validator_data: Any = None
    local: bool = False

    def marshal(self) -> bytes:
        """Encode the wire fields in protobuf form."""
        topic = None if self.topic is None else self.topic.encode("utf-8")
        fields = (
            (1, self.from_peer),
            (2, self.data),
            (3, self.seqno),
            (4, topic),
            (5, self.signature),
            (6, self.key),
        )
        return b"".join(
            _bytes_field(number, value) for number, value in fields if value is not None
        )


@dataclass
class SubOpts:
    """A subscription announcement for one topic."""

    topic_id: str = ""
    subscribe: bool = False


def _marshal_public_key(public_key: PublicKey) -> bytes:
    if isinstance(public_key, ed25519.Ed25519PublicKey):
        key_type = _KeyType.ED25519
        raw = public_key.public_bytes(
            serialization.Encoding.Raw, serialization.PublicFormat.Raw
        )
    elif isinstance(public_key, rsa.RSAPublicKey):
        key_type = _KeyType.RSA
        raw = public_key.public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    elif isinstance(public_key, ec.EllipticCurvePublicKey):
        if isinstance(public_key.curve, ec.SECP256K1):
            key_type = _KeyType.SECP256K1
            raw = public_key.public_bytes(
                serialization.Encoding.X962,
                serialization.PublicFormat.CompressedPoint,
            )
        else:
            key_type = _KeyType.ECDSA
            raw = public_key.public_bytes(
                serialization.Encoding.DER,
                serialization.PublicFormat.SubjectPublicKeyInfo,
            )
    else:
        raise SignatureError(f"unsupported key type {type(public_key).__name__}")
    return _varint(1 << 3) + _varint(key_type) + _bytes_field(2, raw)


def _unmarshal_public_key(encoded: bytes) -> PublicKey:
    fields = _parse_fields(encoded)
    key_type, raw = fields.get(1), fields.get(2)
    if not isinstance(key_type, int) or not isinstance(raw, bytes):
        raise SignatureError("malformed public key")
    try:
        if key_type == _KeyType.ED25519:
            return ed25519.Ed25519PublicKey.from_public_bytes(raw)
        if key_type == _KeyType.SECP256K1:
            return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), raw)
        if key_type in (_KeyType.RSA, _KeyType.ECDSA):
            loaded = serialization.load_der_public_key(raw)
            expected = rsa.RSAPublicKey if key_type == _KeyType.RSA else ec.EllipticCurvePublicKey
            if not isinstance(loaded, expected):
                raise SignatureError("public key does not match its declared type")
            return loaded
    except (ValueError, UnsupportedAlgorithm) as exc:
        raise SignatureError(f"malformed public key: {exc}") from exc
    raise SignatureError(f"unknown key type {key_type}")


def peer_id_from_public_key(public_key: PublicKey) -> bytes:
    """Derive the peer ID (a multihash of the encoded key) for ``public_key``."""
    encoded = _marshal_public_key(public_key)
    if len(encoded) <= _MAX_INLINE_KEY_LENGTH:
        return bytes([_IDENTITY_MULTIHASH]) + _varint(len(encoded)) + encoded
    digest = hashlib.sha256(encoded).digest()
    return bytes([_SHA256_MULTIHASH]) + _varint(len(digest)) + digest


def _decode_peer_id(peer_id: bytes) -> tuple[int, bytes]:
    try:
        code, pos = _read_varint(peer_id, 0)
        length, pos = _read_varint(peer_id, pos)
    except SignatureError as exc:
        raise SignatureError(f"invalid peer ID: {exc}") from exc
    digest = peer_id[pos:]
    if len(digest) != length:
        raise SignatureError("invalid peer ID: length mismatch")
    return code, digest


def _extract_public_key(peer_id: bytes) -> Optional[PublicKey]:
    code, digest = _decode_peer_id(peer_id)
    if code != _IDENTITY_MULTIHASH:
        return None
    return _unmarshal_public_key(digest)


def message_public_key(msg: Message) -> PublicKey:
    """Return the key that signed ``msg``: the attached one or the one in its source ID."""
    peer_id = msg.from_peer or b""
    _decode_peer_id(peer_id)
    if msg.key is None:
        try:
            public_key = _extract_public_key(peer_id)
        except SignatureError as exc:
            raise SignatureError(f"cannot extract signing key: {exc}") from exc
        if public_key is None:
            raise SignatureError("cannot extract signing key")
        return public_key
    try:
        public_key = _unmarshal_public_key(msg.key)
    except SignatureError as exc:
        raise SignatureError(f"cannot unmarshal signing key: {exc}") from exc
    if peer_id_from_public_key(public_key) != peer_id:
        raise SignatureError(
            f"bad signing key; source ID {peer_id.hex()} doesn't match key"
        )
    return public_key


def with_sign_prefix(data: bytes) -> bytes:
    """Prefix ``data`` with the signing domain separator."""
    return SIGN_PREFIX + data


def _sign(key: PrivateKey, data: bytes) -> bytes:
    if isinstance(key, ed25519.Ed25519PrivateKey):
        return key.sign(data)
    if isinstance(key, rsa.RSAPrivateKey):
        return key.sign(data, padding.PKCS1v15(), hashes.SHA256())
    if isinstance(key, ec.EllipticCurvePrivateKey):
        return key.sign(data, ec.ECDSA(hashes.SHA256()))
    raise SignatureError(f"unsupported key type {type(key).__name__}")


def _verify(public_key: PublicKey, data: bytes, signature: bytes) -> bool:
    try:
        if isinstance(public_key, ed25519.Ed25519PublicKey):
            public_key.verify(signature, data)
        elif isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
        else:
            public_key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
    except InvalidSignature:
        return False
    return True


def sign_message(peer_id: bytes, key: PrivateKey, msg: Message) -> None:
    """Sign ``msg`` in place; attach the public key if ``peer_id`` does not embed it."""
    msg.signature = _sign(key, with_sign_prefix(msg.marshal()))
    try:
        embedded = _extract_public_key(peer_id)
    except SignatureError:
        embedded = None
    if embedded is None:
        msg.key = _marshal_public_key(key.public_key())


def verify_message_signature(msg: Message) -> None:
    """Raise SignatureError unless ``msg`` carries a valid signature of its source."""
    public_key = message_public_key(msg)
    unsigned = replace(msg, signature=None, key=None)
    data = with_sign_prefix(unsigned.marshal())
    if msg.signature is None or not _verify(public_key, data, msg.signature):
        raise SignatureError("invalid signature")