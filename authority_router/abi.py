"""Call-data encoding helpers for the contract surfaces the router touches."""

from __future__ import annotations

from typing import Any, List, Sequence

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, keccak, to_bytes, to_checksum_address

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

OWNER = "owner()"
ADMIN = "admin()"
MINIMUM_DELAY = "MINIMUM_DELAY()"
PROXY_UPGRADE = "upgrade(address,address)"
TIMELOCK_QUEUE = "queueTransaction(address,uint256,string,bytes,uint256)"
TIMELOCK_EXECUTE = "executeTransaction(address,uint256,string,bytes,uint256)"

TIMELOCK_TUPLE_TYPES = ["address", "uint256", "string", "bytes", "uint256"]


def split_signature_types(signature: str) -> List[str]:
    """Return the argument types of ``name(type,...)``, honouring nested tuples."""

    start = signature.find("(")
    if start < 0 or not signature.endswith(")"):
        raise ValueError(f"Malformed function signature: {signature!r}")
    body = signature[start + 1 : -1]
    if not body:
        return []
    types: List[str] = []
    depth = 0
    current = ""
    for char in body:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == "," and depth == 0:
            types.append(current.strip())
            current = ""
            continue
        current += char
    types.append(current.strip())
    return types


def selector(signature: str) -> bytes:
    return function_signature_to_4byte_selector(signature)


def encode_call(signature: str, args: Sequence[Any] = ()) -> bytes:
    """Encode a call to ``signature`` with ``args`` as raw call data."""

    types = split_signature_types(signature)
    if len(types) != len(args):
        raise ValueError(f"{signature} expects {len(types)} arguments, got {len(args)}")
    if not types:
        return selector(signature)
    return selector(signature) + encode(types, list(args))


def decode_call(signature: str, call_data: bytes) -> tuple:
    """Decode ``call_data`` produced by :func:`encode_call` for ``signature``."""

    if call_data[:4] != selector(signature):
        raise ValueError(f"Call data does not target {signature}")
    return tuple(decode(split_signature_types(signature), call_data[4:]))


def encode_params(param_types: Sequence[str], params: Sequence[Any]) -> bytes:
    if len(param_types) != len(params):
        raise ValueError("param_types and params must have the same length")
    return encode(list(param_types), list(params))


def decode_address(raw: bytes) -> str:
    (value,) = decode(["address"], raw)
    return to_checksum_address(value)


def decode_uint(raw: bytes) -> int:
    (value,) = decode(["uint256"], raw)
    return int(value)


def as_bytes(data: bytes | str | None) -> bytes:
    """Normalise hex strings and ``None`` into raw bytes."""

    if data is None:
        return b""
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    if isinstance(data, str):
        if data in ("", "0x"):
            return b""
        return to_bytes(hexstr=data)
    raise TypeError(f"Unsupported call data type: {type(data).__name__}")


def timelock_action_id(target: str, value: int, signature: str, data: bytes, eta: int) -> bytes:
    """Return the key a Compound-style timelock stores queued actions under."""

    return keccak(
        encode(TIMELOCK_TUPLE_TYPES, [to_checksum_address(target), int(value), signature, data, int(eta)])
    )


__all__ = [
    "ADMIN",
    "MINIMUM_DELAY",
    "OWNER",
    "PROXY_UPGRADE",
    "TIMELOCK_EXECUTE",
    "TIMELOCK_QUEUE",
    "ZERO_ADDRESS",
    "as_bytes",
    "decode_address",
    "decode_call",
    "decode_uint",
    "encode_call",
    "encode_params",
    "selector",
    "split_signature_types",
    "timelock_action_id",
]
