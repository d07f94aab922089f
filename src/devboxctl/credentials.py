"""Login credential generation and application."""
from __future__ import annotations

import hashlib
import os
import secrets
import string
import time
import uuid

from .providers.docker import DockerProvider
from .state import CredentialRecord, utc_now

ALPHABET = string.ascii_letters + string.digits
DEFAULT_LENGTH = 16


def _is_strong(candidate: str) -> bool:
    return (
        any(char.islower() for char in candidate)
        and any(char.isupper() for char in candidate)
        and any(char.isdigit() for char in candidate)
    )


def _fallback_stream(length: int) -> str:
    """Derive characters from a BLAKE2b stream seeded with time, pid and a UUID."""
    seed = f"{time.time_ns()}:{os.getpid()}:{uuid.uuid4().hex}".encode()
    chars: list[str] = []
    counter = 0
    while len(chars) < length:
        block = hashlib.blake2b(seed + counter.to_bytes(8, "big"), digest_size=64).digest()
        counter += 1
        for byte in block:
            # Reject bytes that would bias the modulo.
            if byte >= 248:
                continue
            chars.append(ALPHABET[byte % len(ALPHABET)])
            if len(chars) == length:
                break
    return "".join(chars)


def generate_password(length: int = DEFAULT_LENGTH) -> str:
    """Return a random alphanumeric password with mixed character classes."""
    if length < 3:
        raise ValueError("Password length must be at least 3.")
    while True:
        try:
            candidate = "".join(secrets.choice(ALPHABET) for _ in range(length))
        except (NotImplementedError, OSError):
            candidate = _fallback_stream(length)
        if _is_strong(candidate):
            return candidate


def apply_password(docker: DockerProvider, container: str, user: str, password: str) -> None:
    """Set *user*'s password inside *container* via ``chpasswd`` on stdin."""
    docker.exec_command(container, ["chpasswd"], stdin=f"{user}:{password}\n")


def rotate_credential(
    docker: DockerProvider,
    container: str,
    user: str,
    *,
    length: int = DEFAULT_LENGTH,
) -> CredentialRecord:
    """Generate, apply and return a fresh credential for *user*."""
    password = generate_password(length)
    apply_password(docker, container, user, password)
    return CredentialRecord(user=user, password=password, generated_at=utc_now())


__all__ = ["apply_password", "generate_password", "rotate_credential"]
