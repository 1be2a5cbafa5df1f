"""Password hash check used by login.

Hashes use the PHC-like scrypt format $scrypt$n=N,r=R,p=P$salt$hash.
Routes get the check through the get_password_verifier dependency so a
deployment (or a test) can swap in its own primitive.
"""

import base64
import os
from typing import Callable

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

SCRYPT_N = 2**15
SCRYPT_R = 8
SCRYPT_P = 1
SALT_LENGTH = 16
KEY_LENGTH = 32

PasswordVerifier = Callable[[str, str | None], bool]


def hash_password(password: str) -> str:
    salt = os.urandom(SALT_LENGTH)
    kdf = Scrypt(salt=salt, length=KEY_LENGTH, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    key = kdf.derive(password.encode("utf-8"))

    salt_b64 = base64.b64encode(salt).decode("ascii")
    hash_b64 = base64.b64encode(key).decode("ascii")
    return f"$scrypt$n={SCRYPT_N},r={SCRYPT_R},p={SCRYPT_P}${salt_b64}${hash_b64}"


def verify_password(password: str, hash_string: str | None) -> bool:
    """True if password matches the stored hash.

    Missing or unreadable hashes never match.
    """
    if not hash_string:
        return False

    parts = hash_string.split("$")
    if len(parts) != 5 or parts[1] != "scrypt":
        return False

    try:
        params = dict(p.split("=") for p in parts[2].split(","))
        n, r, p = int(params["n"]), int(params["r"]), int(params["p"])
        salt = base64.b64decode(parts[3], validate=True)
        expected = base64.b64decode(parts[4], validate=True)
        kdf = Scrypt(salt=salt, length=len(expected), n=n, r=r, p=p)
    except (KeyError, ValueError):
        return False

    try:
        kdf.verify(password.encode("utf-8"), expected)
    except InvalidKey:
        return False
    return True


def get_password_verifier() -> PasswordVerifier:
    """FastAPI dependency providing the password check."""
    return verify_password
