import json
import logging
from dataclasses import dataclass
from pathlib import Path

from overcast_archive.utils import Ciphertext, EncryptionKey, decrypt, encrypt

logger = logging.getLogger("credentials")

_USERNAME_FIELD = "overcast_username"
_PASSWORD_FIELD = "overcast_password"
_ENCRYPTED_PASSWORD_FIELD = f"encrypted_{_PASSWORD_FIELD}"


class CredentialsError(Exception):
    pass


@dataclass
class Credentials:
    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


def load_credentials(path: Path, key: EncryptionKey | None = None) -> Credentials:
    """
    Read an auth file. The password is either stored in the clear under
    `overcast_password` or, when saved with an encryption key, under
    `encrypted_overcast_password`.
    """
    logger.debug("loading credentials: %s", path)
    try:
        with path.open("r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise CredentialsError(f"Unable to read {path}: {e}") from e

    if not isinstance(data, dict) or not data.get(_USERNAME_FIELD):
        raise CredentialsError(f"{path} is missing {_USERNAME_FIELD}")

    if ciphertext := data.get(_ENCRYPTED_PASSWORD_FIELD):
        if key is None:
            raise CredentialsError(
                f"{path} has an encrypted password but no encryption key is set"
            )
        password = _decrypt_password(key, Ciphertext(ciphertext))
    elif data.get(_PASSWORD_FIELD):
        password = data[_PASSWORD_FIELD]
    else:
        raise CredentialsError(f"{path} is missing {_PASSWORD_FIELD}")

    return Credentials(username=data[_USERNAME_FIELD], password=password)


def save_credentials(
    path: Path,
    credentials: Credentials,
    key: EncryptionKey | None = None,
) -> None:
    data = {_USERNAME_FIELD: credentials.username}
    if key is not None:
        data[_ENCRYPTED_PASSWORD_FIELD] = encrypt(key, credentials.password)
    else:
        data[_PASSWORD_FIELD] = credentials.password

    logger.debug("saving credentials: %s", path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        path.chmod(0o600)
    except OSError as e:
        raise CredentialsError(f"Unable to write {path}: {e}") from e


def _decrypt_password(key: EncryptionKey, ciphertext: Ciphertext) -> str:
    try:
        return decrypt(key, ciphertext)
    except ValueError as e:
        raise CredentialsError("Unable to decrypt password, wrong key?") from e
