"""
Control secret provisioning.

Resolution order: explicit value, then the cached secret file, then a newly
generated secret persisted with owner-only permissions. If the file cannot
be written the generated secret is kept in memory for this run only.
"""

import logging
import os
import secrets
from pathlib import Path
from typing import Optional

from .errors import ConfigError
from .network import is_loopback_address

logger = logging.getLogger(__name__)

MIN_REMOTE_SECRET_LENGTH = 16


class SecretSource:
    ENV = "env"
    FILE = "file"
    GENERATED = "generated"
    GENERATED_EPHEMERAL = "generated-ephemeral"


def read_secret_file(secret_file: Path) -> Optional[str]:
    """
    Read a cached secret. Missing or blank files, or a path that cannot
    exist because a parent is a regular file, count as absent.

    A file that exists but cannot be read is a configuration error rather
    than a reason to mint a new secret over it.
    """
    try:
        existing = secret_file.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, NotADirectoryError):
        return None
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Could not read GUARDIAN_CONTROL_SECRET_FILE {secret_file}: {e}") from None
    return existing or None


def write_secret_file(secret_file: Path, secret: str):
    """Persist a secret with mode 0600, creating parent directories."""
    secret_file.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(secret_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(f"{secret}\n")
    try:
        os.chmod(secret_file, 0o600)
    except OSError:
        # Not every filesystem supports chmod
        pass


def provision_secret(explicit: Optional[str], secret_file: Path, bind: str) -> tuple[str, str]:
    """Resolve the control secret. Returns (secret, source)."""
    secret = (explicit or "").strip()
    source = SecretSource.ENV

    if not secret:
        cached = read_secret_file(secret_file)
        if cached:
            secret = cached
            source = SecretSource.FILE
        else:
            secret = secrets.token_hex(32)
            try:
                write_secret_file(secret_file, secret)
                source = SecretSource.GENERATED
            except OSError as e:
                logger.warning(f"Could not persist control secret to {secret_file}: {e}")
                source = SecretSource.GENERATED_EPHEMERAL

    if not is_loopback_address(bind) and len(secret) < MIN_REMOTE_SECRET_LENGTH:
        raise ConfigError(
            f"GUARDIAN_CONTROL_SECRET must be at least {MIN_REMOTE_SECRET_LENGTH} characters "
            "when GUARDIAN_CONTROL_BIND is non-loopback."
        )

    logger.info(f"Control secret source: {source}")
    return secret, source
