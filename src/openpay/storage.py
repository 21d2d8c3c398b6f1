"""Private on-disk locations for the audit log and its key."""

from __future__ import annotations

import os
from pathlib import Path


OPENPAY_DIR = Path.home() / ".openpay"
SECRETS_DIR = Path.home() / ".openpay-secrets"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)
