"""Root password and SSH key pair shared by all VMs of a run.

Both are kept in the work directory so that an operator can log into the
VMs after a run (see the generated ``ssh.<index>`` helpers) and so that a
re-run with the same work directory keeps using them.
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path

import asyncssh

logger = logging.getLogger(__name__)

PASSWORD_FILE = "passwd"
PRIVATE_KEY_FILE = "id"
PUBLIC_KEY_FILE = "id.pub"


@dataclass(frozen=True)
class Credentials:
    """Login material for the guests."""
    root_password: str
    private_key_path: Path
    public_key: str


def _load_or_create_password(work_dir: Path) -> str:
    path = work_dir / PASSWORD_FILE
    if path.exists():
        password = path.read_text().strip()
        if password:
            return password
    password = secrets.token_hex(8)
    path.write_text(password + "\n")
    os.chmod(path, 0o600)
    logger.info(f"Generated root password in {path}")
    return password


def _load_or_create_key(work_dir: Path) -> str:
    private_path = work_dir / PRIVATE_KEY_FILE
    public_path = work_dir / PUBLIC_KEY_FILE
    if private_path.exists():
        key = asyncssh.read_private_key(str(private_path))
    else:
        key = asyncssh.generate_private_key("ssh-ed25519", comment="kvmfleet")
        key.write_private_key(str(private_path))
        os.chmod(private_path, 0o600)
        logger.info(f"Generated SSH key {private_path}")
    public_key = key.export_public_key("openssh").decode().strip()
    if not public_path.exists():
        public_path.write_text(public_key + "\n")
    return public_key


def load_credentials(work_dir: Path) -> Credentials:
    """Return the run's credentials, creating missing ones in ``work_dir``."""
    work_dir.mkdir(parents=True, exist_ok=True)
    return Credentials(
        root_password=_load_or_create_password(work_dir),
        private_key_path=(work_dir / PRIVATE_KEY_FILE).resolve(),
        public_key=_load_or_create_key(work_dir),
    )
