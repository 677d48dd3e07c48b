"""Centralized path definitions for mailmirror.

Single source of truth for every on-disk location. The base directory can be
moved with the ``MAILMIRROR_HOME`` environment variable (used by the tests).
"""

import os
from pathlib import Path

# Base application directory
MAILMIRROR_DIR = Path(os.getenv("MAILMIRROR_HOME", Path.home() / ".mailmirror"))

# Subdirectories
DATA_DIR = MAILMIRROR_DIR / "data"
LOGS_DIR = MAILMIRROR_DIR / "logs"
SECRETS_DIR = MAILMIRROR_DIR / "secrets"

# Specific files
CONFIG_PATH = MAILMIRROR_DIR / "config.json"
DATABASE_PATH = DATA_DIR / "mailbox.db"
MASTER_KEY_PATH = SECRETS_DIR / ".master.key"
CREDENTIALS_PATH = SECRETS_DIR / "credentials.enc"
CLIENT_SECRET_PATH = Path("client_secret.json")
