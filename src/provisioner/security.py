"""Keyless credential enforcement.

The provisioner authenticates with Application Default Credentials only:
- On a workstation: `gcloud auth application-default login` (user credentials)
- In CI: workload identity federation (external_account credentials)
- On Google Cloud: the attached service account via the metadata server

SECURITY INVARIANTS:
1. A downloaded service account key (type "service_account") is rejected
   unless ALLOW_SERVICE_ACCOUNT_KEYS=true is set explicitly
2. Credentials are always scoped to cloud-platform and never logged
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import google.auth
from google.auth.credentials import Credentials

logger = logging.getLogger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

CREDENTIALS_ENV_VAR = "GOOGLE_APPLICATION_CREDENTIALS"
ALLOW_KEYS_ENV_VAR = "ALLOW_SERVICE_ACCOUNT_KEYS"

KEYLESS_VIOLATION_MESSAGE = """
╔══════════════════════════════════════════════════════════════════════════════╗
║                         SECURITY VIOLATION DETECTED                          ║
╠══════════════════════════════════════════════════════════════════════════════╣
║  This provisioner authenticates with keyless Application Default            ║
║  Credentials only.                                                           ║
║                                                                               ║
║  Detected: {path} is a long-lived service account key                        ║
║                                                                               ║
║  RESOLUTION:                                                                  ║
║  1. Unset GOOGLE_APPLICATION_CREDENTIALS and delete the key file            ║
║  2. Run `gcloud auth application-default login`, or                          ║
║  3. Configure workload identity federation for CI                            ║
║                                                                               ║
║  Set ALLOW_SERVICE_ACCOUNT_KEYS=true only if no alternative exists.          ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""


class KeylessViolationError(Exception):
    """Raised when a long-lived service account key is configured.

    Fatal: no remote call is made while this is unresolved.
    """

    pass


def _credentials_file_type(path: Path) -> str | None:
    try:
        data: Any = json.loads(path.read_text())
    except (OSError, ValueError):
        # Unreadable files are left for google.auth to report
        return None
    return data.get("type") if isinstance(data, dict) else None


def enforce_keyless_credentials() -> None:
    """Reject a configured service account key file.

    Raises:
        KeylessViolationError: If GOOGLE_APPLICATION_CREDENTIALS names a key file
            and ALLOW_SERVICE_ACCOUNT_KEYS is not "true".
    """
    path = os.environ.get(CREDENTIALS_ENV_VAR)
    if not path:
        return

    if _credentials_file_type(Path(path)) != "service_account":
        return

    if os.environ.get(ALLOW_KEYS_ENV_VAR, "").lower() == "true":
        logger.warning(
            "Using a service account key file",
            extra={"security_event": "key_file_allowed", "env_var": CREDENTIALS_ENV_VAR},
        )
        return

    logger.critical(
        "Keyless credential violation",
        extra={
            "security_event": "key_file_detected",
            "env_var": CREDENTIALS_ENV_VAR,
            "action": "startup_blocked",
        },
    )
    raise KeylessViolationError(KEYLESS_VIOLATION_MESSAGE.format(path=path))


def get_credentials() -> tuple[Credentials, str | None]:
    """Return Application Default Credentials after the keyless check.

    Returns:
        Tuple of (credentials, default project id or None).

    Raises:
        KeylessViolationError: If a service account key file is configured.
        google.auth.exceptions.DefaultCredentialsError: If no credentials exist.
    """
    enforce_keyless_credentials()
    credentials, project = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
    logger.info(
        "Loaded application default credentials",
        extra={"credential_type": type(credentials).__name__, "default_project": project},
    )
    return credentials, project
