from __future__ import annotations

import os
from typing import Dict, Mapping, Optional

SHELL = os.environ.get("GATEDCI_SHELL", "bash")
OUTPUT_TAIL = int(os.environ.get("GATEDCI_OUTPUT_TAIL", "4000"))
GITHUB_SERVER = os.environ.get("GATEDCI_GITHUB_SERVER", "https://github.com").rstrip("/")
WEBHOOK_SECRET = os.environ.get("GATEDCI_WEBHOOK_SECRET")
DEFAULT_WORKFLOW = os.environ.get("GATEDCI_WORKFLOW")
RUN_HISTORY = int(os.environ.get("GATEDCI_RUN_HISTORY", "200"))

SECRET_PREFIX = "GATEDCI_SECRET_"


def load_secrets(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """
    Build the `secrets` context from the process environment.

    GITHUB_TOKEN is passed through as-is; every GATEDCI_SECRET_<NAME>
    becomes secrets.<NAME>.
    """
    if environ is None:
        environ = os.environ
    secrets: Dict[str, str] = {}
    if environ.get("GITHUB_TOKEN"):
        secrets["GITHUB_TOKEN"] = environ["GITHUB_TOKEN"]
    for key, value in environ.items():
        if key.startswith(SECRET_PREFIX) and len(key) > len(SECRET_PREFIX):
            secrets[key[len(SECRET_PREFIX):]] = value
    return secrets
