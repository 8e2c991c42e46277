"""Credential used for the remote IP range fetch.

Checking and establishing authentication is done before this tool runs
(gh auth login). Here we only pick the token up: GH_TOKEN, GITHUB_TOKEN,
then whatever the gh CLI has stored.
"""

import logging
import os
import shutil

from egressfw.commands import CommandRunner
from egressfw.errors import CredentialError

TOKEN_VARS = ("GH_TOKEN", "GITHUB_TOKEN")


def resolve_token(runner: CommandRunner) -> str:
    for name in TOKEN_VARS:
        value = os.getenv(name, "").strip()
        if value:
            logging.debug(f"Using token from {name}")
            return value

    if shutil.which("gh") is None:
        raise CredentialError("No GitHub token: set GH_TOKEN or install the gh CLI and run: gh auth login")

    result = runner.run(["gh", "auth", "token"], check=False, mutating=False)
    token = result.stdout.strip() if result.returncode == 0 else ""
    if not token:
        raise CredentialError("gh CLI is not authenticated; run: gh auth login")
    logging.debug("Using token from gh CLI")
    return token
