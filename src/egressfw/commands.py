from __future__ import annotations

import logging
import shutil
import subprocess
from typing import Iterable, List, Optional

from egressfw.errors import CommandError, MissingToolError

REQUIRED_TOOLS = ("iptables", "iptables-save", "iptables-restore", "ipset", "ip")


class CommandRunner:
    """Runs system commands; mutating commands are only logged in dry-run mode."""

    def __init__(self, dry_run: bool = False, timeout: float = 30.0):
        self.dry_run = dry_run
        self.timeout = timeout

    def run(self, cmd: List[str], check: bool = True, mutating: bool = True,
            input_text: Optional[str] = None) -> subprocess.CompletedProcess:
        if mutating and self.dry_run:
            logging.info(f"[DRY-RUN] {' '.join(cmd)}")
            if input_text:
                logging.info("[DRY-RUN] stdin:\n" + input_text)
            return subprocess.CompletedProcess(cmd, 0, "", "")

        logging.debug(f"Running command: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, input=input_text, check=False, stdout=subprocess.PIPE,
                                    stderr=subprocess.PIPE, text=True, timeout=self.timeout)
        except FileNotFoundError:
            raise MissingToolError(cmd[0])
        except subprocess.TimeoutExpired:
            if check:
                raise CommandError(cmd, f"timed out after {self.timeout}s")
            logging.warning(f"Command timed out: {' '.join(cmd)}")
            return subprocess.CompletedProcess(cmd, 124, "", "timed out")

        if check and result.returncode != 0:
            raise CommandError(cmd, result.stderr.strip() or None)
        return result

    def require_tools(self, tools: Iterable[str] = REQUIRED_TOOLS):
        for tool in tools:
            if shutil.which(tool) is None:
                raise MissingToolError(tool)
