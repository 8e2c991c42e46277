from __future__ import annotations

import logging
from typing import Callable

import requests

from egressfw.errors import VerificationError


def http_probe(url: str, timeout: float) -> bool:
    """True when the URL answers with a non-error status within the timeout."""
    try:
        response = requests.get(url, timeout=timeout, allow_redirects=False)
    except requests.RequestException as e:
        logging.debug(f"Probe {url} failed: {e}")
        return False
    response.close()
    return response.status_code < 400


class Verifier:
    def __init__(self, blocked_url: str, required_url: str, best_effort_url: str = "",
                 blocked_timeout: float = 3.0, timeout: float = 5.0,
                 probe: Callable[[str, float], bool] = http_probe):
        self.blocked_url = blocked_url
        self.required_url = required_url
        self.best_effort_url = best_effort_url
        self.blocked_timeout = blocked_timeout
        self.timeout = timeout
        self.probe = probe

    def verify(self):
        logging.info(f"  Test 1: Verifying {self.blocked_url} is unreachable...")
        if self.probe(self.blocked_url, self.blocked_timeout):
            raise VerificationError(f"Firewall verification failed: able to reach blocked site ({self.blocked_url})")
        logging.info(f"  Blocked site is unreachable ({self.blocked_url})")

        logging.info(f"  Test 2: Verifying {self.required_url} is reachable...")
        if not self.probe(self.required_url, self.timeout):
            raise VerificationError(f"Firewall verification failed: unable to reach {self.required_url}; "
                                    f"the allowed IP ranges may be incorrect or outdated")
        logging.info(f"  Required service is reachable ({self.required_url})")

        if self.best_effort_url:
            logging.info(f"  Test 3: Verifying {self.best_effort_url} is reachable...")
            if self.probe(self.best_effort_url, self.timeout):
                logging.info(f"  {self.best_effort_url} is reachable")
            else:
                logging.warning(f"{self.best_effort_url} is not reachable; installs from it may fail "
                                f"(DNS timing or changed IPs)")
