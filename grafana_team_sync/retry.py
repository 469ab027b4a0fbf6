"""
Retry of a whole reconciliation pass when LDAP cannot be reached.

The reconciliation core never retries on its own. A connect failure happens
before any Grafana call, so repeating the pass cannot apply a change twice.
Bind failures and everything else are returned to the caller unchanged.
"""

import time
import logging
from typing import Any, Callable, Dict, TypeVar

from grafana_team_sync.errors import DirectoryConnectError

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_MAX_RETRIES = 2
DEFAULT_RETRY_WAIT_SECONDS = 5


def retry_on_connect_failure(func: Callable[[], T], error_handling: Dict[str, Any]) -> T:
    """
    Call func, calling it again while it raises DirectoryConnectError.

    Args:
        func: Zero-argument callable running one pass
        error_handling: The error_handling config section; reads max_retries
            and retry_wait_seconds

    Returns:
        Whatever func returns on the first successful attempt

    Raises:
        DirectoryConnectError: The last connect failure once retries run out
    """
    max_retries = max(0, int(error_handling.get('max_retries', DEFAULT_MAX_RETRIES)))
    wait_seconds = error_handling.get('retry_wait_seconds', DEFAULT_RETRY_WAIT_SECONDS)

    attempt = 0
    while True:
        try:
            result = func()
        except DirectoryConnectError as e:
            if attempt >= max_retries:
                logger.error(f"LDAP still unreachable after {attempt + 1} attempt(s): {e}")
                raise
            attempt += 1
            logger.warning(f"LDAP connect failed ({e}), retry {attempt}/{max_retries} "
                           f"in {wait_seconds} seconds")
            time.sleep(wait_seconds)
            continue

        if attempt:
            logger.info(f"LDAP connect succeeded on attempt {attempt + 1}")
        return result
