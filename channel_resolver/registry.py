"""
Channel Resolver - Chain Endpoint Registry.

============================================================
PURPOSE
============================================================
Maps a chain id to the REST endpoint its state is queried on.

Entries come from configuration through a loader callable.
The resolver reports failures per chain; after a run of
consecutive failures the entry is dropped and reloaded from the
loader on the next lookup, so a rotated endpoint is picked up
without a restart.

============================================================
"""

import logging
from typing import Callable, Dict, List, Optional


logger = logging.getLogger(__name__)


EndpointLoader = Callable[[], Dict[str, str]]

DEFAULT_FAILURE_THRESHOLD = 3


def _sanitize(url: str) -> str:
    return url.rstrip("/")


class ChainEndpointRegistry:
    """Chain id to REST endpoint lookup with failure driven invalidation."""

    def __init__(
        self,
        endpoints: Optional[Dict[str, str]] = None,
        loader: Optional[EndpointLoader] = None,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
    ) -> None:
        initial = dict(endpoints or {})
        self._loader: EndpointLoader = loader or (lambda: dict(initial))
        self._failure_threshold = failure_threshold
        self._endpoints: Dict[str, str] = {k: _sanitize(v) for k, v in initial.items()}
        self._failures: Dict[str, int] = {}

    def lookup(self, chain_id: str) -> Optional[str]:
        """Get the endpoint for a chain, reloading it if it was invalidated."""
        endpoint = self._endpoints.get(chain_id)
        if endpoint is not None:
            return endpoint

        try:
            loaded = self._loader()
        except Exception as e:
            logger.error(f"[registry] Endpoint loader failed: {e}")
            return None

        endpoint = loaded.get(chain_id)
        if endpoint:
            self._endpoints[chain_id] = _sanitize(endpoint)
            logger.debug(f"[registry] Loaded endpoint for {chain_id}")
            return self._endpoints[chain_id]
        return None

    def register(self, chain_id: str, endpoint: str) -> None:
        self._endpoints[chain_id] = _sanitize(endpoint)
        self._failures.pop(chain_id, None)

    def invalidate(self, chain_id: Optional[str] = None) -> None:
        """Drop one entry, or every entry when chain_id is None."""
        if chain_id is None:
            self._endpoints.clear()
            self._failures.clear()
            logger.info("[registry] All endpoints invalidated")
            return
        self._endpoints.pop(chain_id, None)
        self._failures.pop(chain_id, None)
        logger.info(f"[registry] Endpoint for {chain_id} invalidated")

    def report_failure(self, chain_id: str) -> bool:
        """
        Record a failed lookup against a chain.

        Returns:
            True if this failure caused the entry to be invalidated
        """
        count = self._failures.get(chain_id, 0) + 1
        self._failures[chain_id] = count
        if count >= self._failure_threshold:
            logger.warning(
                f"[registry] {count} consecutive failures for {chain_id}, invalidating endpoint"
            )
            self.invalidate(chain_id)
            return True
        return False

    def report_success(self, chain_id: str) -> None:
        self._failures.pop(chain_id, None)

    def failure_count(self, chain_id: str) -> int:
        return self._failures.get(chain_id, 0)

    def known_chains(self) -> List[str]:
        return sorted(self._endpoints)


__all__ = [
    "EndpointLoader",
    "DEFAULT_FAILURE_THRESHOLD",
    "ChainEndpointRegistry",
]
