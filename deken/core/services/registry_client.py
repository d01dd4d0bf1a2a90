"""
Registry client — queries the deken JSON API.

Two endpoints, both read-only:

- the bulk search endpoint lists every package, every version and
  every architecture variant in one response;
- the info endpoint lists the objects shipped in one artifact.  There
  is no bulk form, so the catalog worker calls it once per artifact it
  has already selected for this platform, never for the rest.

No retries: a failure is reported and the next refresh tries again.
"""

from __future__ import annotations

import json
import logging
import urllib.parse
from typing import Any

from pydantic import ValidationError

from deken.core.config.loader import DEFAULT_INFO_URL, DEFAULT_SEARCH_URL
from deken.core.errors import MalformedResponse
from deken.core.models.registry import InfoResponse, RawLibraryEntry, SearchResponse
from deken.core.services.fetcher import Opener, http_get

logger = logging.getLogger(__name__)

# package → versions → architecture variants
LibraryTree = list[list[list[RawLibraryEntry]]]


def _parse_json(body: bytes, url: str) -> Any:
    if not body.strip():
        raise MalformedResponse(f"Empty response from {url}")
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedResponse(f"Invalid JSON from {url}: {e}") from e


def parse_search_response(payload: Any) -> LibraryTree:
    """Validate a bulk search payload into typed variants.

    The nesting itself must be right or the whole response is rejected.
    Individual variants that fail validation are dropped with a warning.
    Packages left with no valid variant are kept as empty lists so the
    caller's view of the package count is unchanged.

    Raises:
        MalformedResponse: If the outer shape is wrong.
    """
    try:
        response = SearchResponse.model_validate(payload)
    except ValidationError as e:
        raise MalformedResponse(f"Unexpected search response shape: {e.error_count()} error(s)") from e

    tree: LibraryTree = []
    skipped = 0
    for versions in response.result.libraries:
        package: list[list[RawLibraryEntry]] = []
        for variants in versions:
            typed: list[RawLibraryEntry] = []
            for raw in variants:
                try:
                    typed.append(RawLibraryEntry.model_validate(raw))
                except ValidationError:
                    skipped += 1
            package.append(typed)
        tree.append(package)

    if skipped:
        logger.warning("Skipped %d malformed registry entr%s", skipped, "y" if skipped == 1 else "ies")
    return tree


def parse_info_response(payload: Any) -> list[str]:
    """Extract object names from an info payload.

    Raises:
        MalformedResponse: If the payload does not have the info shape.
    """
    try:
        response = InfoResponse.model_validate(payload)
    except ValidationError as e:
        raise MalformedResponse(f"Unexpected info response shape: {e.error_count()} error(s)") from e
    return response.object_names()


class RegistryClient:
    """Thin typed wrapper around the two registry endpoints."""

    def __init__(
        self,
        *,
        search_url: str = DEFAULT_SEARCH_URL,
        info_url: str = DEFAULT_INFO_URL,
        timeout: float = 5.0,
        opener: Opener | None = None,
    ) -> None:
        self.search_url = search_url
        self.info_url = info_url
        self.timeout = timeout
        self._opener = opener

    def fetch_catalog(self) -> LibraryTree:
        """Fetch every package variant the registry knows about.

        Raises:
            NetworkUnreachable: Connection failure or non-200 status.
            MalformedResponse: Body is not the expected JSON shape.
        """
        logger.info("Fetching catalog from %s", self.search_url)
        body = http_get(self.search_url, timeout=self.timeout, opener=self._opener)
        tree = parse_search_response(_parse_json(body, self.search_url))
        logger.debug("Registry returned %d packages", len(tree))
        return tree

    def fetch_object_names(self, artifact_url: str) -> list[str]:
        """List the objects shipped in one artifact.

        Raises:
            NetworkUnreachable: Connection failure or non-200 status.
            MalformedResponse: Body is not the expected JSON shape.
        """
        url = f"{self.info_url}?{urllib.parse.urlencode({'url': artifact_url})}"
        body = http_get(url, timeout=self.timeout, opener=self._opener)
        return parse_info_response(_parse_json(body, url))
