from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from kestrel.core.job_fetcher import fetch_job_text
from kestrel.db.repositories import normalize_profile_url
from kestrel.types import LeadScrapeOptions, SearchOptions, SearchPage

logger = logging.getLogger(__name__)


def _load(path: Path) -> Any:
    if not path.exists():
        raise FileNotFoundError(f"feed file {path} does not exist")
    return json.loads(path.read_text(encoding="utf-8"))


class JsonFeedScraper:
    """Reads scraper output dumped as JSON files.

    The job feed is either a list of pages (each a list of postings), a flat
    list of postings (one page), or ``{"pages": [...]}``. The lead feed is a
    list of profile objects or ``{"profiles": [...]}``.
    """

    def __init__(
        self,
        *,
        job_feed: Path | None = None,
        lead_feed: Path | None = None,
        fetch_missing_descriptions: bool = False,
        fetch_timeout_sec: int = 30,
    ):
        self.job_feed = job_feed
        self.lead_feed = lead_feed
        self.fetch_missing_descriptions = fetch_missing_descriptions
        self.fetch_timeout_sec = fetch_timeout_sec
        self._pages: list[list[dict[str, Any]]] = []
        self._loaded_mtime: float | None = None

    def fetch_page(self, options: SearchOptions, page: int) -> SearchPage:
        pages = self._job_pages()
        if page < 1 or page > len(pages):
            return SearchPage(postings=[], has_next=False)

        postings = []
        for raw in pages[page - 1]:
            posting = dict(raw)
            if self.fetch_missing_descriptions and not posting.get("description") and posting.get("url"):
                posting["description"] = fetch_job_text(str(posting["url"]), timeout_sec=self.fetch_timeout_sec)
            postings.append(posting)
        return SearchPage(postings=postings, has_next=page < len(pages))

    def iter_profiles(self, options: LeadScrapeOptions, *, after: str | None = None) -> Iterator[dict[str, Any]]:
        if self.lead_feed is None:
            raise FileNotFoundError("no lead feed configured")
        payload = _load(self.lead_feed)
        profiles = payload.get("profiles", []) if isinstance(payload, dict) else payload

        resume_from = normalize_profile_url(after) if after else None
        skipping = resume_from is not None
        for profile in profiles:
            if skipping:
                url = normalize_profile_url(str(profile.get("profile_url") or profile.get("profileUrl") or ""))
                if url == resume_from:
                    skipping = False
                continue
            yield profile

        if skipping:
            logger.warning("Resume cursor %s not found in lead feed; nothing left to scrape", after)

    def _job_pages(self) -> list[list[dict[str, Any]]]:
        if self.job_feed is None:
            raise FileNotFoundError("no job feed configured")
        # reloaded whenever the dump is rewritten between runs
        mtime = self.job_feed.stat().st_mtime if self.job_feed.exists() else None
        if mtime is not None and mtime == self._loaded_mtime:
            return self._pages

        payload = _load(self.job_feed)
        if isinstance(payload, dict):
            payload = payload.get("pages", [])
        if payload and all(isinstance(item, dict) for item in payload):
            payload = [payload]
        self._pages = [list(page) for page in payload]
        self._loaded_mtime = mtime
        return self._pages
