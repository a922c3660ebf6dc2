from __future__ import annotations

import logging

import requests
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)


USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/128.0.0.0 Safari/537.36"
)

# Public job pages put the posting body in one of these containers.
DESCRIPTION_SELECTORS: tuple[str, ...] = (
    "div.show-more-less-html__markup",
    "div.description__text",
    "section.description",
    "div#job-details",
    "[class*='job-description']",
    "main",
)


def extract_description(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "svg"]):
        tag.extract()

    node = None
    for selector in DESCRIPTION_SELECTORS:
        node = soup.select_one(selector)
        if node is not None and node.get_text(strip=True):
            break
        node = None

    text = (node or soup.body or soup).get_text("\n")
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return "\n".join(lines)


def fetch_job_text(url: str, timeout_sec: int = 30) -> str:
    """Best effort: an empty string means the posting keeps no description."""
    try:
        response = requests.get(url, timeout=timeout_sec, headers={"User-Agent": USER_AGENT})
        response.raise_for_status()
    except requests.RequestException as exc:
        logger.warning("Failed to fetch job description %s: %s", url, exc)
        return ""
    return extract_description(response.text)
