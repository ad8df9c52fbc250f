"""
Bookflow Backend — OpenLibrary Client
=======================================

What:  Async client for the public OpenLibrary JSON API: author search,
       author/work/edition lookups and the work/edition listings used to
       import a bibliography into the shared catalog.
Why:   The catalog is a cache of OpenLibrary. Every external call lives
       here so routes only ever see typed records or typed errors.
How:   httpx.AsyncClient created lazily, 10 s timeout by default.
       GET requests are wrapped in a tenacity retry (exponential backoff
       with jitter) for transport errors and 5xx answers; 4xx answers are
       final.

Error Contract:
    404                          → OpenLibraryNotFoundError (route answers 404)
    network / timeout / 5xx / 4xx → ExternalServiceError (route answers 502)
    malformed payload            → ExternalServiceError

Identifiers:
    OpenLibrary returns keys such as "/authors/OL23919A", "/works/OL45804W",
    "/books/OL7353617M". Bookflow stores the short form only ("OL23919A");
    `extract_short_id_from_key` performs the conversion.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from bookflow.config import settings
from bookflow.exceptions import ExternalServiceError, OpenLibraryNotFoundError

logger = logging.getLogger(__name__)


# ── Records ───────────────────────────────────────────────────────────────
@dataclass
class OpenLibraryAuthor:
    openlibrary_id: str
    name: str


@dataclass
class OpenLibraryWork:
    openlibrary_id: str
    title: str
    first_publish_year: Optional[int] = None
    primary_edition_openlibrary_id: Optional[str] = None


@dataclass
class OpenLibraryEdition:
    openlibrary_id: str
    title: str
    publish_year: Optional[int] = None
    publish_date: Optional[str] = None  # YYYY-MM-DD when the raw date parses
    publish_date_raw: Optional[str] = None
    isbn13: Optional[str] = None
    cover_url: Optional[str] = None
    language: Optional[str] = None


# ── Pure helpers ──────────────────────────────────────────────────────────
KEY_PREFIXES = ("/authors/", "/works/", "/books/", "/languages/")

_YEAR_RE = re.compile(r"\b(1\d{3}|20\d{2})\b")
_ISO_RE = re.compile(r"^(\d{4})[-./](\d{1,2})[-./](\d{1,2})(?:[T ].*)?$")
_US_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})(?:\s.*)?$")
_WRITTEN_RE = re.compile(
    r"^(?:[A-Za-z]+,\s*)?([A-Za-z]+)\.?\s+(\d{1,2}),?\s+(\d{4})(?:\s.*)?$"
)

_MONTHS = {
    name: index
    for index, names in enumerate(
        [
            ("january", "jan"),
            ("february", "feb"),
            ("march", "mar"),
            ("april", "apr"),
            ("may",),
            ("june", "jun"),
            ("july", "jul"),
            ("august", "aug"),
            ("september", "sep", "sept"),
            ("october", "oct"),
            ("november", "nov"),
            ("december", "dec"),
        ],
        start=1,
    )
    for name in names
}


def extract_short_id_from_key(key: str) -> str:
    """
    Convert an OpenLibrary key to its short id.

    "/authors/OL23919A" → "OL23919A", "/languages/eng" → "eng",
    "/unknown/OL1" → "unknown/OL1", "OL23919A" → "OL23919A".
    The id itself is never trimmed or re-cased.
    """
    for prefix in KEY_PREFIXES:
        if key.startswith(prefix):
            return key[len(prefix):]
    if key.startswith("/"):
        return key[1:]
    return key


def build_cover_url(cover_id: int) -> str:
    """Medium-size cover image URL for an OpenLibrary cover id."""
    return f"{settings.openlibrary_covers_url}/b/id/{cover_id}-M.jpg"


def parse_year_from_date_string(value: Optional[str]) -> Optional[int]:
    """
    First standalone year between 1000 and 2099 in a free-form date string.

    "June 26, 1997" → 1997, "c. 2020 (reprint 2023)" → 2020,
    "ISBN 9782023123456" → None.
    """
    if not value or not value.strip():
        return None
    match = _YEAR_RE.search(value)
    return int(match.group(1)) if match else None


def parse_date_from_publish_date(value: Optional[str]) -> Optional[str]:
    """
    Normalize an OpenLibrary publish date to YYYY-MM-DD.

    Accepted shapes: ISO dates (time part ignored), M/D/YYYY, and written
    dates like "January 15, 2023", "Jan 15 2023" or
    "Sunday, January 15, 2023". A bare year, "January 2023",
    "15.01.2023" or anything that is not a real calendar day yields None.
    """
    if not value:
        return None
    text = value.strip()
    if not text:
        return None

    match = _ISO_RE.match(text)
    if match:
        year, month, day = match.groups()
    else:
        match = _US_RE.match(text)
        if match:
            month, day, year = match.groups()
        else:
            match = _WRITTEN_RE.match(text)
            if not match:
                return None
            month_name, day, year = match.groups()
            month = _MONTHS.get(month_name.lower())
            if month is None:
                return None

    try:
        return date(int(year), int(month), int(day)).isoformat()
    except ValueError:
        return None


def _edition_sort_value(edition: OpenLibraryEdition) -> date:
    if edition.publish_date:
        try:
            return date.fromisoformat(edition.publish_date)
        except ValueError:
            pass
    if edition.publish_year is not None:
        return date(edition.publish_year, 12, 31)
    return date.min


def select_primary_edition(
    work: OpenLibraryWork, editions: Sequence[OpenLibraryEdition]
) -> Optional[OpenLibraryEdition]:
    """
    Pick the edition to show for a work.

    The work's own primary edition wins when it is in the list; otherwise
    the most recently published edition (full date first, then year, then
    undated). Ties keep the earlier edition.
    """
    if not editions:
        return None
    if work.primary_edition_openlibrary_id:
        for edition in editions:
            if edition.openlibrary_id == work.primary_edition_openlibrary_id:
                return edition

    latest = editions[0]
    for edition in editions[1:]:
        if _edition_sort_value(edition) > _edition_sort_value(latest):
            latest = edition
    return latest


# ── Payload parsing ───────────────────────────────────────────────────────
def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _parse_author(data: Dict[str, Any]) -> Optional[OpenLibraryAuthor]:
    key, name = _text(data.get("key")), _text(data.get("name"))
    if key is None or name is None:
        return None
    return OpenLibraryAuthor(openlibrary_id=extract_short_id_from_key(key), name=name)


def _parse_work(data: Dict[str, Any]) -> Optional[OpenLibraryWork]:
    key, title = _text(data.get("key")), _text(data.get("title"))
    if key is None or title is None:
        return None

    first_publish_year = data.get("first_publish_year")
    if not isinstance(first_publish_year, int):
        first_publish_year = parse_year_from_date_string(_text(data.get("first_publish_date")))

    return OpenLibraryWork(
        openlibrary_id=extract_short_id_from_key(key),
        title=title,
        first_publish_year=first_publish_year,
        primary_edition_openlibrary_id=_primary_edition_key(data),
    )


def _primary_edition_key(data: Dict[str, Any]) -> Optional[str]:
    # Search documents carry the featured edition as "cover_edition_key"
    key = _text(data.get("cover_edition_key"))
    return extract_short_id_from_key(key) if key else None


def _parse_edition(data: Dict[str, Any]) -> Optional[OpenLibraryEdition]:
    key, title = _text(data.get("key")), _text(data.get("title"))
    if key is None or title is None:
        return None

    raw_date = _text(data.get("publish_date"))

    isbn13 = None
    for candidate in data.get("isbn_13") or []:
        digits = str(candidate).replace("-", "").strip()
        if len(digits) == 13 and digits.isdigit():
            isbn13 = digits
            break

    cover_url = None
    covers = [c for c in data.get("covers") or [] if isinstance(c, int) and c > 0]
    if covers:
        cover_url = build_cover_url(covers[0])

    language = None
    languages = data.get("languages") or []
    if languages and isinstance(languages[0], dict) and _text(languages[0].get("key")):
        language = extract_short_id_from_key(languages[0]["key"].strip())

    return OpenLibraryEdition(
        openlibrary_id=extract_short_id_from_key(key),
        title=title,
        publish_year=parse_year_from_date_string(raw_date),
        publish_date=parse_date_from_publish_date(raw_date),
        publish_date_raw=raw_date,
        isbn13=isbn13,
        cover_url=cover_url,
        language=language,
    )


class _UpstreamStatusError(Exception):
    """5xx from OpenLibrary; raised inside the retry loop only."""

    def __init__(self, status_code: int):
        super().__init__(f"OpenLibrary API returned status {status_code}")
        self.status_code = status_code


# ── Client ────────────────────────────────────────────────────────────────
class OpenLibraryService:
    """
    Async OpenLibrary client.

    Args:
        base_url:  API root (defaults to settings.openlibrary_base_url)
        timeout:   Per-request timeout in seconds
        transport: Optional httpx transport (tests inject MockTransport)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or settings.openlibrary_base_url
        self.timeout = timeout or settings.openlibrary_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
                follow_redirects=True,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @retry(
        retry=retry_if_exception_type((httpx.TransportError, _UpstreamStatusError)),
        stop=stop_after_attempt(settings.retry_max_attempts),
        wait=wait_exponential_jitter(
            initial=settings.retry_min_wait,
            max=settings.retry_max_wait,
            jitter=1,
        ),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _get_with_retry(
        self, path: str, params: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        response = await self._get_client().get(path, params=params)
        if response.status_code >= 500:
            raise _UpstreamStatusError(response.status_code)
        return response

    async def _get_json(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        entity: Optional[str] = None,
        openlibrary_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        GET a JSON object from OpenLibrary.

        Args:
            entity / openlibrary_id: When given, a 404 raises
                OpenLibraryNotFoundError for that entity
        Raises:
            OpenLibraryNotFoundError: 404 for a named entity
            ExternalServiceError: Anything else that is not a JSON object
        """
        logger.debug("OpenLibrary GET %s %s", path, params or "")
        try:
            response = await self._get_with_retry(path, params)
        except httpx.TimeoutException as e:
            logger.error("OpenLibrary request timed out: %s", path)
            raise ExternalServiceError(context={"path": path, "error": "timeout"}) from e
        except (httpx.HTTPError, _UpstreamStatusError) as e:
            logger.error("OpenLibrary request failed: %s: %s", path, e)
            raise ExternalServiceError(context={"path": path, "error": str(e)}) from e

        if response.status_code == 404 and entity is not None:
            raise OpenLibraryNotFoundError(entity, openlibrary_id or path)
        if response.is_error:
            logger.error("OpenLibrary returned %d for %s", response.status_code, path)
            raise ExternalServiceError(
                context={"path": path, "status": response.status_code}
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ExternalServiceError(
                context={"path": path, "error": "invalid JSON"}
            ) from e
        if not isinstance(data, dict):
            raise ExternalServiceError(context={"path": path, "error": "unexpected payload"})
        return data

    # ── Authors ───────────────────────────────────────────────────────────
    async def search_authors(self, query: str, limit: int) -> List[OpenLibraryAuthor]:
        """Author search; documents missing a key or name are skipped."""
        data = await self._get_json("/search/authors.json", {"q": query, "limit": limit})
        docs = data.get("docs") or []
        authors = [a for a in (_parse_author(d) for d in docs if isinstance(d, dict)) if a]
        logger.info("OpenLibrary author search %r returned %d results", query, len(authors))
        return authors

    async def fetch_author_by_openlibrary_id(self, openlibrary_id: str) -> OpenLibraryAuthor:
        data = await self._get_json(
            f"/authors/{openlibrary_id}.json", entity="Author", openlibrary_id=openlibrary_id
        )
        author = _parse_author(data)
        if author is None:
            raise ExternalServiceError(
                message="Invalid response format from OpenLibrary",
                context={"openlibrary_id": openlibrary_id},
            )
        return author

    async def fetch_author_works(
        self, openlibrary_id: str, limit: Optional[int] = None
    ) -> List[OpenLibraryWork]:
        """The author's works (up to `limit`, default openlibrary_works_limit)."""
        data = await self._get_json(
            f"/authors/{openlibrary_id}/works.json",
            {"limit": limit or settings.openlibrary_works_limit},
            entity="Author",
            openlibrary_id=openlibrary_id,
        )
        entries = data.get("entries") or []
        return [w for w in (_parse_work(e) for e in entries if isinstance(e, dict)) if w]

    # ── Works & editions ──────────────────────────────────────────────────
    async def fetch_work_by_openlibrary_id(self, openlibrary_id: str) -> OpenLibraryWork:
        data = await self._get_json(
            f"/works/{openlibrary_id}.json", entity="Work", openlibrary_id=openlibrary_id
        )
        work = _parse_work(data)
        if work is None:
            raise ExternalServiceError(
                message="Invalid response format from OpenLibrary",
                context={"openlibrary_id": openlibrary_id},
            )
        return work

    async def fetch_work_editions_by_openlibrary_id(
        self, openlibrary_id: str, limit: Optional[int] = None
    ) -> List[OpenLibraryEdition]:
        data = await self._get_json(
            f"/works/{openlibrary_id}/editions.json",
            {"limit": limit or settings.openlibrary_editions_limit},
            entity="Work",
            openlibrary_id=openlibrary_id,
        )
        entries = data.get("entries") or []
        return [e for e in (_parse_edition(x) for x in entries if isinstance(x, dict)) if e]

    async def fetch_edition_by_openlibrary_id(self, openlibrary_id: str) -> OpenLibraryEdition:
        data = await self._get_json(
            f"/books/{openlibrary_id}.json", entity="Edition", openlibrary_id=openlibrary_id
        )
        edition = _parse_edition(data)
        if edition is None:
            raise ExternalServiceError(
                message="Invalid response format from OpenLibrary",
                context={"openlibrary_id": openlibrary_id},
            )
        return edition


openlibrary_service = OpenLibraryService()
