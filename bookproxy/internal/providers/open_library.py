"""
Open Library provider. Free and unmetered, used as the fallback catalog.
"""
from typing import Any, Dict, List, Optional

from aiohttp import ClientSession
from pydantic import BaseModel, Field, ValidationError

from bookproxy.internal.models import BookRecord, SearchResult
from bookproxy.internal.providers.base import MetadataProvider, QuotaTier
from bookproxy.util.exceptions import MalformedResponse, handle_validation_error

SEARCH_FIELDS = "key,title,subtitle,author_name,first_publish_year,isbn,publisher,language,subject,cover_i,number_of_pages_median"


class OpenLibraryDoc(BaseModel):
    key: str = ""
    title: str = ""
    subtitle: Optional[str] = None
    author_name: List[str] = Field(default_factory=list)
    first_publish_year: Optional[int] = None
    isbn: List[str] = Field(default_factory=list)
    publisher: List[str] = Field(default_factory=list)
    language: List[str] = Field(default_factory=list)
    subject: List[str] = Field(default_factory=list)
    cover_i: Optional[int] = None
    number_of_pages_median: Optional[int] = None


class OpenLibrarySearchResponse(BaseModel):
    numFound: int = 0
    docs: List[OpenLibraryDoc] = Field(default_factory=list)


class OpenLibraryNamed(BaseModel):
    name: str = ""


class OpenLibraryEdition(BaseModel):
    """Edition record from the ``api/books?jscmd=data`` endpoint."""
    key: str = ""
    title: str = ""
    subtitle: Optional[str] = None
    authors: List[OpenLibraryNamed] = Field(default_factory=list)
    publishers: List[OpenLibraryNamed] = Field(default_factory=list)
    publish_date: Optional[str] = None
    notes: Optional[Any] = None
    number_of_pages: Optional[int] = None
    subjects: List[OpenLibraryNamed] = Field(default_factory=list)
    cover: Optional[Dict[str, str]] = None
    identifiers: Dict[str, List[str]] = Field(default_factory=dict)


def _cover_url(cover_id: int | None) -> str | None:
    if cover_id is None:
        return None
    return f"https://covers.openlibrary.org/b/id/{cover_id}-M.jpg"


def _first(values: list[str]) -> str | None:
    return values[0] if values else None


class OpenLibraryProvider(MetadataProvider):
    name = "open_library"
    quality = 60
    background_bonus = 15
    base_url = "https://openlibrary.org"

    def __init__(self, tiers: list[QuotaTier]):
        super().__init__(tiers)

    def _doc_to_record(self, doc: OpenLibraryDoc) -> BookRecord:
        isbn_13 = next((i for i in doc.isbn if len(i) == 13), None)
        isbn_10 = next((i for i in doc.isbn if len(i) == 10), None)
        return BookRecord(
            id=doc.key.removeprefix("/works/"),
            title=doc.title,
            subtitle=doc.subtitle,
            authors=doc.author_name,
            publisher=_first(doc.publisher),
            published_date=str(doc.first_publish_year) if doc.first_publish_year else None,
            isbn_13=isbn_13,
            isbn_10=isbn_10,
            page_count=doc.number_of_pages_median,
            categories=doc.subject[:3],
            language=_first(doc.language),
            cover_image=_cover_url(doc.cover_i),
            provider=self.name,
        )

    def _edition_to_record(self, isbn: str, edition: OpenLibraryEdition) -> BookRecord:
        isbn_13 = _first(edition.identifiers.get("isbn_13", []))
        isbn_10 = _first(edition.identifiers.get("isbn_10", []))
        if isbn_13 is None and len(isbn) == 13:
            isbn_13 = isbn
        if isbn_10 is None and len(isbn) == 10:
            isbn_10 = isbn
        notes = edition.notes if isinstance(edition.notes, str) else None
        cover = edition.cover or {}
        return BookRecord(
            id=edition.key.removeprefix("/books/") or isbn,
            title=edition.title,
            subtitle=edition.subtitle,
            authors=[author.name for author in edition.authors],
            publisher=edition.publishers[0].name if edition.publishers else None,
            published_date=edition.publish_date,
            description=notes,
            isbn_13=isbn_13,
            isbn_10=isbn_10,
            page_count=edition.number_of_pages,
            categories=[subject.name for subject in edition.subjects[:3]],
            cover_image=cover.get("medium") or cover.get("large") or cover.get("small"),
            provider=self.name,
        )

    async def search(
        self,
        session: ClientSession,
        query: str,
        max_results: int = 20,
        sort_by: str = "relevance",
        lang: str | None = None,
    ) -> SearchResult:
        params = {"q": query, "limit": str(max_results), "fields": SEARCH_FIELDS}
        if sort_by == "newest":
            params["sort"] = "new"
        if lang:
            params["lang"] = lang
        data = await self._get_json(session, f"{self.base_url}/search.json", params=params)
        try:
            response = OpenLibrarySearchResponse.model_validate(data)
        except ValidationError as e:
            handle_validation_error(e, "Open Library search response", query=query)
            raise MalformedResponse(self.name, "Open Library search response did not match schema") from e
        return SearchResult(
            items=[self._doc_to_record(doc) for doc in response.docs],
            total_items=response.numFound,
            provider=self.name,
        )

    async def lookup_by_id(self, session: ClientSession, isbn: str) -> BookRecord | None:
        data = await self._get_json(
            session,
            f"{self.base_url}/api/books",
            params={"bibkeys": f"ISBN:{isbn}", "format": "json", "jscmd": "data"},
        )
        if not isinstance(data, dict):
            raise MalformedResponse(self.name, "Open Library books response is not an object")
        raw = data.get(f"ISBN:{isbn}")
        if raw is None:
            return None
        try:
            edition = OpenLibraryEdition.model_validate(raw)
        except ValidationError as e:
            handle_validation_error(e, "Open Library edition", isbn=isbn)
            raise MalformedResponse(self.name, "Open Library edition did not match schema") from e
        return self._edition_to_record(isbn, edition)
