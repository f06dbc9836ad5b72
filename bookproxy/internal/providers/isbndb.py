"""
ISBNdb provider. Strong on identifier lookups, needs an API key.
"""
from typing import List, Optional
from urllib.parse import quote

from aiohttp import ClientSession
from pydantic import BaseModel, Field, ValidationError, field_validator

from bookproxy.internal.models import BookRecord, RequestType, SearchResult
from bookproxy.internal.providers.base import MetadataProvider, QuotaTier, https
from bookproxy.util.exceptions import (
    MalformedResponse,
    ProviderAuthError,
    handle_validation_error,
)


class ISBNdbBook(BaseModel):
    title: str = ""
    title_long: Optional[str] = None
    authors: List[Optional[str]] = Field(default_factory=list)
    publisher: Optional[str] = None
    date_published: Optional[str] = None
    overview: Optional[str] = None
    synopsis: Optional[str] = None
    isbn: Optional[str] = None
    isbn13: Optional[str] = None
    pages: Optional[int] = None
    subjects: List[str] = Field(default_factory=list)
    language: Optional[str] = None
    image: Optional[str] = None

    @field_validator("pages", mode="before")
    @classmethod
    def _lenient_pages(cls, value: object) -> object:
        # ISBNdb sends page counts as strings, sometimes with junk in them
        if isinstance(value, str):
            digits = "".join(ch for ch in value if ch.isdigit())
            return int(digits) if digits else None
        return value


class ISBNdbBookResponse(BaseModel):
    book: Optional[ISBNdbBook] = None


class ISBNdbSearchResponse(BaseModel):
    total: int = 0
    books: List[ISBNdbBook] = Field(default_factory=list)


class ISBNdbProvider(MetadataProvider):
    name = "isbndb"
    quality = 80
    affinity = {RequestType.isbn: 5}
    base_url = "https://api2.isbndb.com"

    def __init__(self, tiers: list[QuotaTier], api_key: str = ""):
        super().__init__(tiers)
        self.api_key = api_key

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ProviderAuthError(self.name, "ISBNdb API key not configured")
        return {"Authorization": self.api_key, "Accept": "application/json"}

    def _to_record(self, book: ISBNdbBook) -> BookRecord:
        return BookRecord(
            id=book.isbn13 or book.isbn or "",
            title=book.title or book.title_long or "",
            authors=[author for author in book.authors if author],
            publisher=book.publisher,
            published_date=book.date_published,
            description=book.overview or book.synopsis,
            isbn_13=book.isbn13,
            isbn_10=book.isbn,
            page_count=book.pages,
            categories=book.subjects,
            language=book.language,
            cover_image=https(book.image),
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
        params = {"page": "1", "pageSize": str(min(max_results, 20))}
        if lang:
            params["language"] = lang
        data = await self._get_json(
            session,
            f"{self.base_url}/books/{quote(query, safe='')}",
            params=params,
            headers=self._headers(),
            not_found_ok=True,
        )
        if data is None:
            return SearchResult(provider=self.name)
        try:
            response = ISBNdbSearchResponse.model_validate(data)
        except ValidationError as e:
            handle_validation_error(e, "ISBNdb search response", query=query)
            raise MalformedResponse(self.name, "ISBNdb search response did not match schema") from e
        return SearchResult(
            items=[self._to_record(book) for book in response.books],
            total_items=response.total or len(response.books),
            provider=self.name,
        )

    async def lookup_by_id(self, session: ClientSession, isbn: str) -> BookRecord | None:
        data = await self._get_json(
            session,
            f"{self.base_url}/book/{isbn}",
            headers=self._headers(),
            not_found_ok=True,
        )
        if data is None:
            return None
        try:
            response = ISBNdbBookResponse.model_validate(data)
        except ValidationError as e:
            handle_validation_error(e, "ISBNdb book response", isbn=isbn)
            raise MalformedResponse(self.name, "ISBNdb book response did not match schema") from e
        if response.book is None:
            return None
        return self._to_record(response.book)
