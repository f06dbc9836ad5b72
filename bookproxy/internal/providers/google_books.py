"""
Google Books API provider, the primary full-text search source.
"""
from typing import Dict, List, Optional

from aiohttp import ClientSession
from pydantic import BaseModel, Field, ValidationError

from bookproxy.internal.models import BookRecord, RequestType, SearchResult
from bookproxy.internal.providers.base import MetadataProvider, QuotaTier, https
from bookproxy.util.exceptions import MalformedResponse, handle_validation_error


class GoogleBooksVolumeInfo(BaseModel):
    """Google Books API volume info response model."""
    title: str = ""
    subtitle: Optional[str] = None
    authors: List[str] = Field(default_factory=list)
    publisher: Optional[str] = None
    description: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    imageLinks: Optional[Dict[str, str]] = None
    publishedDate: Optional[str] = None
    pageCount: Optional[int] = None
    language: Optional[str] = None
    industryIdentifiers: Optional[List[Dict[str, str]]] = None


class GoogleBooksItem(BaseModel):
    """Google Books API item response model."""
    id: str = ""
    volumeInfo: GoogleBooksVolumeInfo


class GoogleBooksResponse(BaseModel):
    """Google Books API search response model."""
    items: List[GoogleBooksItem] = Field(default_factory=list)
    totalItems: int = 0


class GoogleBooksProvider(MetadataProvider):
    """Provider for the Google Books volumes API."""

    name = "google_books"
    quality = 90
    critical_bonus = 25
    affinity = {RequestType.search: 10}
    base_url = "https://www.googleapis.com/books/v1/volumes"

    def __init__(self, tiers: list[QuotaTier], api_key: str = ""):
        super().__init__(tiers)
        self.api_key = api_key

    def _extract_isbn(self, volume_info: GoogleBooksVolumeInfo, kind: str) -> Optional[str]:
        """Extract an ISBN of the given type (ISBN_13 or ISBN_10) from industry identifiers."""
        if not volume_info.industryIdentifiers:
            return None

        for identifier in volume_info.industryIdentifiers:
            if identifier.get("type") == kind:
                return identifier.get("identifier")

        return None

    def _get_best_cover(self, image_links: Optional[Dict[str, str]]) -> Optional[str]:
        """Get the best available cover image."""
        if not image_links:
            return None

        # Try different cover sizes in order of preference
        for size in ["extraLarge", "large", "medium", "small", "thumbnail", "smallThumbnail"]:
            if size in image_links:
                return https(image_links[size])

        for url in image_links.values():
            if url:
                return https(url)

        return None

    def _to_record(self, item: GoogleBooksItem) -> BookRecord:
        info = item.volumeInfo
        return BookRecord(
            id=item.id,
            title=info.title,
            subtitle=info.subtitle,
            authors=info.authors,
            publisher=info.publisher,
            published_date=info.publishedDate,
            description=info.description,
            isbn_13=self._extract_isbn(info, "ISBN_13"),
            isbn_10=self._extract_isbn(info, "ISBN_10"),
            page_count=info.pageCount,
            categories=info.categories,
            language=info.language,
            cover_image=self._get_best_cover(info.imageLinks),
            provider=self.name,
        )

    def _params(self, **params: str) -> dict[str, str]:
        params["printType"] = "books"
        if self.api_key:
            params["key"] = self.api_key
        return params

    async def _volumes(self, session: ClientSession, params: dict[str, str]) -> GoogleBooksResponse:
        data = await self._get_json(session, self.base_url, params=params)
        try:
            return GoogleBooksResponse.model_validate(data)
        except ValidationError as e:
            handle_validation_error(e, "Google Books response")
            raise MalformedResponse(self.name, "Google Books response did not match the volumes schema") from e

    async def search(
        self,
        session: ClientSession,
        query: str,
        max_results: int = 20,
        sort_by: str = "relevance",
        lang: str | None = None,
    ) -> SearchResult:
        params = self._params(q=query, maxResults=str(max_results), orderBy=sort_by)
        if lang:
            params["langRestrict"] = lang
        response = await self._volumes(session, params)
        return SearchResult(
            items=[self._to_record(item) for item in response.items],
            total_items=response.totalItems,
            provider=self.name,
        )

    async def lookup_by_id(self, session: ClientSession, isbn: str) -> BookRecord | None:
        response = await self._volumes(session, self._params(q=f"isbn:{isbn}", maxResults="1"))
        if not response.items:
            return None
        return self._to_record(response.items[0])
