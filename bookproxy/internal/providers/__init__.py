from bookproxy.internal.env_settings import ProviderSettings
from bookproxy.internal.providers.base import MetadataProvider, QuotaTier, tiers_from_settings
from bookproxy.internal.providers.google_books import GoogleBooksProvider
from bookproxy.internal.providers.isbndb import ISBNdbProvider
from bookproxy.internal.providers.open_library import OpenLibraryProvider

__all__ = [
    "MetadataProvider",
    "QuotaTier",
    "GoogleBooksProvider",
    "ISBNdbProvider",
    "OpenLibraryProvider",
    "build_providers",
]


def build_providers(settings: ProviderSettings) -> list[MetadataProvider]:
    """All providers that can be used with the given configuration."""
    providers: list[MetadataProvider] = [
        GoogleBooksProvider(
            tiers_from_settings(settings.google_books_tiers),
            api_key=settings.google_books_api_key,
        ),
        ISBNdbProvider(
            tiers_from_settings(settings.isbndb_tiers),
            api_key=settings.isbndb_api_key,
        ),
        OpenLibraryProvider(tiers_from_settings(settings.open_library_tiers)),
    ]
    return [provider for provider in providers if provider.enabled]
