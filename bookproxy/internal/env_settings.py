import pathlib

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DBSettings(BaseModel):
    sqlite_path: str = "bookproxy.sqlite"
    """Relative path to the sqlite database given the config directory. If absolute, it ignores the config dir location."""
    use_postgres: bool = False
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "bookproxy"
    postgres_user: str = "bookproxy"
    postgres_password: str = "password"
    postgres_ssl_mode: str = "prefer"

    # Connection Pool Configuration
    pool_size: int = 10
    """SQLAlchemy connection pool size (number of connections to maintain in pool)"""
    max_overflow: int = 20
    """Maximum number of overflow connections beyond pool_size"""
    pool_timeout: int = 30
    """Timeout (seconds) to wait for a connection from the pool"""
    pool_pre_ping: bool = True
    """Enable ping to detect stale connections before using them"""


class ApplicationSettings(BaseModel):
    debug: bool = False
    openapi_enabled: bool = False
    config_dir: str = "/config"
    port: int = 8000
    version: str = "local"
    log_level: str = "INFO"
    """Logging level (DEBUG, INFO, WARNING, ERROR)"""
    log_format: str = "text"
    """Log format: 'text' for human-readable, 'json' for machine-readable"""
    log_file: str | None = None
    """Optional log file path (relative to config_dir/logs/). If not set, logs to stdout only"""

    enrichment_queue_size: int = 1000
    """Maximum number of pending enrichment tasks before new ones are dropped"""
    maintenance_interval_seconds: int = 3_600
    """How often expired cache, quota and rate limit rows are purged"""
    admin_api_key: str | None = None
    """Required in X-Admin-Key for the /cache endpoints. Unset keeps them closed"""


class CacheSettings(BaseModel):
    hot_max_entries: int = 5000
    """Maximum number of entries kept in the in-process hot tier (LRU eviction)"""
    hot_size_limit_bytes: int = 25_000
    """Entries at or above this serialized size never live in the hot tier"""
    hot_max_ttl_seconds: int = 86_400
    """Hot copies never outlive this, whatever the entry TTL"""
    hot_popularity_threshold: int = 3
    """set() writes to the hot tier when the popularity hint is above this"""

    promotion_min_hits: int = 5
    """Warm entries need at least this many hits before promotion to hot"""
    promotion_recency_seconds: int = 86_400
    """...and their previous access must be more recent than this"""

    negative_ttl_seconds: int = 3_600
    """TTL for empty/negative results (default: 1 hour)"""
    search_ttl_seconds: int = 2_592_000
    """TTL for search results (default: 30 days)"""
    identifier_ttl_seconds: int = 31_536_000
    """TTL for ISBN lookups (default: 1 year)"""


class ProviderTierSettings(BaseModel):
    limit: int | None
    """Daily request allowance. None means unlimited."""
    cost: float = 0.0


class ProviderSettings(BaseModel):
    google_books_api_key: str = ""
    """Optional Google Books API key (works without key but has rate limits)"""
    isbndb_api_key: str = ""
    """ISBNdb API key. ISBNdb is skipped entirely when unset."""

    google_books_tiers: dict[str, ProviderTierSettings] = Field(
        default_factory=lambda: {
            "paid": ProviderTierSettings(limit=100_000, cost=0.001),
            "free": ProviderTierSettings(limit=1_000, cost=0.0),
        }
    )
    isbndb_tiers: dict[str, ProviderTierSettings] = Field(
        default_factory=lambda: {
            "pro": ProviderTierSettings(limit=100_000, cost=199.0),
            "premium": ProviderTierSettings(limit=10_000, cost=49.0),
            "starter": ProviderTierSettings(limit=500, cost=0.0),
        }
    )
    open_library_tiers: dict[str, ProviderTierSettings] = Field(
        default_factory=lambda: {"free": ProviderTierSettings(limit=None, cost=0.0)}
    )

    single_timeout_seconds: float = 15.0
    """Hard per-call timeout for single lookups"""
    batch_timeout_seconds: float = 30.0
    """Hard per-call timeout for items of a batch"""
    batch_max_concurrency: int = 4
    """Concurrent provider calls per provider queue during a batch"""


class RateLimitSettings(BaseModel):
    window_seconds: int = 3_600
    trusted_client_identity: str = "BooksTrack-iOS"
    """User agent substring of the first-party client"""
    routing_token_header: str = "X-Routing-Token"
    """Header carrying the per-connection routing token used in the fingerprint"""

    trusted_limit: int = 500
    standard_limit: int = 100
    suspicious_limit: int = 20

    trusted_batch_item_limit: int = 2_000
    standard_batch_item_limit: int = 500
    suspicious_batch_item_limit: int = 100

    crawler_patterns: list[str] = Field(
        default_factory=lambda: ["bot", "crawler", "spider", "curl/", "wget/"]
    )
    min_user_agent_length: int = 10


class WarmingSettings(BaseModel):
    enabled: bool = False
    """Run the warming loop in the background of the web process"""
    loop_interval_seconds: int = 600
    success_threshold: float = 0.8
    """A segment pass at or above this success ratio is marked done"""
    slices_per_run: int = 1
    bootstrap_slices_per_run: int = 30
    default_batch_size: int = 50
    max_concurrency: int = 3


class Settings(BaseSettings):
    model_config = SettingsConfigDict(  # pyright: ignore[reportUnannotatedClassAttribute]
        env_prefix="BOOKPROXY_",
        env_nested_delimiter="__",
        nested_model_default_partial_update=True,
        env_file=(".env.local", ".env"),
        extra="ignore",
    )

    db: DBSettings = DBSettings()
    app: ApplicationSettings = ApplicationSettings()
    cache: CacheSettings = CacheSettings()
    providers: ProviderSettings = ProviderSettings()
    rate_limit: RateLimitSettings = RateLimitSettings()
    warming: WarmingSettings = WarmingSettings()

    def get_sqlite_path(self):
        if self.db.sqlite_path.startswith("/"):
            return self.db.sqlite_path
        return str(pathlib.Path(self.app.config_dir) / self.db.sqlite_path)

    def get_database_url(self) -> str:
        db = self.db
        if db.use_postgres:
            return f"postgresql://{db.postgres_user}:{db.postgres_password}@{db.postgres_host}:{db.postgres_port}/{db.postgres_db}?sslmode={db.postgres_ssl_mode}"
        return f"sqlite+pysqlite:///{self.get_sqlite_path()}"
