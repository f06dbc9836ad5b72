from aiohttp import ClientSession, ClientTimeout

USER_AGENT = "bookproxy/1.0 (+https://github.com/bookproxy)"


def create_client_session(timeout_seconds: float) -> ClientSession:
    """The process wide HTTP session, opened and closed by the app lifespan."""
    return ClientSession(
        timeout=ClientTimeout(total=timeout_seconds),
        headers={"User-Agent": USER_AGENT},
    )
